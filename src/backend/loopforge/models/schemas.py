# [Core: Data Model]
"""
Domain models for Loop Forge.

These Pydantic models define the records flowing through the refinement loop.
Model output is parsed straight into them, so the range and cross-field
invariants live here as validators. JSON field names are camelCase; Python
attributes are snake_case.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, List, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from loopforge.config import settings


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FrozenCamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


def _require_number(v: Any) -> Any:
    # JSON booleans and numeric strings are not numbers here
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        raise ValueError(f"expected a number, got {type(v).__name__}")
    return v


def _expected_count(info: ValidationInfo) -> Optional[int]:
    if info.context:
        return info.context.get("expected_count")
    return None


# ──────────────────────────────────────────────
# Enums
# ──────────────────────────────────────────────

class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    FAILED = "failed"


class StopReason(str, Enum):
    CONVERGED = "converged"
    EXHAUSTED = "exhausted"
    BATCH_COMPLETE = "batch-complete"


class Role(str, Enum):
    WRITER = "writer"
    REVIEWER = "reviewer"


# ──────────────────────────────────────────────
# Writer Models
# ──────────────────────────────────────────────

class DraftCandidate(FrozenCamelModel):
    content: str = Field(..., description="Full text of this draft")
    revision_summary: str = Field(..., description="What changed in this draft and why")


class WriterOutput(FrozenCamelModel):
    """Output of the writer role: N candidate drafts for one round."""
    overall_response_to_review: str = Field(
        ..., description="Writer's response to the previous consolidated feedback"
    )
    drafts: List[DraftCandidate] = Field(..., description="Candidate drafts, in order")

    @model_validator(mode="after")
    def _check_draft_count(self, info: ValidationInfo) -> WriterOutput:
        expected = _expected_count(info)
        if expected is not None and len(self.drafts) != expected:
            raise ValueError(f"expected {expected} drafts, got {len(self.drafts)}")
        return self


# ──────────────────────────────────────────────
# Reviewer Models
# ──────────────────────────────────────────────

class DraftReview(FrozenCamelModel):
    review_text: str = Field(..., description="Review comments for one draft")
    score: int = Field(..., ge=0, le=100, description="Score from 0 to 100")

    @field_validator("score", mode="before")
    @classmethod
    def _score_is_number(cls, v: Any) -> Any:
        return _require_number(v)


class ReviewerOutput(FrozenCamelModel):
    """Output of the reviewer role: one review per draft plus the selection."""
    draft_reviews: List[DraftReview] = Field(..., description="One review per draft, same order")
    selected_index: int = Field(..., description="0-based index of the best draft")
    consolidated_feedback: str = Field(..., description="Guidance for the next writer round")

    @field_validator("selected_index", mode="before")
    @classmethod
    def _index_is_number(cls, v: Any) -> Any:
        return _require_number(v)

    @model_validator(mode="after")
    def _check_selection(self, info: ValidationInfo) -> ReviewerOutput:
        n = len(self.draft_reviews)
        if n == 0:
            if self.selected_index != -1:
                raise ValueError("selectedIndex must be -1 when there are no reviews")
        elif not 0 <= self.selected_index < n:
            raise ValueError(f"selectedIndex {self.selected_index} out of range for {n} reviews")

        expected = _expected_count(info)
        if expected is not None and n != expected:
            raise ValueError(f"expected {expected} reviews, got {n}")
        return self


# ──────────────────────────────────────────────
# Iteration History
# ──────────────────────────────────────────────

class TokenUsage(FrozenCamelModel):
    input: int = 0
    output: int = 0


class IterationRecord(FrozenCamelModel):
    """One completed writer-then-reviewer round. Immutable once appended."""
    id: int = Field(..., ge=1, description="1-based round number within the run")
    writer_instruction: str = Field(..., description="Exact instruction text sent to the writer")
    writer_output: WriterOutput
    writer_tokens: TokenUsage = Field(default_factory=TokenUsage)
    reviewer_output: Optional[ReviewerOutput] = None
    reviewer_tokens: TokenUsage = Field(default_factory=TokenUsage)

    @property
    def selection_in_range(self) -> bool:
        review = self.reviewer_output
        if review is None:
            return False
        return (
            0 <= review.selected_index < len(review.draft_reviews)
            and review.selected_index < len(self.writer_output.drafts)
        )

    @property
    def selected_draft(self) -> Optional[DraftCandidate]:
        if not self.selection_in_range:
            return None
        return self.writer_output.drafts[self.reviewer_output.selected_index]

    @property
    def selected_score(self) -> int:
        """Score of the reviewer-selected draft; 0 when the selection is unusable."""
        if not self.selection_in_range:
            return 0
        return self.reviewer_output.draft_reviews[self.reviewer_output.selected_index].score


# ──────────────────────────────────────────────
# Run Configuration
# ──────────────────────────────────────────────

class InlineData(FrozenCamelModel):
    mime_type: str = Field(..., description="MIME type, e.g. 'image/png'")
    data: str = Field(..., description="Base64-encoded payload")


class ContentPart(FrozenCamelModel):
    """Opaque background-material segment sent ahead of every instruction."""
    name: Optional[str] = Field(None, description="Display name (file name, 'Pasted text 1')")
    text: Optional[str] = None
    inline_data: Optional[InlineData] = None

    @model_validator(mode="after")
    def _exactly_one_payload(self) -> ContentPart:
        if (self.text is None) == (self.inline_data is None):
            raise ValueError("a content part carries exactly one of text or inlineData")
        return self


class RunConfiguration(FrozenCamelModel):
    """
    Everything a run needs, validated atomically before the first call.
    Numeric fields accept numeric strings (form input) but not free text.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        protected_namespaces=(),
    )

    model_name: str = Field(default_factory=lambda: settings.default_model_name)
    min_iterations: int = Field(default_factory=lambda: settings.default_min_iterations, ge=1)
    max_iterations: int = Field(default_factory=lambda: settings.default_max_iterations, ge=1)
    target_score: int = Field(default_factory=lambda: settings.default_target_score, ge=0, le=100)
    draft_count: int = Field(default_factory=lambda: settings.default_draft_count, ge=1, le=3)
    background_material: List[ContentPart] = Field(default_factory=list)
    writer_brief: str = Field(..., description="What the writer should produce")
    reviewer_criteria: str = Field(..., description="What the reviewer should judge")

    @field_validator("min_iterations", "max_iterations", "target_score", "draft_count", mode="before")
    @classmethod
    def _count_is_not_bool(cls, v: Any) -> Any:
        if isinstance(v, bool):
            raise ValueError("expected an integer, got bool")
        return v

    @field_validator("model_name")
    @classmethod
    def _strip_model_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("model name must not be empty")
        return v

    @field_validator("writer_brief", "reviewer_criteria")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be empty")
        return v

    @model_validator(mode="after")
    def _check_bounds(self) -> RunConfiguration:
        if self.max_iterations < self.min_iterations:
            raise ValueError(
                f"maxIterations ({self.max_iterations}) must not be less than "
                f"minIterations ({self.min_iterations})"
            )
        return self


# ──────────────────────────────────────────────
# Run Control Models
# ──────────────────────────────────────────────

class ErrorDetail(CamelModel):
    kind: str
    message: str
    role: Optional[Role] = None
    round_id: Optional[int] = None
    raw_text: Optional[str] = None


class TokenTotals(CamelModel):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


class RunResult(CamelModel):
    """Outcome of start / continue_manually."""
    state: RunState
    stop_reason: Optional[StopReason] = None
    rounds_completed: int = 0
    last_round_id: Optional[int] = None
    selected_score: Optional[int] = None
    status_message: str = ""
    error: Optional[ErrorDetail] = None


class ContinueRequest(CamelModel):
    """API request to run a manual batch from a paused run."""
    round_count: int = Field(1, ge=1, description="Number of extra rounds to run unconditionally")
    feedback: Optional[str] = Field(
        None, description="Edited consolidated feedback for the first extra round"
    )


class RunStatus(CamelModel):
    """API response with the current run state."""
    state: RunState
    status_message: str = ""
    rounds: int = 0
    last_round_id: Optional[int] = None
    selected_score: Optional[int] = None
    latest_feedback: Optional[str] = None
    tokens: TokenTotals = Field(default_factory=TokenTotals)
    error: Optional[ErrorDetail] = None
