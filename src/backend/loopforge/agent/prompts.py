"""Prompt builders and response schemas for the writer and reviewer roles."""
from __future__ import annotations

from typing import Optional, Sequence

from loopforge.models.schemas import DraftCandidate

NO_PRIOR_FEEDBACK = "No previous review feedback."
NO_PRIOR_DRAFT = "No previously selected draft content."

# ──────────────────────────────────────────────
# System instructions
# ──────────────────────────────────────────────

WRITER_SYSTEM = """You are a professional writer. Your task is to produce or revise content
based on the background material, the writing brief, and any review feedback you are given.

You MUST answer with a JSON object that follows the provided schema exactly:
- "overallResponseToReview": a point-by-point response to the previous round's consolidated
  feedback. For a first draft, write "Initial draft generation attempt." or similar.
- "drafts": an array with exactly the number of independent drafts requested. Each draft has
  "content" (the full document or code) and "revisionSummary" (the main changes in this draft
  and why; for a first draft, "Generated from the initial brief for this draft variant.").

Give every draft its own distinct content and matching revision summary."""

REVIEWER_SYSTEM = """You are a strict reviewer. Review the writer's drafts against the background
material and the review criteria you are given.

Write a detailed review of every draft and score each one from 0 to 100 (100 is best).
Then pick the single best draft and write consolidated feedback that will guide the
writer's next revision.

You MUST answer with a JSON object that follows the provided schema exactly:
- "draftReviews": one object per draft, in the same order, each with "reviewText" and an
  integer "score" from 0 to 100.
- "selectedIndex": the 0-based index of the best draft in the writer's drafts array.
- "consolidatedFeedback": overall key feedback across all drafts, why the selected draft won,
  and concrete guidance for improving the selected draft in the next round."""

# ──────────────────────────────────────────────
# Response schemas
# ──────────────────────────────────────────────

_DRAFT_SCHEMA = {
    "type": "object",
    "properties": {
        "content": {
            "type": "string",
            "description": "The full text of this specific document or code draft.",
        },
        "revisionSummary": {
            "type": "string",
            "description": (
                "A summary of the changes made in this specific draft. If first draft, "
                "state 'Generated from the initial brief for this draft variant.'."
            ),
        },
    },
    "required": ["content", "revisionSummary"],
}

WRITER_SCHEMA = {
    "title": "writer_output",
    "type": "object",
    "properties": {
        "overallResponseToReview": {
            "type": "string",
            "description": (
                "Detailed response to the consolidated feedback from the previous reviewer. "
                "If first iteration, state 'Initial draft generation attempt.'."
            ),
        },
        "drafts": {
            "type": "array",
            "description": "An array containing N distinct document drafts as requested.",
            "items": _DRAFT_SCHEMA,
        },
    },
    "required": ["overallResponseToReview", "drafts"],
}

_REVIEW_SCHEMA = {
    "type": "object",
    "properties": {
        "reviewText": {
            "type": "string",
            "description": "Comprehensive review comments for this specific draft.",
        },
        "score": {
            "type": "integer",
            "minimum": 0,
            "maximum": 100,
            "description": "A numerical score from 0 to 100 for this draft.",
        },
    },
    "required": ["reviewText", "score"],
}

REVIEWER_SCHEMA = {
    "title": "reviewer_output",
    "type": "object",
    "properties": {
        "draftReviews": {
            "type": "array",
            "description": "One review object for each draft provided by the writer, same order.",
            "items": _REVIEW_SCHEMA,
        },
        "selectedIndex": {
            "type": "integer",
            "description": "The 0-based index of the best draft in the writer's drafts array.",
        },
        "consolidatedFeedback": {
            "type": "string",
            "description": (
                "Key overall feedback, reasons for the selection, and actionable suggestions "
                "to guide the writer's next revision of the selected draft."
            ),
        },
    },
    "required": ["draftReviews", "selectedIndex", "consolidatedFeedback"],
}

# ──────────────────────────────────────────────
# Instruction builders
# ──────────────────────────────────────────────

INITIAL_WRITER_PROMPT = """Initial writing brief:
{brief}

Please produce {draft_count} independent drafts. Answer strictly with JSON following the schema."""

REVISION_WRITER_PROMPT = """Original writing brief: {brief}
Excerpt of the previously selected draft (partial, for orientation only; follow the consolidated feedback):
{excerpt}...

Consolidated review feedback (or the user's edited/confirmed feedback):
{feedback}

Using the information and feedback above, revise the selected draft and produce {draft_count} independent drafts. Answer strictly with JSON following the schema."""


def build_initial_writer_instruction(brief: str, draft_count: int) -> str:
    return INITIAL_WRITER_PROMPT.format(brief=brief, draft_count=draft_count)


def build_revision_writer_instruction(
    brief: str,
    draft_count: int,
    selected_content: Optional[str],
    feedback: Optional[str],
    excerpt_chars: int,
) -> str:
    excerpt = selected_content[:excerpt_chars] if selected_content else NO_PRIOR_DRAFT
    return REVISION_WRITER_PROMPT.format(
        brief=brief,
        excerpt=excerpt,
        feedback=feedback or NO_PRIOR_FEEDBACK,
        draft_count=draft_count,
    )


def format_drafts_for_review(drafts: Sequence[DraftCandidate]) -> str:
    return "\n\n".join(
        f"--- Draft {i} ---\n{draft.content}\n--- End of Draft {i} ---"
        for i, draft in enumerate(drafts, 1)
    )


def build_reviewer_instruction(criteria: str, drafts: Sequence[DraftCandidate]) -> str:
    return (
        f"Review criteria:\n{criteria}\n\n"
        f"The {len(drafts)} drafts to review follow:\n"
        f"{format_drafts_for_review(drafts)}"
    )
