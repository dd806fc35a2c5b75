# [Core: Refinement Loop]
"""
Iteration Orchestrator — drives the writer/reviewer rounds.

On each round:
  1. Build the writer instruction (brief, or brief + selected-draft excerpt + feedback)
  2. Ask the writer for N drafts and validate them
  3. Ask the reviewer to score the drafts, select one and write feedback
  4. Append an IterationRecord to the run history
  5. In automatic mode, ask the convergence policy whether to pause

Every round refines one lineage: it always starts from the most recent
record's selected draft and consolidated feedback. Calls are strictly
sequential and nothing is retried; the first failure aborts the batch.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel

from loopforge.agent.convergence import decide
from loopforge.agent.errors import ResponseMalformedError, TransportError
from loopforge.agent.prompts import (
    REVIEWER_SCHEMA,
    REVIEWER_SYSTEM,
    WRITER_SCHEMA,
    WRITER_SYSTEM,
    build_initial_writer_instruction,
    build_reviewer_instruction,
    build_revision_writer_instruction,
)
from loopforge.agent.validator import validate
from loopforge.config import settings
from loopforge.models.schemas import (
    ContentPart,
    IterationRecord,
    ReviewerOutput,
    Role,
    RunConfiguration,
    StopReason,
    TokenUsage,
    WriterOutput,
)
from loopforge.services.model_client import ModelClient
from loopforge.services.token_accountant import TokenAccountant, resolve_usage

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

# Type for the callback that streams human-readable progress lines
ProgressCallback = Callable[[str], None]


@dataclass
class RoundsOutcome:
    """Records appended by one run_rounds call and why it stopped."""
    records: List[IterationRecord] = field(default_factory=list)
    stop_reason: StopReason = StopReason.BATCH_COMPLETE


class IterationOrchestrator:
    """
    Runs batches of refinement rounds against a ModelClient.

    Usage:
        orchestrator = IterationOrchestrator(client, accountant)
        outcome = await orchestrator.run_rounds(config, history, start_id=1,
                                                count=config.max_iterations)
    """

    def __init__(
        self,
        client: ModelClient,
        accountant: TokenAccountant,
        on_progress: Optional[ProgressCallback] = None,
        excerpt_chars: Optional[int] = None,
    ):
        self.client = client
        self.accountant = accountant
        self.on_progress = on_progress
        self.excerpt_chars = (
            settings.selected_excerpt_chars if excerpt_chars is None else excerpt_chars
        )

    async def run_rounds(
        self,
        config: RunConfiguration,
        history: List[IterationRecord],
        start_id: int,
        count: int,
        is_manual_batch: bool = False,
        feedback_override: Optional[str] = None,
    ) -> RoundsOutcome:
        """
        Run up to `count` rounds, appending each completed round to `history`.

        Args:
            config: Validated run configuration
            history: The run's append-only history (appended to in place)
            start_id: Round id of the first round in this batch
            count: Number of rounds to run at most
            is_manual_batch: Skip convergence checks and run all `count` rounds
            feedback_override: Replaces the latest consolidated feedback for the
                first round of a manual batch

        Returns:
            RoundsOutcome with the appended records and the stop reason.

        Raises:
            TransportError, ResponseMalformedError: the round failed; records
            appended before the failure stay in `history`.
        """
        outcome = RoundsOutcome()
        target = "manual continuation" if is_manual_batch else f"{config.max_iterations} rounds"

        for r in range(count):
            round_id = start_id + r
            override = feedback_override if (is_manual_batch and r == 0) else None

            logger.info(f"[Round {round_id}] starting (target: {target})")
            record = await self._run_round(config, history, round_id, override, target)
            history.append(record)
            outcome.records.append(record)

            if is_manual_batch:
                continue

            decision = decide(record.selected_score, round_id, config)
            if decision.is_pause:
                logger.info(
                    f"[Round {round_id}] pausing: {decision.value} "
                    f"(selected score {record.selected_score})"
                )
                outcome.stop_reason = decision.stop_reason
                return outcome

        outcome.stop_reason = StopReason.BATCH_COMPLETE
        return outcome

    async def _run_round(
        self,
        config: RunConfiguration,
        history: List[IterationRecord],
        round_id: int,
        feedback_override: Optional[str],
        target: str,
    ) -> IterationRecord:
        previous = history[-1] if history else None
        instruction = self._writer_instruction(config, previous, feedback_override)

        # ── Writer ──
        self._progress(
            f"Round {round_id} (target: {target}) - writer generating "
            f"{config.draft_count} draft(s)..."
        )
        writer_output, writer_tokens = await self._call_role(
            role=Role.WRITER,
            round_id=round_id,
            config=config,
            instruction=instruction,
            system_instruction=WRITER_SYSTEM,
            response_schema=WRITER_SCHEMA,
            shape=WriterOutput,
        )

        # ── Reviewer ──
        self._progress(
            f"Round {round_id} - writer produced {len(writer_output.drafts)} draft(s), "
            f"reviewer reviewing..."
        )
        reviewer_output, reviewer_tokens = await self._call_role(
            role=Role.REVIEWER,
            round_id=round_id,
            config=config,
            instruction=build_reviewer_instruction(config.reviewer_criteria, writer_output.drafts),
            system_instruction=REVIEWER_SYSTEM,
            response_schema=REVIEWER_SCHEMA,
            shape=ReviewerOutput,
        )

        record = IterationRecord(
            id=round_id,
            writer_instruction=instruction,
            writer_output=writer_output,
            writer_tokens=writer_tokens,
            reviewer_output=reviewer_output,
            reviewer_tokens=reviewer_tokens,
        )
        if not record.selection_in_range:
            logger.warning(
                f"[Round {round_id}] reviewer selected an invalid draft index "
                f"({reviewer_output.selected_index}); using score 0"
            )
        logger.info(
            f"[Round {round_id}] scores {[r.score for r in reviewer_output.draft_reviews]}, "
            f"selected index {reviewer_output.selected_index} (score {record.selected_score})"
        )
        return record

    def _writer_instruction(
        self,
        config: RunConfiguration,
        previous: Optional[IterationRecord],
        feedback_override: Optional[str],
    ) -> str:
        if previous is None:
            return build_initial_writer_instruction(config.writer_brief, config.draft_count)

        feedback = feedback_override
        if feedback is None and previous.reviewer_output is not None:
            feedback = previous.reviewer_output.consolidated_feedback
        selected = previous.selected_draft
        return build_revision_writer_instruction(
            brief=config.writer_brief,
            draft_count=config.draft_count,
            selected_content=selected.content if selected else None,
            feedback=feedback,
            excerpt_chars=self.excerpt_chars,
        )

    async def _call_role(
        self,
        role: Role,
        round_id: int,
        config: RunConfiguration,
        instruction: str,
        system_instruction: str,
        response_schema: Dict[str, Any],
        shape: Type[T],
    ) -> Tuple[T, TokenUsage]:
        """Call the model for one role, account its tokens and validate the answer."""
        parts = [*config.background_material, ContentPart(text=instruction)]

        try:
            response = await self.client.generate(
                config.model_name,
                parts,
                system_instruction=system_instruction,
                response_schema=response_schema,
            )
        except TransportError as e:
            raise e.with_context(role, round_id)
        except Exception as e:
            raise TransportError(f"Model API error: {e}", role=role, round_id=round_id) from e

        usage = resolve_usage(response.usage.input_tokens, response.usage.total_tokens)
        self.accountant.record(role, round_id, usage)

        parsed = validate(response.text, shape, expected_count=config.draft_count)
        if parsed is None:
            noun = "draft" if role is Role.WRITER else "review"
            raise ResponseMalformedError(
                f"The {role.value} returned invalid JSON, or its {noun} count does not "
                f"match the required {config.draft_count}. Check the {role.value} prompt "
                f"and the API response.",
                role=role,
                round_id=round_id,
                raw_text=response.text,
            )
        return parsed, usage

    def _progress(self, message: str) -> None:
        logger.info(message)
        if self.on_progress:
            self.on_progress(message)
