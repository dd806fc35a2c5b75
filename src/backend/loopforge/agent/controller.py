# [Core: Run Control]
"""
Run Controller — the external face of the refinement loop.

Owns the run configuration, run state, iteration history and token totals.
Exactly one run exists per controller, and only one batch of rounds can be
in flight at a time.

State machine:
    idle    --start-->            running
    running --converged/exhausted/batch done--> paused
    running --transport or validation failure--> failed
    paused  --continue_manually--> running
    failed  --continue_manually (history kept) or start--> running
    any     --reset-->            idle
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError

from loopforge.agent.errors import (
    ConfigurationInvalidError,
    NothingToContinueError,
    RunError,
    RunInProgressError,
)
from loopforge.agent.orchestrator import IterationOrchestrator, RoundsOutcome
from loopforge.models.schemas import (
    ErrorDetail,
    IterationRecord,
    RunConfiguration,
    RunResult,
    RunState,
    StopReason,
    TokenTotals,
)
from loopforge.services.model_client import ModelClient
from loopforge.services.token_accountant import TokenAccountant

logger = logging.getLogger(__name__)

ConfigInput = Union[RunConfiguration, Mapping[str, Any]]


def parse_configuration(data: ConfigInput) -> RunConfiguration:
    """Validate run parameters atomically. Raises ConfigurationInvalidError."""
    if isinstance(data, RunConfiguration):
        return data
    try:
        return RunConfiguration.model_validate(data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
            for err in e.errors(include_url=False)
        )
        raise ConfigurationInvalidError(f"Invalid run configuration: {problems}") from e


class RunController:
    """
    Start, continue and reset a refinement run.

    Usage:
        controller = RunController(OpenAICompatibleModelClient())
        result = await controller.start({"writerBrief": "...", "reviewerCriteria": "..."})
        if result.state == RunState.PAUSED:
            result = await controller.continue_manually(2, "Tighten the intro.")
    """

    def __init__(self, client: ModelClient):
        self.client = client
        self.accountant = TokenAccountant()
        self._state = RunState.IDLE
        self._config: Optional[RunConfiguration] = None
        self._history: List[IterationRecord] = []
        self._status_message = ""
        self._last_error: Optional[ErrorDetail] = None
        self._task: Optional[asyncio.Task] = None
        # Bumped on every start/reset so a batch outliving a reset is ignored
        self._generation = 0

    # ──────────────────────────────────────────────
    # Read accessors
    # ──────────────────────────────────────────────

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def config(self) -> Optional[RunConfiguration]:
        return self._config

    @property
    def history(self) -> Tuple[IterationRecord, ...]:
        return tuple(self._history)

    @property
    def token_totals(self) -> TokenTotals:
        return self.accountant.totals()

    @property
    def status_message(self) -> str:
        return self._status_message

    @property
    def last_error(self) -> Optional[ErrorDetail]:
        return self._last_error

    @property
    def latest_feedback(self) -> Optional[str]:
        """Consolidated feedback of the latest round, offered for human editing."""
        if self._history and self._history[-1].reviewer_output is not None:
            return self._history[-1].reviewer_output.consolidated_feedback
        return None

    def final_document(self) -> Optional[str]:
        """Content of the latest round's selected draft, if there is one."""
        if not self._history:
            return None
        selected = self._history[-1].selected_draft
        return selected.content if selected else None

    # ──────────────────────────────────────────────
    # Operations
    # ──────────────────────────────────────────────

    async def start(self, config: ConfigInput) -> RunResult:
        """Validate the configuration and run automatically until a pause."""
        config = self._begin_start(config)
        return await self._drive(start_id=1, count=config.max_iterations, is_manual_batch=False)

    async def continue_manually(
        self,
        round_count: int,
        feedback_override: Optional[str] = None,
    ) -> RunResult:
        """Run exactly `round_count` more rounds, ignoring the target score."""
        start_id = self._begin_continue(round_count, feedback_override)
        return await self._drive(
            start_id=start_id,
            count=round_count,
            is_manual_batch=True,
            feedback_override=feedback_override,
        )

    def start_in_background(self, config: ConfigInput) -> asyncio.Task:
        """Like start(), but returns once the run is marked running."""
        config = self._begin_start(config)
        return self._spawn(self._drive(start_id=1, count=config.max_iterations, is_manual_batch=False))

    def continue_in_background(
        self,
        round_count: int,
        feedback_override: Optional[str] = None,
    ) -> asyncio.Task:
        start_id = self._begin_continue(round_count, feedback_override)
        return self._spawn(self._drive(
            start_id=start_id,
            count=round_count,
            is_manual_batch=True,
            feedback_override=feedback_override,
        ))

    def reset(self) -> None:
        """Forget the run entirely and return to idle."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        self._generation += 1
        self._state = RunState.IDLE
        self._config = None
        self._history = []
        self._status_message = ""
        self._last_error = None
        # A batch still in flight keeps the old ledger
        self.accountant = TokenAccountant()
        logger.info("Run reset")

    # ──────────────────────────────────────────────
    # Internals
    # ──────────────────────────────────────────────

    def _begin_start(self, config: ConfigInput) -> RunConfiguration:
        if self._state == RunState.RUNNING:
            raise RunInProgressError("A run is already in progress")
        parsed = parse_configuration(config)

        self._generation += 1
        self._config = parsed
        self._history = []
        self._last_error = None
        self.accountant = TokenAccountant()
        self._state = RunState.RUNNING
        self._status_message = "Starting run..."
        logger.info(
            f"Starting run: model={parsed.model_name} drafts={parsed.draft_count} "
            f"min={parsed.min_iterations} max={parsed.max_iterations} "
            f"target={parsed.target_score} background_parts={len(parsed.background_material)}"
        )
        return parsed

    def _begin_continue(self, round_count: int, feedback_override: Optional[str]) -> int:
        if self._state == RunState.RUNNING:
            raise RunInProgressError("A run is already in progress")
        if isinstance(round_count, bool) or not isinstance(round_count, int) or round_count < 1:
            raise ConfigurationInvalidError("Manual continuation round count must be an integer >= 1")
        if feedback_override is not None and not feedback_override.strip():
            raise ConfigurationInvalidError("Consolidated feedback must not be empty")
        if self._config is None or not self._history or self._state not in (RunState.PAUSED, RunState.FAILED):
            raise NothingToContinueError("There is no previous round to continue from")

        start_id = self._history[-1].id + 1
        self._last_error = None
        self._state = RunState.RUNNING
        self._status_message = f"Continuing manually from round {start_id}..."
        logger.info(f"Manual continuation: {round_count} round(s) from round {start_id}")
        return start_id

    def _spawn(self, coro) -> asyncio.Task:
        self._task = asyncio.create_task(coro)
        return self._task

    async def _drive(
        self,
        start_id: int,
        count: int,
        is_manual_batch: bool,
        feedback_override: Optional[str] = None,
    ) -> RunResult:
        generation = self._generation

        def on_progress(message: str) -> None:
            if generation == self._generation:
                self._status_message = message

        orchestrator = IterationOrchestrator(
            self.client,
            self.accountant,
            on_progress=on_progress,
        )
        try:
            outcome = await orchestrator.run_rounds(
                self._config,
                self._history,
                start_id=start_id,
                count=count,
                is_manual_batch=is_manual_batch,
                feedback_override=feedback_override,
            )
        except RunError as e:
            return self._fail(e, generation, start_id)
        except Exception as e:
            logger.exception(f"Unexpected error while running rounds: {e}")
            return self._fail(RunError(f"Unexpected error: {e}"), generation, start_id)

        if generation != self._generation:
            logger.info("Run was reset while a batch was in flight; discarding its result")
            return self._result(stop_reason=None, rounds_completed=0)

        self._state = RunState.PAUSED
        self._status_message = self._pause_message(outcome, is_manual_batch)
        logger.info(self._status_message)
        return self._result(stop_reason=outcome.stop_reason, rounds_completed=len(outcome.records))

    def _fail(self, error: RunError, generation: int, start_id: int) -> RunResult:
        if generation != self._generation:
            return self._result(stop_reason=None, rounds_completed=0)
        role = error.role.value if error.role else None
        logger.error(f"Run failed ({error.kind}, {role} round {error.round_id}): {error}")
        self._state = RunState.FAILED
        self._last_error = error.to_detail()
        self._status_message = "Processing failed."
        return self._result(stop_reason=None, rounds_completed=len(self._history) - start_id + 1)

    def _pause_message(self, outcome: RoundsOutcome, is_manual_batch: bool) -> str:
        config = self._config
        score = self._history[-1].selected_score if self._history else 0
        if outcome.stop_reason == StopReason.CONVERGED:
            return (
                f"Target score {config.target_score} reached (selected draft score: {score}) "
                f"and at least {config.min_iterations} rounds completed. Paused."
            )
        if outcome.stop_reason == StopReason.EXHAUSTED:
            return (
                f"Maximum of {config.max_iterations} rounds reached. Paused. "
                f"Final selected draft score: {score}"
            )
        done = len(outcome.records) if is_manual_batch else "all"
        return f"Completed {done} requested round(s). Paused. Final selected draft score: {score}"

    def _result(self, stop_reason: Optional[StopReason], rounds_completed: int) -> RunResult:
        last = self._history[-1] if self._history else None
        return RunResult(
            state=self._state,
            stop_reason=stop_reason,
            rounds_completed=max(0, rounds_completed),
            last_round_id=last.id if last else None,
            selected_score=last.selected_score if last else None,
            status_message=self._status_message,
            error=self._last_error,
        )
