# [Core: Convergence]
"""
Convergence policy — decides whether the automatic loop keeps going.
"""
from __future__ import annotations

from enum import Enum

from loopforge.models.schemas import RunConfiguration, StopReason


class Decision(str, Enum):
    CONTINUE = "continue"
    PAUSE_CONVERGED = "pause-converged"
    PAUSE_EXHAUSTED = "pause-exhausted"

    @property
    def is_pause(self) -> bool:
        return self is not Decision.CONTINUE

    @property
    def stop_reason(self) -> StopReason:
        if self is Decision.PAUSE_CONVERGED:
            return StopReason.CONVERGED
        if self is Decision.PAUSE_EXHAUSTED:
            return StopReason.EXHAUSTED
        raise ValueError("CONTINUE has no stop reason")


def decide(
    score: int,
    round_id: int,
    config: RunConfiguration,
    is_manual_batch: bool = False,
) -> Decision:
    """
    Decide what happens after a round.

    `score` must be the reviewer-selected draft's score, never an average or
    the best of all drafts. Manual batches always continue: they run their
    full requested count regardless of score.
    """
    if is_manual_batch:
        return Decision.CONTINUE
    if score >= config.target_score and round_id >= config.min_iterations:
        return Decision.PAUSE_CONVERGED
    if round_id >= config.max_iterations:
        return Decision.PAUSE_EXHAUSTED
    return Decision.CONTINUE
