# [Shared: Token Accounting]
"""
Token Accountant — accumulates token usage reported by the model transport.

Every successful writer/reviewer call is recorded. The totals are for
display only; nothing in the loop makes decisions from them.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from loopforge.models.schemas import Role, TokenTotals, TokenUsage

logger = logging.getLogger(__name__)


@dataclass
class UsageRecord:
    """Token usage of a single model call."""
    role: Role
    round_id: int
    input_tokens: int = 0
    output_tokens: int = 0
    timestamp: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


def resolve_usage(
    input_tokens: Optional[int],
    total_tokens: Optional[int],
) -> TokenUsage:
    """
    Derive per-call input/output counts from reported usage metadata.

    Output is `total - input` when a positive total is reported and is not
    smaller than the input; otherwise output counts as 0.
    """
    input_count = max(0, input_tokens or 0)
    total = total_tokens or 0
    if total > 0 and total >= input_count:
        return TokenUsage(input=input_count, output=total - input_count)
    if total > 0:
        logger.warning(
            f"Inconsistent usage metadata: total {total} < input {input_count}; "
            f"counting 0 output tokens"
        )
    return TokenUsage(input=input_count, output=0)


@dataclass
class TokenAccountant:
    """Running ledger of token usage for one run."""
    records: List[UsageRecord] = field(default_factory=list)

    @property
    def input_tokens(self) -> int:
        return sum(r.input_tokens for r in self.records)

    @property
    def output_tokens(self) -> int:
        return sum(r.output_tokens for r in self.records)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def call_count(self) -> int:
        return len(self.records)

    def record(self, role: Role, round_id: int, usage: TokenUsage) -> UsageRecord:
        """Add one call's usage to the ledger."""
        entry = UsageRecord(
            role=role,
            round_id=round_id,
            input_tokens=usage.input,
            output_tokens=usage.output,
            timestamp=time.time(),
        )
        self.records.append(entry)
        return entry

    def tokens_per_round(self) -> Dict[int, int]:
        """Map of round id → total tokens spent in that round."""
        rounds = sorted(set(r.round_id for r in self.records))
        return {
            i: sum(r.total_tokens for r in self.records if r.round_id == i)
            for i in rounds
        }

    def totals(self) -> TokenTotals:
        return TokenTotals(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            total_tokens=self.total_tokens,
        )

    def reset(self) -> None:
        self.records.clear()

    def to_dict(self) -> dict:
        """Serialize for JSON output."""
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "call_count": self.call_count,
            "tokens_per_round": {
                str(k): v for k, v in self.tokens_per_round().items()
            },
        }
