"""
Error kinds raised by the refinement loop and its transport.

Run errors (transport and malformed output) abort the run and are reported
back to the caller as an ErrorDetail. Caller errors (bad configuration,
run already in progress, nothing to continue) are raised before any model
call is made.
"""
from __future__ import annotations

from typing import Optional

from loopforge.models.schemas import ErrorDetail, Role


class LoopForgeError(Exception):
    """Base class for all Loop Forge errors."""

    kind = "error"

    def to_detail(self) -> ErrorDetail:
        return ErrorDetail(kind=self.kind, message=str(self))


# ──────────────────────────────────────────────
# Caller errors
# ──────────────────────────────────────────────

class ConfigurationInvalidError(LoopForgeError):
    kind = "configuration_invalid"


class RunInProgressError(LoopForgeError):
    kind = "run_in_progress"


class NothingToContinueError(LoopForgeError):
    kind = "nothing_to_continue"


# ──────────────────────────────────────────────
# Run errors
# ──────────────────────────────────────────────

class RunError(LoopForgeError):
    """An error that aborts an in-progress run. Carries the role and round."""

    kind = "run_error"

    def __init__(self, message: str, role: Optional[Role] = None, round_id: Optional[int] = None):
        super().__init__(message)
        self.role = role
        self.round_id = round_id

    def with_context(self, role: Role, round_id: int) -> RunError:
        self.role = role
        self.round_id = round_id
        return self

    def to_detail(self) -> ErrorDetail:
        return ErrorDetail(
            kind=self.kind,
            message=str(self),
            role=self.role,
            round_id=self.round_id,
        )


class TransportError(RunError):
    """Generic model API failure (connection, timeout, server error)."""

    kind = "transport_error"


class TransportAuthError(TransportError):
    kind = "transport_auth"


class TransportRateLimitedError(TransportError):
    kind = "transport_rate_limited"


class TransportSchemaRejectedError(TransportError):
    kind = "transport_schema_rejected"


class ResponseMalformedError(RunError):
    """The model answered, but not with a valid value of the expected shape."""

    kind = "response_malformed"

    def __init__(self, message: str, role: Role, round_id: int, raw_text: str):
        super().__init__(message, role=role, round_id=round_id)
        self.raw_text = raw_text

    def to_detail(self) -> ErrorDetail:
        detail = super().to_detail()
        detail.raw_text = self.raw_text
        return detail
