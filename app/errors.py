# =============================================================================
# Orchestration Errors
# =============================================================================
#
# Callers of the orchestrator see exactly one exception type,
# OrchestrationError. The `kind` attribute says which failure produced it;
# the original exception is kept both as `cause` and as `__cause__`
# (raised with `raise ... from`).
#
# Failures with a sensible partial answer (multi-intent classification,
# handoff target missing, single agent missing) are recovered inside the
# orchestrator and never surface here.
# =============================================================================

from __future__ import annotations

import enum


class ErrorKind(str, enum.Enum):
    """Failure categories produced by the orchestration core."""

    CLASSIFICATION_FAILURE = "classification_failure"
    AGENT_RESOLUTION_FAILURE = "agent_resolution_failure"
    AGENT_INVOCATION_FAILURE = "agent_invocation_failure"
    HANDOFF_TARGET_UNAVAILABLE = "handoff_target_unavailable"
    EMPTY_RESULT_SET = "empty_result_set"


class OrchestrationError(Exception):
    """Raised when a request cannot be answered at all."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.cause = cause

    def __str__(self) -> str:
        base = super().__str__()
        if self.cause is not None:
            return f"{base} ({self.kind.value}: {self.cause})"
        return f"{base} ({self.kind.value})"
