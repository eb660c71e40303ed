"""Error taxonomy shared by the store, the reasoning adapters and the executor."""

from __future__ import annotations


class TaskEngineError(RuntimeError):
    """Base class for engine errors."""


class ValidationError(TaskEngineError):
    """Structurally invalid input: plan, agent response, or entry payload."""


class UpstreamServiceError(TaskEngineError):
    """Reasoning service or tool call failed."""

    def __init__(self, message: str, *, retryable: bool, reason_code: str | None = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.reason_code = reason_code


class ConcurrencyConflict(TaskEngineError):
    """Append rejected because the expected sequence number was already taken."""

    def __init__(self, context_id: str, *, expected: int, actual: int) -> None:
        super().__init__(
            f"Concurrent append on context {context_id}: "
            f"expected sequence {expected}, next free is {actual}.",
        )
        self.context_id = context_id
        self.expected = expected
        self.actual = actual


class StateCorruptionError(TaskEngineError):
    """Stored history violates a structural invariant."""

    def __init__(self, context_id: str, reason: str) -> None:
        super().__init__(f"History of context {context_id} is corrupt: {reason}")
        self.context_id = context_id
        self.reason = reason


class ContextNotFoundError(TaskEngineError):
    """No task context with the given id."""

    def __init__(self, context_id: str) -> None:
        super().__init__(f"Task context not found: {context_id}")
        self.context_id = context_id
