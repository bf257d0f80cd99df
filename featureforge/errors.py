"""Error taxonomy for the feature pipeline.

Every exception carries a ``retriable`` flag read by the durable step
substrate:
- TransientError: infrastructure failures (model, sandbox, database, source
  host). Steps that raise them are retried.
- NonRetriableError: protocol violations, unparseable agent output and
  designed phase failures. They abort the phase immediately.

Tool failures are never exceptions; they travel back to the model as
``ToolResult`` values.
"""

from __future__ import annotations

from typing import Any


class FeatureForgeError(Exception):
    """Base exception for pipeline errors."""

    retriable: bool = False

    def __init__(self, message: str, *, retriable: bool | None = None) -> None:
        super().__init__(message)
        if retriable is not None:
            self.retriable = retriable


# =============================================================================
# Transient (retried by the step substrate)
# =============================================================================

class TransientError(FeatureForgeError):
    """Infrastructure failure that may succeed on retry."""

    retriable = True


class ModelCallError(TransientError):
    """Raised when no provider could answer a model call."""


class SandboxError(TransientError):
    """Raised when a sandbox command or lifecycle call cannot be dispatched."""


class PersistenceError(TransientError):
    """Raised when a database operation fails."""


class SourceHostError(TransientError):
    """Raised when the source-hosting API rejects or fails a request."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        # 4xx other than rate limiting will not get better on retry
        retriable = status_code is None or status_code >= 500 or status_code == 429
        super().__init__(message, retriable=retriable)
        self.status_code = status_code


# =============================================================================
# Non-retriable
# =============================================================================

class NonRetriableError(FeatureForgeError):
    """Failure that must not be retried by any outer layer."""

    retriable = False


class ProtocolViolation(NonRetriableError):
    """Raised when a peer sends data that breaks the exchange contract.

    Examples: a CTA response that fails validation, a response of the wrong
    kind, a choice id that was never offered.
    """


class OutputParseError(NonRetriableError):
    """Raised when an agent's final text does not match its output schema."""

    def __init__(self, message: str, *, raw_text: str = "") -> None:
        super().__init__(message)
        self.raw_text = raw_text


class PhaseFailed(NonRetriableError):
    """Designed failure outcome of a phase.

    Carries the phase output (for example the per-attempt gate history) so the
    orchestrator can persist it for diagnosis.
    """

    def __init__(self, message: str, *, output: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.output = output


def is_retriable(exc: BaseException) -> bool:
    """Return whether a failed step should be retried."""
    if isinstance(exc, FeatureForgeError):
        return exc.retriable
    return True
