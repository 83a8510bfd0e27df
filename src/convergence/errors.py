"""Error taxonomy for the convergence pipeline.

Pre-flight errors (ValidationError, CycleError, EvaluationError raised while
building, resolving or evaluating) abort a run before any mutation.
Apply-time errors (ProviderError, EvaluationError on deferred values) are
contained to the failing node and its dependents.
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class for all engine errors."""

    pass


class ValidationError(EngineError):
    """Raised when a declaration set is structurally invalid.

    Carries every issue found so a template can be fixed in one pass.
    """

    def __init__(self, message: str, issues: list[str] | None = None) -> None:
        self.issues = list(issues or [])
        if self.issues:
            message = message + ":\n  - " + "\n  - ".join(self.issues)
        super().__init__(message)


class CycleError(EngineError):
    """Raised when the dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(f"Circular dependency detected: {' -> '.join(self.cycle)}")


class EvaluationError(EngineError):
    """Raised when an expression cannot be resolved."""

    def __init__(
        self,
        message: str,
        node_id: str | None = None,
        path: str | None = None,
    ) -> None:
        self.node_id = node_id
        self.path = path
        self.reason = message
        location = ""
        if node_id:
            location = f"{node_id}"
            if path:
                location += f" at '{path}'"
            location += ": "
        super().__init__(location + message)

    def located(self, node_id: str, path: str) -> EvaluationError:
        """Return a copy of this error annotated with where it happened."""
        if self.node_id is not None:
            return self
        return type(self)(self.reason, node_id=node_id, path=path)


class ExcludedReferenceError(EvaluationError):
    """Raised when an expression needs a value from an excluded resource."""

    pass


class ProviderError(EngineError):
    """Raised by provider plugins.

    Attributes:
        transient: True when the call may succeed if retried.
    """

    transient: bool = False

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class TransientProviderError(ProviderError):
    """Rate limiting, timeouts and network failures."""

    transient = True


class PermanentProviderError(ProviderError):
    """Validation failures, permission denials and other non-retryable errors."""

    transient = False
