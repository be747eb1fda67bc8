"""Custom exception hierarchy for the taskweave orchestration core.

Every error surfaced by the core carries a stable ``code``, a human-readable
``message`` and an optional ``suggestion`` naming the next action to take.
Callers branch on the exception type; the CLI maps ``code`` to exit codes.

Exception Hierarchy:
    TaskweaveError (base)
    ├── ConfigurationError
    ├── NotFoundError
    │   ├── TaskNotFoundError
    │   └── StateNotFoundError
    ├── AlreadyExistsError
    ├── InvalidStateTransitionError
    ├── DependencyNotMetError
    ├── CircuitOpenError
    ├── ValidationError
    ├── FileSystemError
    ├── ParseError
    ├── StepsRolledBackError
    └── BatchOperationError

Example Usage:
    >>> from taskweave.exceptions import TaskNotFoundError
    >>> try:
    ...     await service.start_task("auth.login")
    ... except TaskNotFoundError as e:
    ...     print(e.code, e.suggestion)
"""

from typing import Any


class TaskweaveError(Exception):
    """Base exception for all taskweave errors.

    Attributes:
        message: Human-readable error description
        code: Stable machine-readable error code
        suggestion: Optional next action for the user
    """

    code = "TASKWEAVE_ERROR"

    def __init__(self, message: str, suggestion: str | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            suggestion: Optional suggestion for resolution
        """
        self.message = message
        self.suggestion = suggestion

        full_message = message
        if suggestion:
            full_message = f"{message}\nSuggestion: {suggestion}"
        super().__init__(full_message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for structured output."""
        data: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.suggestion:
            data["suggestion"] = self.suggestion
        return data


class ConfigurationError(TaskweaveError):
    """Configuration-related errors.

    Examples:
        - Configuration file not found
        - Invalid YAML syntax
        - Invalid configuration values
    """

    code = "CONFIGURATION_ERROR"


# =============================================================================
# Lookup Errors
# =============================================================================


class NotFoundError(TaskweaveError):
    """A task or the workflow state is absent.

    Often a valid branch rather than a fatal condition; repository lookups
    return ``None`` instead of raising, services raise this when the caller
    asked to act on something that does not exist.
    """

    code = "NOT_FOUND"


class TaskNotFoundError(NotFoundError):
    """No task exists with the requested id.

    Attributes:
        task_id: The id that was looked up
    """

    def __init__(self, task_id: str, suggestion: str | None = None) -> None:
        self.task_id = task_id
        super().__init__(
            f"Task not found: {task_id}",
            suggestion=suggestion or "List tasks to see valid ids",
        )


class StateNotFoundError(NotFoundError):
    """The workflow state has not been initialized."""

    def __init__(self, message: str = "Workflow state not found") -> None:
        super().__init__(message, suggestion="Initialize the workflow state first")


class AlreadyExistsError(TaskweaveError):
    """An entity with the same identity already exists.

    Attributes:
        entity_id: The conflicting identifier
    """

    code = "ALREADY_EXISTS"

    def __init__(self, message: str, entity_id: str | None = None, suggestion: str | None = None) -> None:
        self.entity_id = entity_id
        super().__init__(message, suggestion=suggestion)


# =============================================================================
# Lifecycle Errors
# =============================================================================


class InvalidStateTransitionError(TaskweaveError):
    """An illegal task status or workflow phase change was requested.

    Attributes:
        current: The state the entity is in
        target: The state that was requested
        allowed: States reachable from ``current``
    """

    code = "INVALID_STATE_TRANSITION"

    def __init__(
        self,
        message: str,
        current: str | None = None,
        target: str | None = None,
        allowed: list[str] | None = None,
    ) -> None:
        self.current = current
        self.target = target
        self.allowed = allowed or []

        suggestion = None
        if current is not None:
            allowed_list = ", ".join(self.allowed) if self.allowed else "none"
            suggestion = f"Allowed transitions from {current}: {allowed_list}"
        super().__init__(message, suggestion=suggestion)


class DependencyNotMetError(TaskweaveError):
    """A task was started before its dependencies completed.

    Recoverable: the caller should wait for the dependencies or pick another
    task.

    Attributes:
        task_id: Task that could not be started
        unmet: Dependency ids that are not completed (or do not exist)
    """

    code = "DEPENDENCY_NOT_MET"

    def __init__(self, task_id: str, unmet: list[str]) -> None:
        self.task_id = task_id
        self.unmet = list(unmet)
        super().__init__(
            f"Task {task_id} has unmet dependencies: {', '.join(self.unmet)}",
            suggestion="Complete the dependencies first or run the next ready task",
        )


class CircuitOpenError(TaskweaveError):
    """Raised by a circuit breaker that is short-circuiting calls.

    The error that opened the circuit is kept in the breaker's history, not
    here.

    Attributes:
        name: Name of the protected operation
        retry_after: Seconds until the breaker allows a trial call
    """

    code = "CIRCUIT_OPEN"

    def __init__(self, name: str, retry_after: float | None = None) -> None:
        self.name = name
        self.retry_after = retry_after

        suggestion = None
        if retry_after is not None:
            suggestion = f"Retry in {retry_after:.1f}s"
        super().__init__(f"Circuit breaker '{name}' is OPEN", suggestion=suggestion)


class ValidationError(TaskweaveError):
    """Malformed input. Never retried.

    Attributes:
        field: Name of the offending field, if known
    """

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None, suggestion: str | None = None) -> None:
        self.field = field
        super().__init__(message, suggestion=suggestion)


# =============================================================================
# Storage Errors
# =============================================================================


class FileSystemError(TaskweaveError):
    """A durable store primitive failed.

    Attributes:
        path: Store path involved in the failure
        os_code: errno name of the underlying OS error (e.g. ``EACCES``)
    """

    code = "FILE_SYSTEM_ERROR"

    def __init__(self, message: str, path: str | None = None, os_code: str | None = None) -> None:
        self.path = path
        self.os_code = os_code

        full_message = message
        if path:
            full_message = f"{message} (path: {path})"
        super().__init__(full_message)
        self.message = full_message


class ParseError(TaskweaveError):
    """A stored document could not be parsed.

    Attributes:
        path: Store path of the malformed document
    """

    code = "PARSE_ERROR"

    def __init__(self, message: str, path: str | None = None) -> None:
        self.path = path

        full_message = message
        if path:
            full_message = f"{message} (path: {path})"
        super().__init__(full_message)
        self.message = full_message


# =============================================================================
# Aggregate Errors
# =============================================================================


class StepsRolledBackError(TaskweaveError):
    """An ordered step sequence failed and its compensations ran.

    Attributes:
        failed_step: Name of the step that raised
        cause: The exception raised by the failed step
        compensation_errors: Exceptions raised while compensating, by step name
    """

    code = "STEPS_ROLLED_BACK"

    def __init__(
        self,
        failed_step: str,
        cause: BaseException,
        compensation_errors: dict[str, BaseException] | None = None,
    ) -> None:
        self.failed_step = failed_step
        self.cause = cause
        self.compensation_errors = compensation_errors or {}

        message = f"Step '{failed_step}' failed, rolled back: {_describe(cause)}"
        if self.compensation_errors:
            message = f"{message} ({len(self.compensation_errors)} compensation(s) failed)"
        super().__init__(message)


class BatchOperationError(TaskweaveError):
    """An atomic batch failed and every touched task was restored.

    Attributes:
        results: Per-operation results up to and including the failure
        cause: The exception raised by the failing operation
    """

    code = "BATCH_ROLLED_BACK"

    def __init__(self, cause: BaseException, results: list[Any] | None = None) -> None:
        self.cause = cause
        self.results = results or []
        super().__init__(
            f"Batch operation failed, rolled back: {_describe(cause)}",
            suggestion="Fix the failing operation and resubmit the batch",
        )


def _describe(error: BaseException) -> str:
    if isinstance(error, TaskweaveError):
        return error.message
    return str(error)
