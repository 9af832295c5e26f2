"""Stepflow exceptions."""

from typing import Any, Dict, List, Optional
from dataclasses import dataclass


@dataclass
class ValidationError:
    """Single validation error."""
    message: str
    path: str = ""
    exit_code: int = 2


class StepflowError(Exception):
    """
    Base class for all errors raised by stepflow.

    Every error carries a message and a free-form context dict, and can be
    rendered as the `{"type", "message", "context"}` dict used in command
    results and logs.
    """

    type = "stepflow"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None,
                 wrapped: Optional[BaseException] = None):
        self.message = message
        self.context = context or {}
        self.wrapped = wrapped
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the error dict format."""
        return {
            "type": self.type,
            "message": self.message,
            "context": self.context,
        }


class ConfigurationError(StepflowError):
    """Invalid step, command or project configuration."""
    type = "configuration"


class ProjectValidationError(ConfigurationError):
    """Raised when project configuration validation fails.

    The loader accumulates every problem it finds and raises them together,
    allowing the CLI to catch it and map to the validation exit code.
    """

    def __init__(self, errors: List[ValidationError]):
        self.errors = errors
        self.exit_code = 2  # Default validation exit code

        messages = []
        for error in errors:
            where = f" (at {error.path})" if error.path else ""
            messages.append(f"Validation error: {error.message}{where}")

        super().__init__(
            "\n".join(messages),
            context={"errors": [{"message": e.message, "path": e.path} for e in errors]},
        )


class TemplateStringError(StepflowError):
    """A template string could not be parsed or evaluated."""
    type = "template-string"


class ContextKeyError(TemplateStringError):
    """A template looked up a key that does not exist in the context."""

    def __init__(self, message: str, key_path: Optional[List[Any]] = None):
        super().__init__(message, context={"key_path": list(key_path or [])})
        self.key_path = list(key_path or [])


class TemplateReferenceError(TemplateStringError):
    """A template referenced a step that is not available (itself or a later step)."""
    type = "template-reference"


class UnknownStepError(ContextKeyError, ConfigurationError):
    """
    A template referenced a step name that is not part of the sequence.

    Still a missing key, so `||` falls through it like any other.
    """
    type = "configuration"


class OperationError(StepflowError):
    """An operation failed while running."""
    type = "operation"


class ScriptError(OperationError):
    """An inline script exited with a non-zero code."""
    type = "script"

    def __init__(self, message: str, exit_code: int, stdout: str = "", stderr: str = "",
                 output: str = ""):
        super().__init__(message, context={
            "exit_code": exit_code,
            "stdout": stdout,
            "stderr": stderr,
        })
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.output = output


class ResolutionError(OperationError):
    """One or more graph tasks failed while resolving template dependencies."""
    type = "resolution"

    def __init__(self, message: str, errors: Optional[List[BaseException]] = None,
                 context: Optional[Dict[str, Any]] = None):
        self.errors = list(errors or [])
        context = dict(context or {})
        context.setdefault("errors", [str(e) for e in self.errors])
        super().__init__(message, context=context)


class FilesystemError(StepflowError):
    """A file could not be read or written."""
    type = "filesystem"


class InternalError(StepflowError):
    """Unexpected condition inside stepflow itself."""
    type = "internal"


def to_stepflow_error(error: BaseException) -> StepflowError:
    """
    Wrap a foreign exception so it can be reported like any other stepflow error.

    Args:
        error: Any exception

    Returns:
        The error itself if it already is a StepflowError, otherwise an
        OperationError wrapping it
    """
    if isinstance(error, StepflowError):
        return error
    return OperationError(
        f"{type(error).__name__}: {error}",
        context={"wrapped_type": type(error).__name__},
        wrapped=error,
    )
