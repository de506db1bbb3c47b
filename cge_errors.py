"""Error taxonomy shared by every CGE layer.

Like cge_constants, this module has no project imports so that llm/,
tools/ and agent/ can all depend on it without cycles.

Propagation rules:
    ConfigurationError, TransportError   -> stop the run immediately
    ToolNotFoundError, ToolExecutionError,
    ValidationError                      -> folded into a tool message, loop continues
    IterationLimitError, RunTimeoutError -> terminal, reported on the RunResult
    SandboxViolationError                -> fails the file operation, always surfaced
"""

from typing import Optional


class CGEError(Exception):
    """Base class for all CGE errors."""


class ConfigurationError(CGEError):
    """Unknown provider/model or an invalid configuration value."""


class TransportError(CGEError):
    """The LLM provider could not be reached or answered with garbage."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ModelNotFoundError(TransportError):
    """The provider does not know the requested model."""


class ToolNotFoundError(CGEError):
    def __init__(self, name: str):
        super().__init__(f"tool not found: {name}")
        self.name = name


class ToolExecutionError(CGEError):
    def __init__(self, name: str, message: str):
        super().__init__(f"tool {name!r} failed: {message}")
        self.name = name


class ValidationError(CGEError):
    """Tool arguments could not be decoded or did not match the schema."""

    def __init__(self, parameter: str, reason: str, missing: bool = False):
        super().__init__(f"invalid parameter {parameter!r}: {reason}")
        self.parameter = parameter
        self.reason = reason
        self.missing = missing


class IterationLimitError(CGEError):
    def __init__(self, max_iterations: int):
        super().__init__(f"reached maximum iterations ({max_iterations})")
        self.max_iterations = max_iterations


class RunTimeoutError(CGEError):
    def __init__(self, timeout_s: float):
        super().__init__(f"run exceeded {timeout_s:g}s wall-clock limit")
        self.timeout_s = timeout_s


class SandboxViolationError(CGEError):
    def __init__(self, path: str, reason: str = "outside allowed directories"):
        super().__init__(f"path {path!r} is {reason}")
        self.path = path


class PlanValidationError(CGEError):
    """The model's final answer is not a valid plan document."""
