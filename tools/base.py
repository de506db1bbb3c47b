"""
Base Tool abstraction for CGE.

Tools follow a simple pattern:
1. Describe themselves (name, description, JSON-schema parameters)
2. Implement async execute(raw_args, progress)
3. Return a ToolResult with data or error

The model hands us raw JSON text for arguments. Tools decode it themselves
(usually through a pydantic model via ``parse_arguments``) and must never
raise on malformed input: a cge_errors.ValidationError becomes a failed
ToolResult carrying an INVALID_PARAMETERS / MISSING_PARAMETER error the
model can read and fix.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from cge_errors import ValidationError
from llm.base import ToolDefinition

# progress(fraction, status, step, total_steps)
ProgressCallback = Callable[[float, str, int, int], None]

ArgsT = TypeVar("ArgsT", bound=BaseModel)


class ToolErrorCode(str, Enum):
    INVALID_PARAMETERS = "INVALID_PARAMETERS"
    MISSING_PARAMETER = "MISSING_PARAMETER"
    PATH_OUTSIDE_WORKSPACE = "PATH_OUTSIDE_WORKSPACE"
    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    DIRECTORY_NOT_FOUND = "DIRECTORY_NOT_FOUND"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    CONTENT_TOO_LARGE = "CONTENT_TOO_LARGE"
    INVALID_LINE_RANGE = "INVALID_LINE_RANGE"
    COMMAND_NOT_FOUND = "COMMAND_NOT_FOUND"
    COMMAND_NOT_ALLOWED = "COMMAND_NOT_ALLOWED"
    COMMAND_TIMEOUT = "COMMAND_TIMEOUT"
    COMMAND_FAILED = "COMMAND_FAILED"
    PATCH_FAILED = "PATCH_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    TIMEOUT = "TIMEOUT"


@dataclass
class StandardizedToolError:
    """Structured tool failure with a hint aimed at the model."""

    code: ToolErrorCode
    message: str
    suggestion: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message}"

    def with_detail(self, key: str, value: Any) -> "StandardizedToolError":
        self.details[key] = value
        return self

    def format_for_llm(self) -> str:
        parts = [f"ERROR: {self.message}"]
        if self.suggestion:
            parts.append(f"SUGGESTION: {self.suggestion}")
        if self.details:
            details = ", ".join(f"{k}: {v}" for k, v in self.details.items())
            parts.append(f"DETAILS: {details}")
        return "\n".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "suggestion": self.suggestion,
            "details": dict(self.details),
        }

    # -- Common factories ----------------------------------------------------

    @classmethod
    def parameter(cls, name: str, reason: str) -> "StandardizedToolError":
        return cls(
            ToolErrorCode.INVALID_PARAMETERS,
            f"Invalid parameter '{name}': {reason}",
            f"Check the '{name}' parameter against the tool schema: {reason}",
        ).with_detail("parameter", name)

    @classmethod
    def missing_parameter(cls, name: str) -> "StandardizedToolError":
        return cls(
            ToolErrorCode.MISSING_PARAMETER,
            f"Required parameter '{name}' is missing",
            f"Provide the required parameter '{name}' in your tool call",
        ).with_detail("parameter", name)

    @classmethod
    def from_validation(cls, error: ValidationError) -> "StandardizedToolError":
        if error.missing:
            return cls.missing_parameter(error.parameter)
        return cls.parameter(error.parameter, error.reason)

    @classmethod
    def file_not_found(cls, path: str) -> "StandardizedToolError":
        return cls(
            ToolErrorCode.FILE_NOT_FOUND,
            f"File not found: {path}",
            f"The file '{path}' does not exist. Use 'list_directory' to check the path.",
        ).with_detail("file_path", path)

    @classmethod
    def directory_not_found(cls, path: str) -> "StandardizedToolError":
        return cls(
            ToolErrorCode.DIRECTORY_NOT_FOUND,
            f"Directory not found: {path}",
            f"The directory '{path}' does not exist. Use 'list_directory' on a parent directory.",
        ).with_detail("directory_path", path)

    @classmethod
    def outside_workspace(cls, path: str) -> "StandardizedToolError":
        return cls(
            ToolErrorCode.PATH_OUTSIDE_WORKSPACE,
            f"Path is outside workspace: {path}",
            "Use paths relative to the workspace root; do not use '..' or absolute "
            "paths that leave the workspace.",
        ).with_detail("invalid_path", path)

    @classmethod
    def content_too_large(cls, size: int, max_size: int) -> "StandardizedToolError":
        return cls(
            ToolErrorCode.CONTENT_TOO_LARGE,
            f"Content too large: {size} bytes (max: {max_size})",
            f"Keep content under {max_size} bytes or read a line range instead.",
        ).with_detail("size", size).with_detail("max_size", max_size)

    @classmethod
    def invalid_line_range(cls, start: int, end: int) -> "StandardizedToolError":
        return cls(
            ToolErrorCode.INVALID_LINE_RANGE,
            f"Invalid line range: start_line={start}, end_line={end}",
            "Ensure 1 <= start_line <= end_line and both are within the file.",
        ).with_detail("start_line", start).with_detail("end_line", end)


@dataclass
class ToolResult:
    """Result from executing a tool."""

    success: bool
    data: Any = None
    error: str = ""
    standardized_error: Optional[StandardizedToolError] = None

    def __post_init__(self):
        if self.standardized_error is not None and not self.error:
            self.error = str(self.standardized_error)
        if not self.success and not self.error:
            self.error = "tool failed without an error message"

    @classmethod
    def ok(cls, data: Any = None) -> "ToolResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error) -> "ToolResult":
        """Build a failed result from a message or a StandardizedToolError."""
        if isinstance(error, StandardizedToolError):
            return cls(success=False, error=str(error), standardized_error=error)
        return cls(success=False, error=str(error))

    def format_for_llm(self) -> str:
        """Text stored in the tool-role message for this result."""
        if not self.success:
            if self.standardized_error is not None:
                return self.standardized_error.format_for_llm()
            return f"Error: {self.error}"
        if self.data is None:
            return "Tool executed successfully"
        if isinstance(self.data, str):
            return self.data
        try:
            return json.dumps(self.data, indent=2, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            return str(self.data)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": self.success}
        if self.data is not None:
            out["data"] = self.data
        if self.error:
            out["error"] = self.error
        if self.standardized_error is not None:
            out["standardized_error"] = self.standardized_error.to_dict()
        return out


class Tool(ABC):
    """
    Abstract base class for tools.

    Subclasses provide name/description/parameters and implement execute().
    """

    # Tools that call the progress callback themselves set this; the
    # executor reports start/finish for the rest.
    reports_progress: bool = False

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @property
    @abstractmethod
    def description(self) -> str:
        pass

    @property
    @abstractmethod
    def parameters(self) -> Dict[str, Any]:
        """JSON schema for the tool's arguments."""
        pass

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )

    @abstractmethod
    async def execute(self, raw_args: str,
                      progress: Optional[ProgressCallback] = None) -> ToolResult:
        """
        Execute the tool.

        Args:
            raw_args: Arguments as raw JSON text, exactly as the model produced them
            progress: Optional callback for incremental progress reports

        Returns:
            ToolResult with success/failure and data
        """
        pass

    @staticmethod
    def decode_arguments(raw_args, model: Type[ArgsT]) -> ArgsT:
        """Decode raw JSON arguments into *model*.

        Raises cge_errors.ValidationError naming the first offending parameter.
        """
        if isinstance(raw_args, (bytes, bytearray)):
            raw_args = raw_args.decode("utf-8", errors="replace")
        if raw_args is None or (isinstance(raw_args, str) and not raw_args.strip()):
            payload: Any = {}
        elif isinstance(raw_args, dict):
            payload = raw_args
        else:
            try:
                payload = json.loads(raw_args)
            except (TypeError, json.JSONDecodeError) as e:
                raise ValidationError("arguments", f"not valid JSON ({e})") from e
        if not isinstance(payload, dict):
            raise ValidationError("arguments", "expected a JSON object")

        try:
            return model.model_validate(payload)
        except PydanticValidationError as e:
            first = e.errors()[0]
            loc = ".".join(str(p) for p in first.get("loc", ())) or "arguments"
            raise ValidationError(
                loc, first.get("msg", "invalid value"), missing=first.get("type") == "missing"
            ) from e

    @classmethod
    def parse_arguments(cls, raw_args, model: Type[ArgsT]) -> Tuple[Optional[ArgsT], Optional[ToolResult]]:
        """Like ``decode_arguments`` but never raises.

        Returns ``(args, None)`` on success or ``(None, failed_result)``.
        """
        try:
            return cls.decode_arguments(raw_args, model), None
        except ValidationError as e:
            return None, ToolResult.fail(StandardizedToolError.from_validation(e))


class ToolRegistry:
    """Registry of available tools.

    Built once at startup and read-only afterwards, so concurrent runs can
    share it without locking.
    """

    def __init__(self, tools: Optional[Iterable[Tool]] = None):
        self._tools: Dict[str, Tool] = {}
        for tool in tools or ():
            self.register(tool)

    def register(self, tool: Tool) -> None:
        """Register a tool. Raises ValueError if the name is taken."""
        name = tool.name
        if name in self._tools:
            raise ValueError(f"tool {name!r} already registered")
        self._tools[name] = tool

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def list_tools(self) -> List[Tool]:
        return list(self._tools.values())

    def names(self) -> List[str]:
        return list(self._tools.keys())

    def definitions(self, allowed: Optional[Iterable[str]] = None) -> List[ToolDefinition]:
        """Tool definitions, optionally limited to the *allowed* names."""
        allowed_set = set(allowed) if allowed else None
        return [
            tool.definition
            for tool in self._tools.values()
            if allowed_set is None or tool.name in allowed_set
        ]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools
