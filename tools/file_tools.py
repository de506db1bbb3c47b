"""Filesystem tools: read_file, write_file, list_directory.

All three resolve paths through a shared SafeFileOps; a sandbox violation
becomes a PATH_OUTSIDE_WORKSPACE failure the model can see.
"""

import asyncio
import logging
import os
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from cge_constants import MAX_READ_FILE_BYTES, SKIPPABLE_DIRS, SOURCE_EXTENSIONS
from cge_errors import SandboxViolationError
from tools.base import (
    ProgressCallback,
    StandardizedToolError,
    Tool,
    ToolErrorCode,
    ToolResult,
)
from tools.file_ops import SafeFileOps

logger = logging.getLogger(__name__)


def os_error_result(error: Exception, path: str) -> ToolResult:
    """Map filesystem exceptions onto standardized tool errors."""
    if isinstance(error, SandboxViolationError):
        return ToolResult.fail(StandardizedToolError.outside_workspace(path))
    if isinstance(error, FileNotFoundError):
        return ToolResult.fail(StandardizedToolError.file_not_found(path))
    if isinstance(error, PermissionError):
        return ToolResult.fail(StandardizedToolError(
            ToolErrorCode.PERMISSION_DENIED,
            f"Permission denied: {path}",
            "Choose a file the current user can access.",
        ).with_detail("file_path", path))
    if isinstance(error, IsADirectoryError):
        return ToolResult.fail(StandardizedToolError.parameter(
            "path", f"'{path}' is a directory; use list_directory instead"
        ))
    return ToolResult.fail(StandardizedToolError(
        ToolErrorCode.INTERNAL_ERROR, f"{type(error).__name__}: {error}"
    ).with_detail("file_path", path))


# ---------------------------------------------------------------------------
# read_file
# ---------------------------------------------------------------------------


class ReadFileArgs(BaseModel):
    target_file: str
    start_line: Optional[int] = None
    end_line: Optional[int] = None


class ReadFileTool(Tool):
    def __init__(self, file_ops: SafeFileOps, max_bytes: int = MAX_READ_FILE_BYTES):
        self.file_ops = file_ops
        self.max_bytes = max_bytes

    @property
    def name(self) -> str:
        return "read_file"

    @property
    def description(self) -> str:
        return "Read the contents of a file, optionally limited to a line range"

    @property
    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "target_file": {
                    "type": "string",
                    "description": "The path of the file to read, relative to the workspace root",
                },
                "start_line": {
                    "type": "integer",
                    "description": "The line number to start reading from (1-based)",
                },
                "end_line": {
                    "type": "integer",
                    "description": "The line number to end reading at (1-based, inclusive)",
                },
            },
            "required": ["target_file"],
        }

    async def execute(self, raw_args: str,
                      progress: Optional[ProgressCallback] = None) -> ToolResult:
        args, failure = self.parse_arguments(raw_args, ReadFileArgs)
        if failure:
            return failure

        path = args.target_file
        try:
            size = self.file_ops.safe_stat(path).st_size
            if size > self.max_bytes:
                return ToolResult.fail(StandardizedToolError.content_too_large(size, self.max_bytes))
            text = self.file_ops.safe_read_text(path)
        except (OSError, SandboxViolationError) as e:
            return os_error_result(e, path)

        lines = text.splitlines()
        total = len(lines)
        start = args.start_line or 1
        end = args.end_line or total
        if args.start_line is not None or args.end_line is not None:
            if start < 1 or end < start or (total and start > total):
                return ToolResult.fail(StandardizedToolError.invalid_line_range(start, end))
            end = min(end, total)
            content = "\n".join(lines[start - 1:end])
        else:
            content = text

        return ToolResult.ok({
            "path": self.file_ops.relative_to_root(path),
            "content": content,
            "total_lines": total,
            "start_line": start if total else 0,
            "end_line": end,
        })


# ---------------------------------------------------------------------------
# write_file
# ---------------------------------------------------------------------------


class WriteFileArgs(BaseModel):
    file_path: str
    content: str
    create_dirs: bool = True


class WriteFileTool(Tool):
    def __init__(self, file_ops: SafeFileOps, max_bytes: int = MAX_READ_FILE_BYTES):
        self.file_ops = file_ops
        self.max_bytes = max_bytes

    @property
    def name(self) -> str:
        return "write_file"

    @property
    def description(self) -> str:
        return "Create or overwrite a file in the workspace with the given content"

    @property
    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "file_path": {
                    "type": "string",
                    "description": "Path of the file to write, relative to the workspace root",
                },
                "content": {
                    "type": "string",
                    "description": "The full content to write to the file",
                },
                "create_dirs": {
                    "type": "boolean",
                    "description": "Create missing parent directories (default true)",
                },
            },
            "required": ["file_path", "content"],
        }

    async def execute(self, raw_args: str,
                      progress: Optional[ProgressCallback] = None) -> ToolResult:
        args, failure = self.parse_arguments(raw_args, WriteFileArgs)
        if failure:
            return failure

        data = args.content.encode("utf-8")
        if len(data) > self.max_bytes:
            return ToolResult.fail(StandardizedToolError.content_too_large(len(data), self.max_bytes))

        path = args.file_path
        try:
            resolved = self.file_ops.validate_path(path)
            created = not os.path.exists(resolved)
            if not args.create_dirs and not os.path.isdir(os.path.dirname(resolved)):
                return ToolResult.fail(StandardizedToolError.directory_not_found(
                    os.path.dirname(path) or "."
                ))
            self.file_ops.safe_write_file(path, data, create_dirs=args.create_dirs)
        except (OSError, SandboxViolationError) as e:
            return os_error_result(e, path)

        logger.info("Wrote %d bytes to %s", len(data), resolved)
        return ToolResult.ok({
            "path": self.file_ops.relative_to_root(path),
            "bytes_written": len(data),
            "created": created,
        })


# ---------------------------------------------------------------------------
# list_directory
# ---------------------------------------------------------------------------


class ListDirectoryArgs(BaseModel):
    directory_path: str = "."
    recursive: bool = False
    include_hidden: bool = False
    max_depth: int = Field(default=3, ge=0)


class ListDirectoryTool(Tool):
    def __init__(self, file_ops: SafeFileOps, max_entries: int = 1000):
        self.file_ops = file_ops
        self.max_entries = max_entries

    @property
    def name(self) -> str:
        return "list_directory"

    @property
    def description(self) -> str:
        return ("List files and directories, optionally recursively. "
                "VCS, dependency and build directories are skipped.")

    @property
    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "directory_path": {
                    "type": "string",
                    "description": "Directory to list, relative to the workspace root ('.' for the root)",
                },
                "recursive": {
                    "type": "boolean",
                    "description": "Whether to list files recursively in subdirectories",
                },
                "include_hidden": {
                    "type": "boolean",
                    "description": "Whether to include hidden files and directories",
                },
                "max_depth": {
                    "type": "integer",
                    "description": "Maximum depth for recursive listing (ignored if recursive is false)",
                },
            },
            "required": ["directory_path"],
        }

    def _entry(self, full_path: str, name: str, is_dir: bool) -> Dict[str, Any]:
        try:
            size = 0 if is_dir else os.path.getsize(full_path)
        except OSError:
            size = 0
        entry = {
            "name": name,
            "path": os.path.relpath(full_path, self.file_ops.primary_root),
            "is_directory": is_dir,
            "size": size,
        }
        if not is_dir:
            entry["is_source_file"] = os.path.splitext(name)[1].lower() in SOURCE_EXTENSIONS
        return entry

    def _list(self, root: str, args: ListDirectoryArgs) -> List[Dict[str, Any]]:
        entries: List[Dict[str, Any]] = []
        max_depth = args.max_depth if args.recursive else 0

        for dirpath, dirnames, filenames in os.walk(root):
            depth = 0 if dirpath == root else os.path.relpath(dirpath, root).count(os.sep) + 1
            keep = []
            for d in sorted(dirnames):
                if d in SKIPPABLE_DIRS or (not args.include_hidden and d.startswith(".")):
                    continue
                full = os.path.join(dirpath, d)
                # Never follow links out of the sandbox.
                try:
                    self.file_ops.validate_path(full)
                except SandboxViolationError:
                    continue
                entries.append(self._entry(full, d, True))
                keep.append(d)
            for f in sorted(filenames):
                if not args.include_hidden and f.startswith("."):
                    continue
                entries.append(self._entry(os.path.join(dirpath, f), f, False))
            if len(entries) >= self.max_entries:
                break
            dirnames[:] = keep if depth < max_depth else []

        return entries[: self.max_entries]

    async def execute(self, raw_args: str,
                      progress: Optional[ProgressCallback] = None) -> ToolResult:
        args, failure = self.parse_arguments(raw_args, ListDirectoryArgs)
        if failure:
            return failure

        path = args.directory_path or "."
        try:
            resolved = self.file_ops.validate_path(path)
        except SandboxViolationError as e:
            return os_error_result(e, path)
        if not os.path.exists(resolved):
            return ToolResult.fail(StandardizedToolError.directory_not_found(path))
        if not os.path.isdir(resolved):
            return ToolResult.fail(StandardizedToolError.parameter(
                "directory_path", f"'{path}' is not a directory"
            ))

        entries = await asyncio.to_thread(self._list, resolved, args)
        entries.sort(key=lambda e: (not e["is_directory"], e["path"]))
        total_dirs = sum(1 for e in entries if e["is_directory"])
        total_files = len(entries) - total_dirs
        return ToolResult.ok({
            "directory_path": path,
            "entries": entries,
            "total_files": total_files,
            "total_dirs": total_dirs,
            "recursive": args.recursive,
            "truncated": len(entries) >= self.max_entries,
            "message": f"Listed {total_files} files and {total_dirs} directories in {path}",
        })
