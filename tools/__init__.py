"""
Tools Package

Built-in tools the CGE agent can call:

- read_file, write_file, list_directory: sandboxed filesystem access (file_tools)
- apply_patch: unified-diff edits to an existing file (patch_tool)
- codebase_search: keyword relevance search over source files (search_tool)
- run_shell_command: allow-listed subprocess execution (shell_tool)

Every filesystem-bound tool goes through one shared SafeFileOps, built once
together with the registry and never mutated afterwards.
"""

from typing import Iterable, Optional

from tools.base import StandardizedToolError, Tool, ToolErrorCode, ToolRegistry, ToolResult
from tools.file_ops import SafeFileOps
from tools.file_tools import ListDirectoryTool, ReadFileTool, WriteFileTool
from tools.patch_tool import ApplyPatchTool
from tools.search_tool import CodebaseSearchTool
from tools.shell_tool import ShellCommandTool

READ_ONLY_TOOLS = ("read_file", "list_directory", "codebase_search")
FILE_WRITING_TOOLS = READ_ONLY_TOOLS + ("write_file", "apply_patch")
ALL_TOOLS = FILE_WRITING_TOOLS + ("run_shell_command",)


def build_default_registry(
    workspace_root: str,
    *,
    extra_roots: Iterable[str] = (),
    allowed_shell_commands: Optional[Iterable[str]] = None,
    file_ops: Optional[SafeFileOps] = None,
) -> ToolRegistry:
    """Registry holding every built-in tool, sandboxed to *workspace_root*."""
    ops = file_ops or SafeFileOps(workspace_root, *extra_roots)
    return ToolRegistry([
        ReadFileTool(ops),
        WriteFileTool(ops),
        ApplyPatchTool(ops),
        ListDirectoryTool(ops),
        CodebaseSearchTool(ops),
        ShellCommandTool(ops, allowed_shell_commands),
    ])


__all__ = [
    "ALL_TOOLS",
    "FILE_WRITING_TOOLS",
    "READ_ONLY_TOOLS",
    "SafeFileOps",
    "StandardizedToolError",
    "Tool",
    "ToolErrorCode",
    "ToolRegistry",
    "ToolResult",
    "build_default_registry",
]
