"""run_shell_command: allow-listed subprocess execution inside the workspace.

Commands are split with ``shlex`` and executed directly (no shell), so
pipes, redirects and command chaining are rejected up front rather than
silently passed through as literal arguments.

Arguments that look like paths are resolved against the working directory
and must stay inside the sandbox, like every other file access.
"""

import asyncio
import contextlib
import logging
import os
import shlex
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from cge_constants import DEFAULT_ALLOWED_SHELL_COMMANDS
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

DEFAULT_TIMEOUT_SECONDS = 30
MAX_TIMEOUT_SECONDS = 600
MAX_STREAM_CHARS = 20_000

DANGEROUS_PATTERNS = (
    "rm -rf",
    "rm -fr",
    "sudo",
    "chmod 777",
    "mkfs",
    "dd if=",
    ":(){",
    "> /dev/",
)

SHELL_OPERATORS = (";", "&&", "||", "|", "`", "$(", ">", "<")

# Interpreters only run files from the workspace, never inline source.
INLINE_CODE_FLAGS = {
    "python": ("-c",),
    "python3": ("-c",),
    "node": ("-e", "--eval", "-p", "--print"),
}


class ShellCommandArgs(BaseModel):
    command: str = Field(min_length=1)
    working_directory: str = ""
    timeout_seconds: int = Field(default=DEFAULT_TIMEOUT_SECONDS, gt=0, le=MAX_TIMEOUT_SECONDS)


def _looks_like_path(value: str) -> bool:
    if not value:
        return False
    if value.startswith(("/", "~")):
        return True
    return "/" in value or value == ".."


def _inline_code_flag(program: str, argv: List[str]) -> Optional[str]:
    """The interpreter option in *argv* that would run inline source, if any."""
    flags = INLINE_CODE_FLAGS.get(program, ())
    for arg in argv[1:]:
        # Options after the script or module belong to it.
        if not arg.startswith("-") or arg.startswith("-m"):
            return None
        for flag in flags:
            if flag.startswith("--"):
                if arg == flag or arg.startswith(flag + "="):
                    return flag
            elif not arg.startswith("--") and flag[1] in arg[1:]:
                # Short options may be clustered: python -Bc ...
                return flag
    return None


def _clip(text: str) -> str:
    if len(text) <= MAX_STREAM_CHARS:
        return text
    return text[:MAX_STREAM_CHARS] + f"\n... [{len(text) - MAX_STREAM_CHARS} more chars]"


class ShellCommandTool(Tool):
    def __init__(self, file_ops: SafeFileOps,
                 allowed_commands: Optional[Iterable[str]] = None):
        self.file_ops = file_ops
        self.allowed_commands = tuple(allowed_commands or DEFAULT_ALLOWED_SHELL_COMMANDS)

    @property
    def name(self) -> str:
        return "run_shell_command"

    @property
    def description(self) -> str:
        return ("Executes a command in the workspace and returns its exit code, standard "
                "output and standard error. Only allow-listed programs can be run: "
                + ", ".join(self.allowed_commands))

    @property
    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "The command to execute (no pipes, redirects or chaining)",
                },
                "working_directory": {
                    "type": "string",
                    "description": "Working directory relative to the workspace root (defaults to the root)",
                },
                "timeout_seconds": {
                    "type": "integer",
                    "description": "Timeout for command execution in seconds",
                    "default": DEFAULT_TIMEOUT_SECONDS,
                },
            },
            "required": ["command"],
        }

    def check_command(self, command: str) -> Optional[StandardizedToolError]:
        """Return an error if *command* must not run, else None."""
        lowered = command.lower()
        for pattern in DANGEROUS_PATTERNS:
            if pattern in lowered:
                return StandardizedToolError(
                    ToolErrorCode.COMMAND_NOT_ALLOWED,
                    f"Command contains a blocked pattern: {pattern!r}",
                    "Run a narrower, non-destructive command.",
                ).with_detail("command", command)
        for op in SHELL_OPERATORS:
            if op in command:
                return StandardizedToolError(
                    ToolErrorCode.COMMAND_NOT_ALLOWED,
                    f"Shell operator {op!r} is not supported",
                    "Run a single program per call without pipes, redirects or chaining.",
                ).with_detail("command", command)

        try:
            argv = shlex.split(command)
        except ValueError as e:
            return StandardizedToolError.parameter("command", f"cannot be parsed ({e})")
        if not argv:
            return StandardizedToolError.missing_parameter("command")

        program = os.path.basename(argv[0])
        if program not in self.allowed_commands:
            return StandardizedToolError(
                ToolErrorCode.COMMAND_NOT_ALLOWED,
                f"Command not allowed: {program}",
                f"Allowed commands: {', '.join(self.allowed_commands)}",
            ).with_detail("command", program)
        flag = _inline_code_flag(program, argv)
        if flag is not None:
            return StandardizedToolError(
                ToolErrorCode.COMMAND_NOT_ALLOWED,
                f"Inline code ({flag}) is not allowed for {program}",
                "Write the code to a file in the workspace and run that file.",
            ).with_detail("command", program)
        return None

    def check_paths(self, argv: List[str], workdir: str) -> Optional[StandardizedToolError]:
        """Reject path-like arguments that resolve outside the sandbox."""
        for arg in argv[1:]:
            # --file=../x style options carry the path after "="
            value = arg.split("=", 1)[1] if arg.startswith("-") and "=" in arg else arg
            if not _looks_like_path(value):
                continue
            try:
                self.file_ops.join_path(workdir, os.path.expanduser(value))
            except SandboxViolationError:
                return StandardizedToolError.outside_workspace(value).with_detail("argument", arg)
        return None

    async def execute(self, raw_args: str,
                      progress: Optional[ProgressCallback] = None) -> ToolResult:
        args, failure = self.parse_arguments(raw_args, ShellCommandArgs)
        if failure:
            return failure

        rejection = self.check_command(args.command)
        if rejection is not None:
            logger.warning("Rejected shell command: %s (%s)", args.command, rejection.message)
            return ToolResult.fail(rejection)

        try:
            workdir = self.file_ops.validate_path(args.working_directory or ".")
        except SandboxViolationError:
            return ToolResult.fail(StandardizedToolError.outside_workspace(args.working_directory))
        if not os.path.isdir(workdir):
            return ToolResult.fail(StandardizedToolError.directory_not_found(args.working_directory))

        argv = shlex.split(args.command)
        rejection = self.check_paths(argv, workdir)
        if rejection is not None:
            logger.warning("Rejected shell command: %s (%s)", args.command, rejection.message)
            return ToolResult.fail(rejection)

        logger.info("Running shell command in %s: %s", workdir, args.command)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=workdir,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            return ToolResult.fail(StandardizedToolError(
                ToolErrorCode.COMMAND_NOT_FOUND,
                f"Command not found: {argv[0]}",
                "Check that the program is installed and on PATH.",
            ).with_detail("command", argv[0]))

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), args.timeout_seconds)
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            return ToolResult.fail(StandardizedToolError(
                ToolErrorCode.COMMAND_TIMEOUT,
                f"Command timed out after {args.timeout_seconds} seconds",
                "Use a larger timeout_seconds or a faster command.",
            ).with_detail("command", args.command))
        finally:
            # Cancellation of the turn must not leave the child running.
            if proc.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()

        data = {
            "command": args.command,
            "working_directory": args.working_directory or ".",
            "exit_code": proc.returncode,
            "stdout": _clip(stdout.decode("utf-8", errors="replace")),
            "stderr": _clip(stderr.decode("utf-8", errors="replace")),
        }
        if proc.returncode == 0:
            return ToolResult.ok(data)

        error = StandardizedToolError(
            ToolErrorCode.COMMAND_FAILED,
            f"Command exited with code {proc.returncode}",
            "Inspect stderr and adjust the command or the code it exercises.",
        ).with_detail("exit_code", proc.returncode)
        if data["stderr"]:
            error.with_detail("stderr", data["stderr"][:500])
        return ToolResult(success=False, data=data, standardized_error=error)
