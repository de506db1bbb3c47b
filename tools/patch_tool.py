"""apply_patch: apply a unified diff to one workspace file.

Hunks are matched against the file's current lines. When a hunk's context
does not sit at the line number from its header (models often get those
slightly wrong) the nearest exact match elsewhere in the file is used
instead. Either every hunk applies or the file is left untouched.
"""

import logging
import os
import re
import stat
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from cge_constants import MAX_READ_FILE_BYTES
from cge_errors import SandboxViolationError
from tools.base import (
    ProgressCallback,
    StandardizedToolError,
    Tool,
    ToolErrorCode,
    ToolResult,
)
from tools.file_ops import SafeFileOps
from tools.file_tools import os_error_result

logger = logging.getLogger(__name__)

BACKUP_SUFFIX = ".bak"

_HUNK_HEADER_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")


class PatchError(ValueError):
    """The patch text is malformed or does not match the file."""


@dataclass
class Hunk:
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    # (op, text) with op one of " ", "-", "+"
    lines: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def old_lines(self) -> List[str]:
        return [text for op, text in self.lines if op != "+"]

    @property
    def new_lines(self) -> List[str]:
        return [text for op, text in self.lines if op != "-"]

    def complete(self) -> bool:
        return (len(self.old_lines) >= self.old_count
                and len(self.new_lines) >= self.new_count)


def parse_unified_diff(patch: str) -> List[Hunk]:
    """Hunks of a single-file unified diff. ``---``/``+++`` headers are optional."""
    hunks: List[Hunk] = []
    current: Optional[Hunk] = None
    for lineno, line in enumerate(patch.splitlines(), start=1):
        if line.startswith("@@"):
            match = _HUNK_HEADER_RE.match(line)
            if not match:
                raise PatchError(f"invalid hunk header at line {lineno}: {line!r}")
            old_start, old_count, new_start, new_count = match.groups()
            current = Hunk(
                old_start=int(old_start),
                old_count=1 if old_count is None else int(old_count),
                new_start=int(new_start),
                new_count=1 if new_count is None else int(new_count),
            )
            hunks.append(current)
            continue
        if current is None or current.complete():
            # File headers, "diff --git" lines and trailing noise.
            continue
        if line.startswith("\\"):
            # "\ No newline at end of file"
            continue
        if line == "":
            current.lines.append((" ", ""))
        elif line[0] in " -+":
            current.lines.append((line[0], line[1:]))
        else:
            raise PatchError(f"unexpected line {lineno} inside hunk: {line!r}")

    if not hunks:
        raise PatchError("no hunks found (expected '@@ -start,count +start,count @@' headers)")
    for hunk in hunks:
        if not hunk.complete():
            raise PatchError(
                f"hunk @@ -{hunk.old_start},{hunk.old_count} is truncated: expected "
                f"{hunk.old_count} old and {hunk.new_count} new lines"
            )
    return hunks


def _matches(lines: List[str], at: int, expected: List[str], ignore_whitespace: bool) -> bool:
    if at < 0 or at + len(expected) > len(lines):
        return False
    for offset, want in enumerate(expected):
        have = lines[at + offset]
        if ignore_whitespace:
            if have.split() != want.split():
                return False
        elif have != want:
            return False
    return True


def _locate(lines: List[str], hunk: Hunk, lower: int, ignore_whitespace: bool) -> int:
    """Index at or after *lower* where *hunk* applies, nearest its header line first."""
    limit = len(lines)
    old = hunk.old_lines
    # A pure insertion "-5,0" goes after line 5.
    preferred = hunk.old_start if hunk.old_count == 0 else hunk.old_start - 1
    preferred = min(max(preferred, lower), limit)
    if not old:
        return preferred
    for distance in range(0, limit + 1):
        for candidate in (preferred - distance, preferred + distance):
            if lower <= candidate <= limit - len(old) and _matches(lines, candidate, old, ignore_whitespace):
                return candidate
    raise PatchError(
        f"hunk @@ -{hunk.old_start},{hunk.old_count} does not match the file "
        f"(first expected line: {old[0]!r})"
    )


def apply_hunks(text: str, hunks: List[Hunk], ignore_whitespace: bool = False) -> str:
    """Apply *hunks* to *text*; raises PatchError on the first mismatch."""
    lines = text.split("\n") if text else []
    trailing_newline = text.endswith("\n")
    if trailing_newline:
        lines.pop()

    result: List[str] = []
    cursor = 0
    for hunk in sorted(hunks, key=lambda h: h.old_start):
        at = _locate(lines, hunk, cursor, ignore_whitespace)
        result.extend(lines[cursor:at])
        result.extend(hunk.new_lines)
        cursor = at + len(hunk.old_lines)
    result.extend(lines[cursor:])

    patched = "\n".join(result)
    if trailing_newline or (not text and result):
        patched += "\n"
    return patched


class ApplyPatchArgs(BaseModel):
    file_path: str
    patch_content: str = Field(min_length=1)
    backup_original: bool = False
    dry_run: bool = False
    ignore_whitespace: bool = False


class ApplyPatchTool(Tool):
    def __init__(self, file_ops: SafeFileOps, max_bytes: int = MAX_READ_FILE_BYTES):
        self.file_ops = file_ops
        self.max_bytes = max_bytes

    @property
    def name(self) -> str:
        return "apply_patch"

    @property
    def description(self) -> str:
        return ("Apply a unified diff to an existing file in the workspace. All hunks "
                "apply or the file is left unchanged. Prefer this over write_file for "
                "small edits to large files.")

    @property
    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "file_path": {
                    "type": "string",
                    "description": "Path of the file to patch, relative to the workspace root",
                },
                "patch_content": {
                    "type": "string",
                    "description": "The patch in unified diff format (@@ -start,count +start,count @@ hunks)",
                },
                "backup_original": {
                    "type": "boolean",
                    "description": f"Keep a copy of the original file with a {BACKUP_SUFFIX} suffix",
                },
                "dry_run": {
                    "type": "boolean",
                    "description": "Check that the patch applies without writing the file",
                },
                "ignore_whitespace": {
                    "type": "boolean",
                    "description": "Ignore whitespace differences when matching context lines",
                },
            },
            "required": ["file_path", "patch_content"],
        }

    async def execute(self, raw_args: str,
                      progress: Optional[ProgressCallback] = None) -> ToolResult:
        args, failure = self.parse_arguments(raw_args, ApplyPatchArgs)
        if failure:
            return failure

        try:
            hunks = parse_unified_diff(args.patch_content)
        except PatchError as e:
            return ToolResult.fail(StandardizedToolError.parameter("patch_content", str(e)))

        path = args.file_path
        try:
            st = self.file_ops.safe_stat(path)
            size = st.st_size
            if size > self.max_bytes:
                return ToolResult.fail(StandardizedToolError.content_too_large(size, self.max_bytes))
            original = self.file_ops.safe_read_text(path)
        except (OSError, SandboxViolationError) as e:
            return os_error_result(e, path)

        try:
            patched = apply_hunks(original, hunks, args.ignore_whitespace)
        except PatchError as e:
            return ToolResult.fail(StandardizedToolError(
                ToolErrorCode.PATCH_FAILED,
                f"Patch does not apply to {path}: {e}",
                "Read the file again and regenerate the diff against its current content.",
            ).with_detail("file_path", path))

        added = sum(1 for h in hunks for op, _ in h.lines if op == "+")
        removed = sum(1 for h in hunks for op, _ in h.lines if op == "-")
        data: Dict[str, Any] = {
            "path": self.file_ops.relative_to_root(path),
            "hunks_applied": len(hunks),
            "lines_added": added,
            "lines_removed": removed,
            "original_size": len(original.encode("utf-8")),
            "new_size": len(patched.encode("utf-8")),
            "dry_run": args.dry_run,
        }
        if args.dry_run:
            data["message"] = f"Dry run: patch applies cleanly to {path} ({len(hunks)} hunks)"
            return ToolResult.ok(data)

        mode = stat.S_IMODE(st.st_mode)
        try:
            if args.backup_original:
                resolved = self.file_ops.validate_path(path)
                backup = self.file_ops.join_path(
                    os.path.dirname(resolved), os.path.basename(resolved) + BACKUP_SUFFIX
                )
                self.file_ops.safe_write_file(backup, original, mode=mode)
                data["backup_path"] = self.file_ops.relative_to_root(backup)
            self.file_ops.safe_write_file(path, patched, mode=mode)
        except (OSError, SandboxViolationError) as e:
            return os_error_result(e, path)

        logger.info("Applied %d hunks to %s (+%d -%d)", len(hunks), path, added, removed)
        data["message"] = f"Applied {len(hunks)} hunks to {path} (+{added} -{removed})"
        return ToolResult.ok(data)
