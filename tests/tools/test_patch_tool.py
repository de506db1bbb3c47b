"""Tests for apply_patch: unified-diff parsing and sandboxed application."""

import json
import os

import pytest

from tools.base import ToolErrorCode
from tools.file_ops import SafeFileOps
from tools.patch_tool import ApplyPatchTool, PatchError, apply_hunks, parse_unified_diff

ORIGINAL = "def add(a, b):\n    return a - b\n\n\ndef sub(a, b):\n    return a - b\n"

FIX_ADD = """--- a/calc.py
+++ b/calc.py
@@ -1,2 +1,2 @@
 def add(a, b):
-    return a - b
+    return a + b
"""


@pytest.fixture
def project(tmp_path):
    (tmp_path / "calc.py").write_text(ORIGINAL, encoding="utf-8")
    return tmp_path


@pytest.fixture
def tool(project):
    return ApplyPatchTool(SafeFileOps(str(project)))


def _args(**kwargs):
    kwargs.setdefault("file_path", "calc.py")
    return json.dumps(kwargs)


# ---------------------------------------------------------------------------
# Parsing / applying
# ---------------------------------------------------------------------------


def test_parse_counts_and_skips_headers():
    hunks = parse_unified_diff(FIX_ADD)
    assert len(hunks) == 1
    assert hunks[0].old_lines == ["def add(a, b):", "    return a - b"]
    assert hunks[0].new_lines == ["def add(a, b):", "    return a + b"]


def test_header_without_counts_defaults_to_one():
    hunks = parse_unified_diff("@@ -2 +2 @@\n-old\n+new\n")
    assert (hunks[0].old_start, hunks[0].old_count, hunks[0].new_count) == (2, 1, 1)


@pytest.mark.parametrize("patch", [
    "just some prose",
    "@@ -1,2 +1,2 @@\n line\n",
    "@@ bogus @@\n-a\n+b\n",
    "@@ -1,1 +1,1 @@\n*a\n",
])
def test_malformed_patches_rejected(patch):
    with pytest.raises(PatchError):
        parse_unified_diff(patch)


def test_hunk_found_when_line_numbers_are_off():
    patch = "@@ -1,2 +1,2 @@\n def sub(a, b):\n-    return a - b\n+    return a - b  # ok\n"
    patched = apply_hunks(ORIGINAL, parse_unified_diff(patch))
    assert patched.endswith("def sub(a, b):\n    return a - b  # ok\n")
    assert patched.startswith("def add(a, b):\n    return a - b\n")


def test_multiple_hunks_and_pure_insertion():
    patch = (
        "@@ -0,0 +1,1 @@\n+import math\n"
        "@@ -6,1 +7,1 @@\n-    return a - b\n+    return math.fsum([a, -b])\n"
    )
    patched = apply_hunks(ORIGINAL, parse_unified_diff(patch))
    lines = patched.splitlines()
    assert lines[0] == "import math"
    assert lines[-1] == "    return math.fsum([a, -b])"
    assert lines[2] == "    return a - b"


def test_ignore_whitespace():
    patch = "@@ -1,1 +1,1 @@\n-def  add(a,  b):\n+def add(x, y):\n"
    with pytest.raises(PatchError):
        apply_hunks(ORIGINAL, parse_unified_diff(patch))
    patched = apply_hunks(ORIGINAL, parse_unified_diff(patch), ignore_whitespace=True)
    assert patched.startswith("def add(x, y):\n")


# ---------------------------------------------------------------------------
# Tool
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_applies_patch_and_reports_counts(tool, project):
    result = await tool.execute(_args(patch_content=FIX_ADD))
    assert result.success, result.error
    assert result.data["hunks_applied"] == 1
    assert (result.data["lines_added"], result.data["lines_removed"]) == (1, 1)
    assert "backup_path" not in result.data
    text = (project / "calc.py").read_text(encoding="utf-8")
    assert text.startswith("def add(a, b):\n    return a + b\n")
    assert text.endswith("    return a - b\n")


@pytest.mark.asyncio
async def test_mismatch_leaves_file_untouched(tool, project):
    patch = "@@ -1,1 +1,1 @@\n-def mul(a, b):\n+def mul(x, y):\n"
    result = await tool.execute(_args(patch_content=patch))
    assert result.standardized_error.code == ToolErrorCode.PATCH_FAILED
    assert (project / "calc.py").read_text(encoding="utf-8") == ORIGINAL


@pytest.mark.asyncio
async def test_dry_run_does_not_write(tool, project):
    result = await tool.execute(_args(patch_content=FIX_ADD, dry_run=True))
    assert result.success
    assert result.data["dry_run"] is True
    assert (project / "calc.py").read_text(encoding="utf-8") == ORIGINAL


@pytest.mark.asyncio
async def test_backup_keeps_original_and_mode(tool, project):
    os.chmod(project / "calc.py", 0o644)
    result = await tool.execute(_args(patch_content=FIX_ADD, backup_original=True))
    assert result.success
    assert result.data["backup_path"] == "calc.py.bak"
    assert (project / "calc.py.bak").read_text(encoding="utf-8") == ORIGINAL
    assert os.stat(project / "calc.py").st_mode & 0o777 == 0o644


@pytest.mark.asyncio
async def test_path_outside_workspace_rejected(tool, tmp_path_factory):
    outside = tmp_path_factory.mktemp("elsewhere") / "calc.py"
    outside.write_text(ORIGINAL, encoding="utf-8")
    for path in ("../elsewhere/calc.py", str(outside)):
        result = await tool.execute(_args(file_path=path, patch_content=FIX_ADD))
        assert result.standardized_error.code == ToolErrorCode.PATH_OUTSIDE_WORKSPACE
    assert outside.read_text(encoding="utf-8") == ORIGINAL


@pytest.mark.asyncio
async def test_missing_file_and_bad_patch(tool):
    result = await tool.execute(_args(file_path="nope.py", patch_content=FIX_ADD))
    assert result.standardized_error.code == ToolErrorCode.FILE_NOT_FOUND

    result = await tool.execute(_args(patch_content="no hunks here"))
    assert result.standardized_error.code == ToolErrorCode.INVALID_PARAMETERS
    assert result.standardized_error.details["parameter"] == "patch_content"
