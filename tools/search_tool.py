"""codebase_search: keyword relevance search over workspace source files."""

import asyncio
import fnmatch
import logging
import os
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from cge_constants import MAX_READ_FILE_BYTES, SKIPPABLE_DIRS, SOURCE_EXTENSIONS
from cge_errors import SandboxViolationError
from tools.base import ProgressCallback, StandardizedToolError, Tool, ToolResult
from tools.file_ops import SafeFileOps

logger = logging.getLogger(__name__)

MAX_MATCHES = 10
MAX_CONTEXTS_PER_FILE = 3
CONTEXT_LINES = 2


def calculate_relevance(content: str, query: str) -> float:
    """Score *content* against *query*.

    1.0 for the whole query appearing verbatim, plus up to 0.5 for exact
    word hits and up to 0.3 for words appearing as substrings.
    """
    content = content.lower()
    query = query.lower().strip()
    words = query.split()
    if not words:
        return 0.0

    score = 0.0
    if query in content:
        score += 1.0

    content_words = content.split()
    counts: Dict[str, int] = {}
    for w in content_words:
        counts[w] = counts.get(w, 0) + 1
    word_matches = sum(counts.get(w, 0) for w in words)
    score += min(word_matches / len(words), 1.0) * 0.5

    substring_matches = sum(1 for w in words if w in content)
    score += substring_matches / len(words) * 0.3
    return score


def extract_context(content: str, query: str) -> List[Dict[str, Any]]:
    """Snippets (with surrounding lines) around lines that mention the query."""
    lines = content.split("\n")
    query = query.lower().strip()
    words = query.split()
    contexts: List[Dict[str, Any]] = []
    for i, line in enumerate(lines):
        lowered = line.lower()
        if query in lowered or (len(words) > 1 and all(w in lowered for w in words)):
            start = max(0, i - CONTEXT_LINES)
            end = min(len(lines), i + CONTEXT_LINES + 1)
            contexts.append({"line": i + 1, "snippet": "\n".join(lines[start:end])})
            if len(contexts) >= MAX_CONTEXTS_PER_FILE:
                break
    return contexts


class CodebaseSearchArgs(BaseModel):
    query: str = Field(min_length=1)
    include_patterns: List[str] = Field(default_factory=list)


class CodebaseSearchTool(Tool):
    reports_progress = True

    def __init__(self, file_ops: SafeFileOps, max_file_bytes: int = MAX_READ_FILE_BYTES):
        self.file_ops = file_ops
        self.max_file_bytes = max_file_bytes

    @property
    def name(self) -> str:
        return "codebase_search"

    @property
    def description(self) -> str:
        return "Find snippets of code from the codebase most relevant to the search query"

    @property
    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "The search query to find relevant code",
                },
                "include_patterns": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Glob patterns (relative to the workspace) limiting which files are searched",
                },
            },
            "required": ["query"],
        }

    def _candidate_files(self, patterns: List[str]) -> List[str]:
        root = self.file_ops.primary_root
        files = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(
                d for d in dirnames if d not in SKIPPABLE_DIRS and not d.startswith(".")
            )
            for name in sorted(filenames):
                if os.path.splitext(name)[1].lower() not in SOURCE_EXTENSIONS:
                    continue
                full = os.path.join(dirpath, name)
                rel = os.path.relpath(full, root)
                if patterns and not any(
                    fnmatch.fnmatch(rel, p) or fnmatch.fnmatch(name, p) for p in patterns
                ):
                    continue
                files.append(full)
        return files

    async def execute(self, raw_args: str,
                      progress: Optional[ProgressCallback] = None) -> ToolResult:
        args, failure = self.parse_arguments(raw_args, CodebaseSearchArgs)
        if failure:
            return failure
        if not args.query.strip():
            return ToolResult.fail(StandardizedToolError.parameter("query", "must not be blank"))

        files = await asyncio.to_thread(self._candidate_files, args.include_patterns)
        total = len(files)
        if progress:
            progress(0.0, f"Searching {total} files", 0, total)

        matches = []
        for i, path in enumerate(files, 1):
            try:
                if os.path.getsize(path) > self.max_file_bytes:
                    continue
                content = self.file_ops.safe_read_text(path)
            except (OSError, SandboxViolationError) as e:
                logger.debug("codebase_search: skipping %s: %s", path, e)
                continue

            score = calculate_relevance(content, args.query)
            if score > 0:
                matches.append({
                    "file": os.path.relpath(path, self.file_ops.primary_root),
                    "score": round(score, 3),
                    "context": extract_context(content, args.query),
                })

            if progress:
                progress(i / total, f"Searched {os.path.basename(path)}", i, total)
            if i % 50 == 0:
                # Yield so cancellation and other turns get a chance to run.
                await asyncio.sleep(0)

        matches.sort(key=lambda m: (-m["score"], m["file"]))
        return ToolResult.ok({
            "query": args.query,
            "files_searched": total,
            "total_matches": len(matches),
            "matches": matches[:MAX_MATCHES],
        })
