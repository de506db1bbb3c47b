"""Path sandboxing for filesystem-bound tools.

SafeFileOps is constructed once with the directories tools may touch and is
never mutated afterwards, so a single instance can be shared by concurrent
runs without locking.

Every path goes through the same pipeline before any I/O:

1. relative paths are anchored at the first allowed root
2. made absolute and lexically normalised (``.``/``..`` collapsed)
3. symlinks resolved with ``os.path.realpath``
4. containment checked with ``os.path.commonpath`` against each root, which
   compares whole path components, so ``/srv/app-evil`` is not inside
   ``/srv/app``

Races between validation and the following open() (a symlink swapped in
between) are not defended against; this is a best-effort boundary.
"""

import logging
import os
from typing import Tuple

from cge_errors import SandboxViolationError

logger = logging.getLogger(__name__)

DEFAULT_FILE_MODE = 0o600
DEFAULT_DIR_MODE = 0o750


class SafeFileOps:
    """File operations confined to a fixed set of allowed root directories."""

    def __init__(self, *allowed_roots: str):
        if not allowed_roots:
            raise ValueError("SafeFileOps needs at least one allowed root")
        self._roots: Tuple[str, ...] = tuple(
            os.path.realpath(os.path.abspath(os.path.expanduser(str(root))))
            for root in allowed_roots
        )

    @property
    def roots(self) -> Tuple[str, ...]:
        return self._roots

    @property
    def primary_root(self) -> str:
        return self._roots[0]

    def _is_within(self, path: str, root: str) -> bool:
        try:
            return os.path.commonpath([path, root]) == root
        except ValueError:
            # Different drives on Windows
            return False

    def validate_path(self, path: str) -> str:
        """Return the resolved absolute path or raise SandboxViolationError."""
        if path is None or str(path).strip() == "":
            raise SandboxViolationError(str(path), "empty")
        if "\x00" in str(path):
            raise SandboxViolationError(str(path), "not a valid path (contains NUL)")

        raw = os.path.expanduser(str(path))
        if not os.path.isabs(raw):
            raw = os.path.join(self.primary_root, raw)
        cleaned = os.path.normpath(os.path.abspath(raw))

        # Lexical check first so "../../etc/passwd" is rejected even when the
        # target does not exist.
        if not any(self._is_within(cleaned, root) for root in self._roots):
            logger.warning("Sandbox violation (lexical): %s", path)
            raise SandboxViolationError(str(path))

        resolved = os.path.realpath(cleaned)
        if not any(self._is_within(resolved, root) for root in self._roots):
            logger.warning("Sandbox violation (symlink escape): %s -> %s", path, resolved)
            raise SandboxViolationError(str(path), "a symlink escaping the allowed directories")

        return resolved

    def relative_to_root(self, path: str) -> str:
        """Best-effort path relative to whichever root contains it."""
        resolved = self.validate_path(path)
        for root in self._roots:
            if self._is_within(resolved, root):
                rel = os.path.relpath(resolved, root)
                return "." if rel == os.curdir else rel
        return resolved

    def join_path(self, base: str, *parts: str) -> str:
        return self.validate_path(os.path.join(base, *parts))

    def safe_read_file(self, path: str) -> bytes:
        resolved = self.validate_path(path)
        with open(resolved, "rb") as f:
            return f.read()

    def safe_read_text(self, path: str, encoding: str = "utf-8") -> str:
        return self.safe_read_file(path).decode(encoding, errors="replace")

    def safe_write_file(self, path: str, data, mode: int = DEFAULT_FILE_MODE,
                        create_dirs: bool = True) -> str:
        """Write bytes or text to a validated path and return the resolved path."""
        resolved = self.validate_path(path)
        parent = os.path.dirname(resolved)
        if create_dirs:
            os.makedirs(parent, mode=DEFAULT_DIR_MODE, exist_ok=True)
        if isinstance(data, str):
            data = data.encode("utf-8")

        fd = os.open(resolved, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        # O_CREAT only applies the mode to new files
        os.chmod(resolved, mode)
        return resolved

    def safe_stat(self, path: str) -> os.stat_result:
        return os.stat(self.validate_path(path))

    def safe_remove(self, path: str) -> None:
        os.remove(self.validate_path(path))
