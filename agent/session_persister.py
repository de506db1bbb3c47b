"""Session persistence -- save/load contract plus a JSON file store.

The runner only needs ``HistoryStore``; ``JsonHistoryStore`` is the default
implementation used by the CLI. Files are named ``session_<id>.json``,
written with mode 0o600 and read back through SafeFileOps rooted at the
history directory, so a crafted session id cannot escape it.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from cge_errors import SandboxViolationError
from tools.file_ops import SafeFileOps

from agent.messages import Message, messages_from_dicts, messages_to_dicts

logger = logging.getLogger(__name__)

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


@dataclass
class SessionHistory:
    session_id: str
    model: str
    command: str = "chat"
    system_prompt: str = ""
    messages: List[Message] = field(default_factory=list)
    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    state: str = "completed"
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "model": self.model,
            "command": self.command,
            "system_prompt": self.system_prompt,
            "session_start": self.start_time.isoformat(),
            "last_updated": (self.end_time or datetime.now()).isoformat(),
            "state": self.state,
            "message_count": len(self.messages),
            "messages": messages_to_dicts(self.messages),
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionHistory":
        end = data.get("last_updated")
        return cls(
            session_id=data["session_id"],
            model=data.get("model", ""),
            command=data.get("command", "chat"),
            system_prompt=data.get("system_prompt", ""),
            messages=messages_from_dicts(data.get("messages", [])),
            start_time=datetime.fromisoformat(data["session_start"]),
            end_time=datetime.fromisoformat(end) if end else None,
            state=data.get("state", "completed"),
            metadata=data.get("metadata") or {},
        )


class HistoryStore(Protocol):
    def save(self, history: SessionHistory) -> None: ...

    def load(self, session_id: str) -> SessionHistory: ...

    def list_sessions(self) -> List[str]: ...


class JsonHistoryStore:
    """One JSON file per session under *directory*."""

    def __init__(self, directory):
        self._dir = Path(directory).expanduser()
        self._dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        self._ops = SafeFileOps(str(self._dir))

    @property
    def directory(self) -> Path:
        return self._dir

    def _file_for(self, session_id: str) -> str:
        if not session_id or not _SESSION_ID_RE.match(session_id):
            raise SandboxViolationError(str(session_id), "not a valid session id")
        return f"session_{session_id}.json"

    def save(self, history: SessionHistory) -> None:
        name = self._file_for(history.session_id)
        payload = json.dumps(history.to_dict(), indent=2, ensure_ascii=False, default=str)
        path = self._ops.safe_write_file(name, payload, mode=0o600)
        logger.debug("Saved session %s to %s", history.session_id, path)

    def load(self, session_id: str) -> SessionHistory:
        """Raises FileNotFoundError for an unknown id, ValueError for a corrupt file."""
        raw = self._ops.safe_read_text(self._file_for(session_id))
        try:
            return SessionHistory.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise ValueError(f"corrupt session file for {session_id}: {e}") from e

    def list_sessions(self) -> List[str]:
        """Session ids, most recently modified first."""
        files = sorted(
            self._dir.glob("session_*.json"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        return [p.stem[len("session_"):] for p in files]

    def delete(self, session_id: str) -> None:
        self._ops.safe_remove(self._file_for(session_id))

