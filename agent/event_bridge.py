"""Event bridge between the agent loop and a front end.

``ChatPresenter.send`` starts one asyncio task per user turn and returns
immediately. The turn's progress is published as ChatMessage events on a
``BoundedEventQueue`` that any consumer (plain CLI printer, TUI, tests)
reads with ``async for event in presenter.messages()``.

Drop policy: publishing never blocks the agent loop. When the queue is
full, or already closed, the event is discarded and counted in
``dropped``. A slow consumer therefore loses events instead of stalling a
run. The final ``assistant`` / ``error`` event of a turn is the exception:
it evicts the oldest queued non-final event instead of being dropped, so
a consumer waiting for the end of a turn always sees it.
"""

import asyncio
import collections
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, Generic, Optional, Set, TypeVar

from cge_constants import DEFAULT_EVENT_BUFFER_SIZE
from llm.base import LLMClient
from tools.base import ToolRegistry

from agent.runner import ERROR_KIND_CANCELLED, AgentRunner, RunConfig
from agent.session_persister import HistoryStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class QueueClosed(Exception):
    """Raised by ``BoundedEventQueue.get`` once the queue is closed and drained."""


class BoundedEventQueue(Generic[T]):
    """Single-loop queue with a non-blocking, drop-on-full ``offer``."""

    def __init__(self, maxsize: int = DEFAULT_EVENT_BUFFER_SIZE):
        if maxsize < 1:
            raise ValueError("maxsize must be >= 1")
        self._maxsize = maxsize
        self._items: Deque[T] = collections.deque()
        self._waiters: Deque[asyncio.Future] = collections.deque()
        self._closed = False
        self._dropped = 0

    @property
    def dropped(self) -> int:
        return self._dropped

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def maxsize(self) -> int:
        return self._maxsize

    def qsize(self) -> int:
        return len(self._items)

    def _wake(self, all_waiters: bool = False) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                if not all_waiters:
                    return

    def offer(self, item: T) -> bool:
        """Enqueue *item* without blocking. Returns False if it was dropped."""
        if self._closed or len(self._items) >= self._maxsize:
            self._dropped += 1
            logger.debug("Event dropped (closed=%s, size=%d, dropped=%d)",
                         self._closed, len(self._items), self._dropped)
            return False
        self._items.append(item)
        self._wake()
        return True

    def offer_terminal(self, item: T, evictable: Callable[[T], bool]) -> bool:
        """Enqueue *item*, evicting the oldest *evictable* item when full.

        Used for events a consumer waits on. If nothing can be evicted the
        item is appended anyway, so the queue may exceed ``maxsize`` by the
        number of such items. Returns False only when the queue is closed.
        """
        if self._closed:
            self._dropped += 1
            return False
        if len(self._items) >= self._maxsize:
            for index, queued in enumerate(self._items):
                if evictable(queued):
                    del self._items[index]
                    self._dropped += 1
                    logger.debug("Evicted queued event for a terminal event (dropped=%d)",
                                 self._dropped)
                    break
        self._items.append(item)
        self._wake()
        return True

    def close(self) -> None:
        """Close the queue and wake every waiting reader. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._wake(all_waiters=True)

    async def get(self) -> T:
        """Next item; raises QueueClosed once closed and empty."""
        while not self._items:
            if self._closed:
                raise QueueClosed()
            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            try:
                await waiter
            finally:
                if not waiter.done():
                    waiter.cancel()
        return self._items.popleft()

    def __aiter__(self):
        return self

    async def __anext__(self) -> T:
        try:
            return await self.get()
        except QueueClosed:
            raise StopAsyncIteration from None


class ChatMessageType(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_CALL = "tool_call"
    TOOL_PROGRESS = "tool_progress"
    TOOL_RESULT = "tool_result"
    ERROR = "error"
    SYSTEM = "system"


# The last event of every turn; consumers wait for one of these.
TERMINAL_EVENT_TYPES = frozenset({ChatMessageType.ASSISTANT, ChatMessageType.ERROR})


@dataclass
class ChatMessage:
    type: ChatMessageType
    sender: str
    text: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    timestamp: datetime = field(default_factory=datetime.now)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolProgressState:
    tool_name: str
    start_time: float = field(default_factory=time.monotonic)
    progress: float = 0.0
    status: str = ""
    step: int = 0
    total_steps: int = 0


class ChatPresenter:
    """Runs turns in the background and streams their events."""

    def __init__(
        self,
        llm_client: LLMClient,
        registry: ToolRegistry,
        system_prompt: str,
        model: str,
        run_config: Optional[RunConfig] = None,
        *,
        buffer_size: int = DEFAULT_EVENT_BUFFER_SIZE,
        history_store: Optional[HistoryStore] = None,
    ):
        self.llm_client = llm_client
        self.registry = registry
        self.system_prompt = system_prompt
        self.model = model
        self.run_config = run_config or RunConfig()
        self.history_store = history_store
        self._queue: BoundedEventQueue[ChatMessage] = BoundedEventQueue(buffer_size)
        self._tasks: Set[asyncio.Task] = set()
        self._progress: Dict[str, ToolProgressState] = {}
        self._closed = False

    # -- Public surface ------------------------------------------------------

    @property
    def dropped_events(self) -> int:
        return self._queue.dropped

    @property
    def closed(self) -> bool:
        return self._closed

    def active_tools(self) -> Dict[str, ToolProgressState]:
        """Snapshot of in-flight tool progress keyed by call id."""
        return dict(self._progress)

    def messages(self) -> BoundedEventQueue[ChatMessage]:
        return self._queue

    def send(self, prompt: str) -> None:
        """Start a turn for *prompt* and return immediately."""
        if self._closed:
            raise RuntimeError("presenter is closed")
        turn_id = uuid.uuid4().hex[:8]
        self._emit(ChatMessageType.USER, "user", prompt, turn_id=turn_id)
        task = asyncio.get_running_loop().create_task(
            self._run_turn(prompt, turn_id), name=f"cge-turn-{turn_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def close(self) -> None:
        """Cancel in-flight turns and close the event stream. Idempotent."""
        if self._closed:
            return
        self._closed = True
        for task in list(self._tasks):
            task.cancel()
        self._queue.close()
        logger.debug("Presenter closed (dropped_events=%d)", self._queue.dropped)

    async def aclose(self) -> None:
        tasks = list(self._tasks)
        self.close()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def join(self) -> None:
        """Wait until every turn started so far has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -- Turn execution ------------------------------------------------------

    def _emit(self, type_: ChatMessageType, sender: str, text: str, **metadata) -> bool:
        return self._queue.offer(ChatMessage(type=type_, sender=sender, text=text, metadata=metadata))

    def _emit_terminal(self, type_: ChatMessageType, sender: str, text: str, **metadata) -> bool:
        """Final event of a turn; evicts a queued non-final event when full."""
        return self._queue.offer_terminal(
            ChatMessage(type=type_, sender=sender, text=text, metadata=metadata),
            lambda queued: queued.type not in TERMINAL_EVENT_TYPES,
        )

    async def _run_turn(self, prompt: str, turn_id: str) -> None:
        turn_calls: Set[str] = set()

        def on_start(call_id: str, tool_name: str, arguments: str) -> None:
            turn_calls.add(call_id)
            self._progress[call_id] = ToolProgressState(tool_name=tool_name, status="Starting")
            self._emit(ChatMessageType.TOOL_CALL, tool_name, f"Calling {tool_name}",
                       turn_id=turn_id, call_id=call_id, arguments=arguments)

        def on_progress(call_id: str, fraction: float, status: str, step: int, total: int) -> None:
            state = self._progress.get(call_id)
            if state is None:
                return
            state.progress = fraction
            state.status = status
            state.step = step
            state.total_steps = total
            self._emit(ChatMessageType.TOOL_PROGRESS, state.tool_name, status,
                       turn_id=turn_id, call_id=call_id, progress=fraction,
                       step=step, total_steps=total)

        def on_complete(call_id: str, tool_name: str, success: bool, content: str,
                        duration_s: float) -> None:
            self._progress.pop(call_id, None)
            self._emit(ChatMessageType.TOOL_RESULT, tool_name, content,
                       turn_id=turn_id, call_id=call_id, success=success,
                       duration_s=round(duration_s, 3))

        runner = AgentRunner(
            self.llm_client, self.registry, self.system_prompt, self.model, self.run_config,
            tool_start_callback=on_start,
            tool_progress_callback=on_progress,
            tool_complete_callback=on_complete,
            history_store=self.history_store,
        )

        try:
            result = await runner.run(prompt)
        except asyncio.CancelledError:
            self._emit_terminal(ChatMessageType.ERROR, "system", "Turn cancelled",
                       turn_id=turn_id, error_kind=ERROR_KIND_CANCELLED)
            raise
        except Exception as e:
            logger.exception("Turn %s failed", turn_id)
            self._emit_terminal(ChatMessageType.ERROR, "system", f"{type(e).__name__}: {e}",
                       turn_id=turn_id, error_kind="exception")
            return
        finally:
            # A run cut short by a timeout or cancellation never reports
            # completion for its in-flight tool.
            for call_id in turn_calls:
                self._progress.pop(call_id, None)

        meta = {
            "turn_id": turn_id,
            "iterations": result.iterations,
            "tool_calls": result.tool_calls,
            "outcome": result.outcome,
            "session_id": result.session_id,
        }
        if result.success:
            self._emit_terminal(ChatMessageType.ASSISTANT, "assistant", result.final_response, **meta)
        else:
            self._emit_terminal(ChatMessageType.ERROR, "system", result.error,
                       error_kind=result.error_kind, final_response=result.final_response, **meta)


def format_event(event: ChatMessage) -> str:
    """One-line rendering used by the plain CLI printer."""
    kind = event.type
    if kind == ChatMessageType.TOOL_CALL:
        return f"-> {event.sender} {event.metadata.get('arguments', '')}"
    if kind == ChatMessageType.TOOL_PROGRESS:
        pct = int(event.metadata.get("progress", 0.0) * 100)
        return f"   {event.sender} [{pct:3d}%] {event.text}"
    if kind == ChatMessageType.TOOL_RESULT:
        mark = "ok" if event.metadata.get("success") else "failed"
        first_line = event.text.splitlines()[0] if event.text else ""
        return f"<- {event.sender} {mark}: {first_line[:120]}"
    if kind == ChatMessageType.ERROR:
        return f"error: {event.text}"
    return event.text

