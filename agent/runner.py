"""AgentRunner -- the iterative tool-calling loop.

    Init -> LLMCall -> TextResponse                      (success)
                    -> FunctionCall -> ToolExec -> LLMCall (loop)
                    -> iteration cap reached             (failure)

Each iteration renders the conversation, asks the model for either text or
one function call, and feeds tool results back as tool messages. Tool-level
problems never end the run; transport failures, the iteration cap and the
wall-clock limits do, each with its own ``error_kind``.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from cge_constants import (
    DEFAULT_LLM_TIMEOUT_S,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_RUN_TIMEOUT_S,
    DEFAULT_TOOL_TIMEOUT_S,
    MAX_TOOL_RESULT_CHARS,
)
from cge_errors import IterationLimitError, RunTimeoutError, TransportError
from llm.base import LLMClient
from tools import FILE_WRITING_TOOLS, READ_ONLY_TOOLS
from tools.base import ToolRegistry

from agent.messages import Message, render_prompt
from agent.session_persister import HistoryStore, SessionHistory
from agent.tool_executor import (
    ToolCompleteCallback,
    ToolExecConfig,
    ToolProgressCallback,
    ToolStartCallback,
    execute_tool_call,
)

logger = logging.getLogger(__name__)

ERROR_KIND_TRANSPORT = "transport"
ERROR_KIND_ITERATION_LIMIT = "iteration_limit"
ERROR_KIND_TIMEOUT = "timeout"
ERROR_KIND_CANCELLED = "cancelled"


@dataclass(frozen=True)
class RunConfig:
    """Bounds and filters for one run. Every field is independent."""

    max_iterations: int = DEFAULT_MAX_ITERATIONS
    tool_timeout_s: float = DEFAULT_TOOL_TIMEOUT_S
    llm_timeout_s: float = DEFAULT_LLM_TIMEOUT_S
    run_timeout_s: float = DEFAULT_RUN_TIMEOUT_S
    allowed_tools: FrozenSet[str] = frozenset()
    max_tool_result_chars: int = MAX_TOOL_RESULT_CHARS

    def __post_init__(self):
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        for name in ("tool_timeout_s", "llm_timeout_s", "run_timeout_s"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")
        if not isinstance(self.allowed_tools, frozenset):
            object.__setattr__(self, "allowed_tools", frozenset(self.allowed_tools))

    @classmethod
    def for_plan(cls, **overrides) -> "RunConfig":
        """Planning: few iterations, read-only tools."""
        return cls(**{"max_iterations": 5, "allowed_tools": frozenset(READ_ONLY_TOOLS), **overrides})

    @classmethod
    def for_generate(cls, **overrides) -> "RunConfig":
        return cls(**{"max_iterations": 15, "allowed_tools": frozenset(FILE_WRITING_TOOLS), **overrides})

    @classmethod
    def for_review(cls, **overrides) -> "RunConfig":
        return cls(**{"max_iterations": 20, **overrides})

    def with_allowed_tools(self, names: Iterable[str]) -> "RunConfig":
        return replace(self, allowed_tools=frozenset(names))

    def tool_exec_config(self) -> ToolExecConfig:
        return ToolExecConfig(
            tool_timeout_s=self.tool_timeout_s,
            max_tool_result_chars=self.max_tool_result_chars,
            allowed_tools=self.allowed_tools,
        )


@dataclass
class RunResult:
    """Terminal snapshot of one run."""

    success: bool
    final_response: str = ""
    iterations: int = 0
    tool_calls: int = 0
    error: str = ""
    error_kind: Optional[str] = None
    messages: List[Message] = field(default_factory=list)
    error_details: Dict[str, Any] = field(default_factory=dict)
    tool_errors: int = 0
    session_id: Optional[str] = None

    @property
    def outcome(self) -> str:
        if not self.success:
            return "aborted"
        if self.tool_errors:
            return "answered_after_recovery"
        return "answered"


@dataclass
class _RunState:
    messages: List[Message]
    iterations: int = 0
    tool_calls: int = 0
    tool_errors: int = 0

    def last_assistant_text(self) -> str:
        for msg in reversed(self.messages):
            if msg.role == "assistant" and msg.content.strip():
                return msg.content
        return ""


class AgentRunner:
    """Drives one LLM client and one tool registry through the loop.

    Args:
        llm_client: Provider strategy used for every model call.
        registry: Tools the model may call (filtered by ``config.allowed_tools``).
        system_prompt: Passed to the provider on every call.
        model: Model name forwarded to the client.
        config: Iteration cap and timeouts; ``RunConfig()`` when omitted.
        tool_start_callback / tool_progress_callback / tool_complete_callback:
            Observers for tool execution, see ``agent.tool_executor``.
        history_store: Optional store that receives a SessionHistory per run.
    """

    def __init__(
        self,
        llm_client: LLMClient,
        registry: ToolRegistry,
        system_prompt: str,
        model: str,
        config: Optional[RunConfig] = None,
        *,
        tool_start_callback: Optional[ToolStartCallback] = None,
        tool_progress_callback: Optional[ToolProgressCallback] = None,
        tool_complete_callback: Optional[ToolCompleteCallback] = None,
        history_store: Optional[HistoryStore] = None,
    ):
        self.llm_client = llm_client
        self.registry = registry
        self.system_prompt = system_prompt
        self.model = model
        self.config = config or RunConfig()
        self.tool_start_callback = tool_start_callback
        self.tool_progress_callback = tool_progress_callback
        self.tool_complete_callback = tool_complete_callback
        self.history_store = history_store

    async def run(self, prompt: str, command: str = "chat") -> RunResult:
        """Run the loop for *prompt* until an answer or a terminal failure.

        ``asyncio.CancelledError`` propagates to the caller; side effects
        already performed by tools are not rolled back.
        """
        state = _RunState(messages=[Message.system(self.system_prompt), Message.user(prompt)])
        started = datetime.now()
        logger.info("Run started: command=%s model=%s max_iterations=%d",
                    command, self.model, self.config.max_iterations)

        try:
            result = await asyncio.wait_for(self._loop(state), timeout=self.config.run_timeout_s)
        except asyncio.TimeoutError:
            err = RunTimeoutError(self.config.run_timeout_s)
            logger.warning("Run aborted: %s", err)
            result = self._result(state, success=False, error=str(err),
                                  error_kind=ERROR_KIND_TIMEOUT,
                                  error_details={"timeout_s": self.config.run_timeout_s,
                                                 "scope": "run"})

        logger.info("Run finished: outcome=%s iterations=%d tool_calls=%d",
                    result.outcome, result.iterations, result.tool_calls)
        if self.history_store is not None:
            result.session_id = await self._save_history(result, command, started)
        return result

    async def run_or_raise(self, prompt: str, command: str = "chat") -> RunResult:
        """Like ``run`` but raises for the terminal failures."""
        result = await self.run(prompt, command)
        if result.success:
            return result
        if result.error_kind == ERROR_KIND_ITERATION_LIMIT:
            raise IterationLimitError(self.config.max_iterations)
        if result.error_kind == ERROR_KIND_TIMEOUT:
            raise RunTimeoutError(result.error_details.get("timeout_s", self.config.run_timeout_s))
        raise TransportError(result.error, result.error_details.get("status_code"))

    # -- Loop ------------------------------------------------------------------

    async def _loop(self, state: _RunState) -> RunResult:
        tools = self.registry.definitions(self.config.allowed_tools)
        exec_config = self.config.tool_exec_config()

        while state.iterations < self.config.max_iterations:
            state.iterations += 1
            prompt = render_prompt(state.messages)
            logger.debug("Iteration %d/%d: prompt_chars=%d",
                         state.iterations, self.config.max_iterations, len(prompt))

            try:
                response = await asyncio.wait_for(
                    self.llm_client.generate_with_functions(
                        self.model, prompt, self.system_prompt, tools
                    ),
                    timeout=self.config.llm_timeout_s,
                )
            except asyncio.TimeoutError:
                logger.warning("LLM call timed out after %.1fs", self.config.llm_timeout_s)
                return self._result(
                    state, success=False,
                    error=f"LLM call exceeded {self.config.llm_timeout_s:g}s",
                    error_kind=ERROR_KIND_TIMEOUT,
                    error_details={"timeout_s": self.config.llm_timeout_s, "scope": "llm"},
                )
            except TransportError as e:
                logger.error("LLM transport error: %s", e)
                return self._result(
                    state, success=False, error=str(e), error_kind=ERROR_KIND_TRANSPORT,
                    error_details={"status_code": e.status_code,
                                   "exception": type(e).__name__},
                )

            if response.is_text or response.function_call is None:
                state.messages.append(Message.assistant(response.text))
                return self._result(state, success=True, final_response=response.text)

            call = response.function_call
            state.messages.append(Message.assistant(tool_call=call))
            execution = await execute_tool_call(
                exec_config, self.registry, call,
                on_start=self.tool_start_callback,
                on_progress=self.tool_progress_callback,
                on_complete=self.tool_complete_callback,
            )
            state.messages.append(Message.tool(execution.content, call.id, call.name))
            if execution.dispatched:
                state.tool_calls += 1
            if not execution.success:
                state.tool_errors += 1

        err = IterationLimitError(self.config.max_iterations)
        logger.warning("Run aborted: %s", err)
        return self._result(
            state, success=False, error=str(err), error_kind=ERROR_KIND_ITERATION_LIMIT,
            final_response=state.last_assistant_text(),
            error_details={"max_iterations": self.config.max_iterations},
        )

    def _result(self, state: _RunState, *, success: bool, final_response: str = "",
                error: str = "", error_kind: Optional[str] = None,
                error_details: Optional[Dict[str, Any]] = None) -> RunResult:
        return RunResult(
            success=success,
            final_response=final_response,
            iterations=state.iterations,
            tool_calls=state.tool_calls,
            error=error,
            error_kind=error_kind,
            messages=list(state.messages),
            error_details=error_details or {},
            tool_errors=state.tool_errors,
        )

    async def _save_history(self, result: RunResult, command: str,
                            started: datetime) -> Optional[str]:
        history = SessionHistory(
            session_id=uuid.uuid4().hex[:12],
            model=self.model,
            command=command,
            system_prompt=self.system_prompt,
            messages=result.messages,
            start_time=started,
            end_time=datetime.now(),
            state="completed" if result.success else "failed",
            metadata={
                "iterations": result.iterations,
                "tool_calls": result.tool_calls,
                "outcome": result.outcome,
                "error_kind": result.error_kind,
            },
        )
        try:
            # Stores write files; keep that off the event loop.
            await asyncio.to_thread(self.history_store.save, history)
        except OSError as e:
            logger.warning("Failed to save session history: %s", e)
            return None
        return history.session_id
