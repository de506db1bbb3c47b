"""Tests for agent.runner.AgentRunner -- the iteration state machine."""

import asyncio
import threading

import pytest

from agent.runner import (
    ERROR_KIND_ITERATION_LIMIT,
    ERROR_KIND_TIMEOUT,
    ERROR_KIND_TRANSPORT,
    AgentRunner,
    RunConfig,
)
from agent.session_persister import JsonHistoryStore
from cge_errors import IterationLimitError, RunTimeoutError, TransportError
from llm.base import FunctionCall
from tools import FILE_WRITING_TOOLS, READ_ONLY_TOOLS


def _runner(llm, registry, **config):
    return AgentRunner(llm, registry, "You are a test agent.", "test-model", RunConfig(**config))


def _echo(text="hi", call_id=None):
    if call_id:
        return FunctionCall("echo", '{"text": "%s"}' % text, id=call_id)
    return FunctionCall("echo", '{"text": "%s"}' % text)


# ---------------------------------------------------------------------------
# RunConfig
# ---------------------------------------------------------------------------


class TestRunConfig:
    def test_presets(self):
        assert RunConfig.for_plan().max_iterations == 5
        assert RunConfig.for_plan().allowed_tools == frozenset(READ_ONLY_TOOLS)
        assert RunConfig.for_generate().max_iterations == 15
        assert RunConfig.for_generate().allowed_tools == frozenset(FILE_WRITING_TOOLS)
        assert RunConfig.for_review().max_iterations == 20
        assert RunConfig.for_review().allowed_tools == frozenset()

    def test_overrides_are_independent(self):
        cfg = RunConfig.for_plan(tool_timeout_s=3.0)
        assert cfg.tool_timeout_s == 3.0
        assert cfg.max_iterations == 5

    @pytest.mark.parametrize("kwargs", [
        {"max_iterations": 0},
        {"tool_timeout_s": 0},
        {"run_timeout_s": -1},
    ])
    def test_invalid_bounds(self, kwargs):
        with pytest.raises(ValueError):
            RunConfig(**kwargs)

    def test_allowed_tools_coerced_to_frozenset(self):
        assert RunConfig(allowed_tools=["echo"]).allowed_tools == frozenset({"echo"})


# ---------------------------------------------------------------------------
# Loop behaviour
# ---------------------------------------------------------------------------


class TestRun:
    @pytest.mark.asyncio
    async def test_text_response_ends_after_one_iteration(self, scripted_llm, echo_registry):
        llm = scripted_llm(["The answer is 42."])
        result = await _runner(llm, echo_registry).run("question")
        assert result.success
        assert result.final_response == "The answer is 42."
        assert result.iterations == 1
        assert result.tool_calls == 0
        assert result.outcome == "answered"
        assert [m.role for m in result.messages] == ["system", "user", "assistant"]

    @pytest.mark.asyncio
    async def test_tool_call_then_answer(self, scripted_llm, echo_registry):
        llm = scripted_llm([_echo("ping", "call_1"), "done"])
        result = await _runner(llm, echo_registry).run("use echo")
        assert result.success
        assert result.final_response == "done"
        assert result.iterations == 2
        assert result.tool_calls == 1
        roles = [m.role for m in result.messages]
        assert roles == ["system", "user", "assistant", "tool", "assistant"]
        tool_msg = result.messages[3]
        assert tool_msg.tool_call_id == "call_1"
        assert tool_msg.content == "ping"
        # The second prompt carries the tool result.
        assert "Tool (echo): ping" in llm.prompts[1]

    @pytest.mark.asyncio
    async def test_iteration_cap_is_exact(self, scripted_llm, echo_registry):
        llm = scripted_llm([_echo(str(i)) for i in range(10)])
        result = await _runner(llm, echo_registry, max_iterations=3).run("loop forever")
        assert not result.success
        assert result.error_kind == ERROR_KIND_ITERATION_LIMIT
        assert result.iterations == 3
        assert result.tool_calls == 3
        assert len(llm.script) == 7
        assert result.outcome == "aborted"

    @pytest.mark.asyncio
    async def test_transport_error_aborts_after_one_iteration(self, scripted_llm, echo_registry):
        llm = scripted_llm([TransportError("ollama: HTTP 500: boom", 500)])
        result = await _runner(llm, echo_registry).run("hi")
        assert not result.success
        assert result.error_kind == ERROR_KIND_TRANSPORT
        assert result.iterations == 1
        assert result.error_details["status_code"] == 500

    @pytest.mark.asyncio
    async def test_unknown_tool_recovers(self, scripted_llm, echo_registry):
        llm = scripted_llm([FunctionCall("does_not_exist", "{}"), "recovered"])
        result = await _runner(llm, echo_registry).run("hi")
        assert result.success
        assert result.final_response == "recovered"
        assert result.tool_calls == 0
        assert result.tool_errors == 1
        assert result.outcome == "answered_after_recovery"
        assert "tool not found: does_not_exist" in result.messages[3].content

    @pytest.mark.asyncio
    async def test_slow_tool_timeout_is_not_a_run_failure(self, scripted_llm, tool_registry):
        llm = scripted_llm([FunctionCall("slow", "{}"), "gave up on slow tool"])
        result = await _runner(llm, tool_registry, tool_timeout_s=0.05).run("hi")
        assert result.success
        assert result.tool_calls == 1
        assert "timed out" in result.messages[3].content

    @pytest.mark.asyncio
    async def test_tools_offered_respect_allowed_set(self, scripted_llm, tool_registry):
        llm = scripted_llm(["ok"])
        await _runner(llm, tool_registry, allowed_tools=frozenset({"echo"})).run("hi")
        assert llm.tools_seen == [["echo"]]

    @pytest.mark.asyncio
    async def test_llm_timeout(self, scripted_llm, echo_registry):
        llm = scripted_llm(["late"], delay=1.0)
        result = await _runner(llm, echo_registry, llm_timeout_s=0.05).run("hi")
        assert result.error_kind == ERROR_KIND_TIMEOUT
        assert result.error_details["scope"] == "llm"

    @pytest.mark.asyncio
    async def test_run_timeout(self, scripted_llm, tool_registry):
        llm = scripted_llm([FunctionCall("slow", "{}")] * 5)
        result = await _runner(llm, tool_registry, run_timeout_s=0.1, tool_timeout_s=10).run("hi")
        assert not result.success
        assert result.error_kind == ERROR_KIND_TIMEOUT
        assert result.error_details["scope"] == "run"

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, scripted_llm, tool_registry):
        llm = scripted_llm([FunctionCall("slow", "{}")])
        task = asyncio.ensure_future(_runner(llm, tool_registry).run("hi"))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert tool_registry.get("slow").cancelled

    @pytest.mark.asyncio
    async def test_iteration_limit_keeps_last_assistant_text(self, scripted_llm, echo_registry):
        llm = scripted_llm([_echo()])
        result = await _runner(llm, echo_registry, max_iterations=1).run("hi")
        assert result.error_kind == ERROR_KIND_ITERATION_LIMIT
        assert result.final_response == ""


class TestRunOrRaise:
    @pytest.mark.asyncio
    async def test_iteration_limit_raises(self, scripted_llm, echo_registry):
        llm = scripted_llm([_echo(), _echo()])
        with pytest.raises(IterationLimitError) as exc_info:
            await _runner(llm, echo_registry, max_iterations=2).run_or_raise("hi")
        assert str(exc_info.value) == "reached maximum iterations (2)"

    @pytest.mark.asyncio
    async def test_transport_raises(self, scripted_llm, echo_registry):
        llm = scripted_llm([TransportError("down", 503)])
        with pytest.raises(TransportError) as exc_info:
            await _runner(llm, echo_registry).run_or_raise("hi")
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_llm_timeout_raises(self, scripted_llm, echo_registry):
        llm = scripted_llm(["late"], delay=1.0)
        with pytest.raises(RunTimeoutError):
            await _runner(llm, echo_registry, llm_timeout_s=0.05).run_or_raise("hi")


class TestHistory:
    @pytest.mark.asyncio
    async def test_run_is_saved(self, scripted_llm, echo_registry, tmp_path):
        store = JsonHistoryStore(tmp_path / "sessions")
        llm = scripted_llm([_echo("x"), "final"])
        runner = AgentRunner(llm, echo_registry, "sys", "test-model", history_store=store)
        result = await runner.run("hi", command="ask")
        assert result.session_id in store.list_sessions()
        history = store.load(result.session_id)
        assert history.command == "ask"
        assert [m.role for m in history.messages] == [m.role for m in result.messages]
        assert history.metadata["tool_calls"] == 1

    @pytest.mark.asyncio
    async def test_save_failure_does_not_fail_run(self, scripted_llm, echo_registry):
        class FailingStore:
            def save(self, history):
                raise OSError("disk full")

            def load(self, session_id):
                raise NotImplementedError

            def list_sessions(self):
                return []

        llm = scripted_llm(["ok"])
        runner = AgentRunner(llm, echo_registry, "sys", "m", history_store=FailingStore())
        result = await runner.run("hi")
        assert result.success
        assert result.session_id is None

    @pytest.mark.asyncio
    async def test_history_written_off_the_event_loop(self, scripted_llm, echo_registry, tmp_path):
        loop_thread = threading.get_ident()
        store = JsonHistoryStore(tmp_path / "sessions")
        seen = []

        class RecordingStore:
            def save(self, history):
                seen.append(threading.get_ident())
                store.save(history)

            def load(self, session_id):
                return store.load(session_id)

            def list_sessions(self):
                return store.list_sessions()

        llm = scripted_llm(["ok"])
        runner = AgentRunner(llm, echo_registry, "sys", "m", history_store=RecordingStore())
        result = await runner.run("hi")
        assert result.session_id in store.list_sessions()
        assert seen and seen[0] != loop_thread
