#!/usr/bin/env python3
"""
CGE command line.

Usage:
    cge ask "How is the config loaded?"
    cge chat --model qwen2.5-coder:7b
    cge plan "Add a --json flag to the report command" --workspace ./myproject
    cge generate plan.json --task_id task-1 --dry_run
    cge review ./src --test_output pytest.log
    cge models
    cge sessions
    cge show-config --provider openrouter

Global flags (accepted by every command):
    --config     explicit YAML config file
    --provider   ollama | openai | gemini | openrouter | custom
    --model      model name passed to the provider
    --workspace  sandboxed root for the file tools
    --verbose    DEBUG logging on the console
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import fire
from rich.console import Console
from rich.table import Table

from agent.async_bridge import run_async
from agent.command_integration import (
    CommandIntegrator,
    GenerateRequest,
    PlanRequest,
    ReviewRequest,
)
from agent.event_bridge import TERMINAL_EVENT_TYPES, ChatMessageType, ChatPresenter, format_event
from agent.runner import AgentRunner, RunResult
from agent.session_persister import JsonHistoryStore
from cge_cli.config import load_config
from cge_cli.logging_setup import default_log_file, setup_logging
from cge_errors import CGEError, ConfigurationError
from llm.providers import create_client, get_provider
from tools import build_default_registry

logger = logging.getLogger(__name__)

console = Console()
err_console = Console(stderr=True)

ASK_SYSTEM_PROMPT = (
    "You are CGE, a coding assistant working inside the user's project. "
    "Use the available tools to read files, list directories and search the "
    "codebase before answering. Answer concisely and reference file paths."
)

_EXIT_COMMANDS = ("/exit", "/quit", "exit", "quit")

_EVENT_STYLES = {
    ChatMessageType.USER: "bold cyan",
    ChatMessageType.ASSISTANT: "",
    ChatMessageType.TOOL_CALL: "yellow",
    ChatMessageType.TOOL_PROGRESS: "dim",
    ChatMessageType.TOOL_RESULT: "green",
    ChatMessageType.ERROR: "bold red",
    ChatMessageType.SYSTEM: "dim",
}


def _fail(message: str) -> None:
    err_console.print(f"[bold red]error:[/] {message}")
    raise SystemExit(1)


def _print_result(result: RunResult) -> None:
    if result.success:
        console.print(result.final_response)
    else:
        if result.final_response:
            console.print(result.final_response)
        err_console.print(f"[bold red]{result.error_kind}:[/] {result.error}")
    console.print(
        f"[dim]outcome={result.outcome} iterations={result.iterations} "
        f"tool_calls={result.tool_calls} session={result.session_id or '-'}[/]"
    )


class CGECommands:
    """AI coding assistant: ask, chat, plan, generate and review."""

    def __init__(self, config: Optional[str] = None, provider: Optional[str] = None,
                 model: Optional[str] = None, workspace: Optional[str] = None,
                 verbose: bool = False):
        setup_logging(verbose=verbose, log_file=default_log_file())
        overrides = {"provider": provider, "model": model, "workspace_root": workspace}
        try:
            self._config = load_config(config, overrides=overrides, project_dir=workspace)
        except ConfigurationError as e:
            _fail(str(e))
        logger.debug("Loaded configuration: %s", self._config.redacted())

    # -- wiring --------------------------------------------------------------

    def _client(self):
        try:
            return create_client(self._config)
        except ConfigurationError as e:
            _fail(str(e))

    def _registry(self):
        return build_default_registry(
            self._config.workspace_root,
            allowed_shell_commands=self._config.allowed_shell_commands,
        )

    def _history(self) -> JsonHistoryStore:
        return JsonHistoryStore(self._config.history_dir)

    def _integrator(self, client) -> CommandIntegrator:
        return CommandIntegrator(
            client, self._registry(), self._config.workspace_root,
            base_config=self._config.run_config(), history_store=self._history(),
        )

    # -- commands ------------------------------------------------------------

    def ask(self, prompt: str):
        """Run one prompt through the agent loop and print the answer."""
        async def _ask():
            async with self._client() as client:
                runner = AgentRunner(
                    client, self._registry(), ASK_SYSTEM_PROMPT, self._config.model,
                    self._config.run_config(), history_store=self._history(),
                )
                return await runner.run(prompt, command="ask")

        result = run_async(_ask())
        _print_result(result)
        if not result.success:
            raise SystemExit(1)

    def chat(self):
        """Interactive session; each line is one turn. /exit quits."""
        run_async(self._chat())

    async def _chat(self):
        console.print(f"[bold]cge chat[/] model={self._config.model} "
                      f"provider={self._config.provider} (type /exit to quit)")
        async with self._client() as client:
            presenter = ChatPresenter(
                client, self._registry(), ASK_SYSTEM_PROMPT, self._config.model,
                self._config.run_config(),
                buffer_size=self._config.event_buffer_size,
                history_store=self._history(),
            )
            try:
                while True:
                    try:
                        line = await asyncio.to_thread(console.input, "[bold cyan]you>[/] ")
                    except (EOFError, KeyboardInterrupt):
                        break
                    if not line.strip():
                        continue
                    if line.strip().lower() in _EXIT_COMMANDS:
                        break
                    presenter.send(line)
                    async for event in presenter.messages():
                        if event.type == ChatMessageType.USER:
                            continue
                        console.print(format_event(event), style=_EVENT_STYLES.get(event.type, ""),
                                      markup=False, highlight=False)
                        if event.type in TERMINAL_EVENT_TYPES:
                            break
            finally:
                await presenter.aclose()
                if presenter.dropped_events:
                    logger.info("Chat dropped %d events", presenter.dropped_events)

    def plan(self, goal: str, context: Optional[str] = None, output: Optional[str] = None):
        """Create a validated JSON development plan for *goal*."""
        async def _plan():
            async with self._client() as client:
                return await self._integrator(client).execute_plan(
                    PlanRequest(user_goal=goal, model=self._config.model, codebase_context=context)
                )

        try:
            response = run_async(_plan())
        except CGEError as e:
            _fail(str(e))
        if not response.success:
            _fail(response.result.error if response.result else "plan run failed")

        plan_json = response.plan.model_dump_json(indent=2)
        if output:
            Path(output).write_text(plan_json + "\n", encoding="utf-8")
            console.print(f"Plan written to {output}")
        else:
            console.print_json(plan_json)

    def generate(self, plan_file: str, task_id: Optional[str] = None, dry_run: bool = False):
        """Implement one task (default: the first) from a saved plan."""
        try:
            plan = json.loads(Path(plan_file).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            _fail(f"cannot read plan {plan_file}: {e}")
        tasks = plan.get("tasks") or []
        task = next((t for t in tasks if task_id is None or t.get("id") == task_id), None)
        if task is None:
            _fail(f"task not found in plan: {task_id}")

        async def _generate():
            async with self._client() as client:
                return await self._integrator(client).execute_generate(
                    GenerateRequest(task=task, plan=plan, model=self._config.model, dry_run=dry_run)
                )

        response = run_async(_generate())
        for change in response.changes:
            console.print(f"[green]wrote[/] {change.file_path} ({change.bytes_written} bytes)")
        if response.result is not None:
            _print_result(response.result)
        if not response.success:
            raise SystemExit(1)

    def review(self, target_dir: str = ".", test_output: Optional[str] = None,
               lint_output: Optional[str] = None, max_cycles: int = 0):
        """Ask the agent to fix failures from saved test / lint output files."""
        def read_optional(path: Optional[str]) -> str:
            if not path:
                return ""
            try:
                return Path(path).read_text(encoding="utf-8", errors="replace")
            except OSError as e:
                _fail(f"cannot read {path}: {e}")

        req = ReviewRequest(
            target_dir=target_dir,
            test_output=read_optional(test_output),
            lint_output=read_optional(lint_output),
            model=self._config.model,
            max_cycles=max_cycles,
        )

        async def _review():
            async with self._client() as client:
                return await self._integrator(client).execute_review(req)

        response = run_async(_review())
        for fix in response.fixes_applied:
            console.print(f"[green]{fix}[/]")
        if response.result is not None:
            _print_result(response.result)
        if not response.success:
            raise SystemExit(1)

    def models(self):
        """List models available from the configured provider."""
        async def _models():
            async with self._client() as client:
                return await client.list_models()

        try:
            names = run_async(_models())
        except CGEError as e:
            _fail(str(e))
        meta = get_provider(self._config.provider)
        tool_calling = "native" if meta is None or meta.native_function_calling else "prompted"
        table = Table(title=f"Models ({self._config.provider})",
                      caption=f"tool calling: {tool_calling}")
        table.add_column("model")
        table.add_column("current")
        for name in names:
            table.add_row(name, "*" if name == self._config.model else "")
        console.print(table)

    def sessions(self, show: Optional[str] = None, limit: int = 20):
        """List saved sessions, or print one with --show <id>."""
        store = self._history()
        if show:
            try:
                history = store.load(show)
            except (OSError, ValueError, CGEError) as e:
                _fail(f"cannot load session {show}: {e}")
            console.print_json(json.dumps(history.to_dict(), default=str))
            return

        table = Table(title=f"Sessions in {store.directory}")
        for column in ("id", "command", "model", "state", "messages", "started"):
            table.add_column(column)
        for session_id in store.list_sessions()[:limit]:
            try:
                history = store.load(session_id)
            except (OSError, ValueError) as e:
                logger.warning("Skipping session %s: %s", session_id, e)
                continue
            table.add_row(session_id, history.command, history.model, history.state,
                          str(len(history.messages)),
                          history.start_time.strftime("%Y-%m-%d %H:%M:%S"))
        console.print(table)

    def show_config(self):
        """Print the effective configuration (API key masked)."""
        console.print_json(json.dumps(self._config.redacted()))


def main():
    try:
        fire.Fire(CGECommands, name="cge")
    except KeyboardInterrupt:
        err_console.print("[dim]interrupted[/]")
        sys.exit(130)


if __name__ == "__main__":
    main()
