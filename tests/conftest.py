"""Shared fakes for the agent, presenter and command tests.

ScriptedLLMClient replays a fixed list of responses (text, FunctionCall or
an exception to raise) and records every prompt it was given.
"""

import asyncio
from typing import Any, Dict, List

import pytest
from pydantic import BaseModel

from llm.base import FunctionCall, FunctionCallResponse, LLMClient, ToolDefinition
from tools.base import Tool, ToolRegistry, ToolResult


class ScriptedLLMClient(LLMClient):
    def __init__(self, script: List[Any], delay: float = 0.0):
        self.script = list(script)
        self.delay = delay
        self.prompts: List[str] = []
        self.tools_seen: List[List[str]] = []

    def _next(self):
        if not self.script:
            raise AssertionError("ScriptedLLMClient ran out of responses")
        return self.script.pop(0)

    async def generate(self, model, prompt, system_prompt="", tools=None) -> str:
        item = self._next()
        if isinstance(item, Exception):
            raise item
        return item if isinstance(item, str) else ""

    async def generate_with_functions(self, model: str, prompt: str, system_prompt: str,
                                      tools: List[ToolDefinition]) -> FunctionCallResponse:
        self.prompts.append(prompt)
        self.tools_seen.append([t.name for t in tools])
        if self.delay:
            await asyncio.sleep(self.delay)
        item = self._next()
        if isinstance(item, Exception):
            raise item
        if isinstance(item, FunctionCall):
            return FunctionCallResponse.from_call(item)
        return FunctionCallResponse.from_text(item)

    async def stream(self, model, prompt, system_prompt="", tools=None):
        yield await self.generate(model, prompt, system_prompt, tools)

    async def list_models(self) -> List[str]:
        return ["scripted"]

    def supports_native_function_calling(self) -> bool:
        return True


class EchoArgs(BaseModel):
    text: str


class EchoTool(Tool):
    @property
    def name(self) -> str:
        return "echo"

    @property
    def description(self) -> str:
        return "Echo the given text back"

    @property
    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {"text": {"type": "string"}},
            "required": ["text"],
        }

    async def execute(self, raw_args: str, progress=None) -> ToolResult:
        args, failure = self.parse_arguments(raw_args, EchoArgs)
        if failure:
            return failure
        return ToolResult.ok(args.text)


class SlowTool(Tool):
    def __init__(self, seconds: float = 5.0):
        self.seconds = seconds
        self.cancelled = False

    @property
    def name(self) -> str:
        return "slow"

    @property
    def description(self) -> str:
        return "Sleeps for a while"

    @property
    def parameters(self) -> Dict[str, Any]:
        return {"type": "object", "properties": {}}

    async def execute(self, raw_args: str, progress=None) -> ToolResult:
        try:
            await asyncio.sleep(self.seconds)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return ToolResult.ok("done sleeping")


class BrokenTool(Tool):
    @property
    def name(self) -> str:
        return "broken"

    @property
    def description(self) -> str:
        return "Always raises"

    @property
    def parameters(self) -> Dict[str, Any]:
        return {"type": "object", "properties": {}}

    async def execute(self, raw_args: str, progress=None) -> ToolResult:
        raise RuntimeError("kaboom")


@pytest.fixture
def scripted_llm():
    """Factory: ``scripted_llm(["answer"])``."""
    return ScriptedLLMClient


@pytest.fixture
def echo_registry():
    return ToolRegistry([EchoTool()])


@pytest.fixture
def tool_registry():
    """Registry with echo, slow (5s) and broken tools."""
    return ToolRegistry([EchoTool(), SlowTool(), BrokenTool()])


@pytest.fixture
def workspace(tmp_path):
    """A small project tree used by the file and search tool tests."""
    root = tmp_path / "project"
    (root / "pkg").mkdir(parents=True)
    (root / "pkg" / "__init__.py").write_text("", encoding="utf-8")
    (root / "pkg" / "config.py").write_text(
        "def load_config(path):\n"
        "    \"\"\"Load the config file.\"\"\"\n"
        "    return open(path).read()\n",
        encoding="utf-8",
    )
    (root / "main.py").write_text(
        "from pkg.config import load_config\n\n"
        "if __name__ == '__main__':\n"
        "    print(load_config('app.yaml'))\n",
        encoding="utf-8",
    )
    (root / "README.md").write_text("# Demo\n\nLoads config files.\n", encoding="utf-8")
    (root / "node_modules").mkdir()
    (root / "node_modules" / "dep.js").write_text("load_config()\n", encoding="utf-8")
    return root
