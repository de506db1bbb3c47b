"""Structured commands built on AgentRunner: plan, generate, review.

Each command picks a system prompt and a RunConfig preset, runs the agent
loop and turns the conversation into a typed response. ``plan`` validates
the model's final answer against the ``Plan`` schema.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from cge_errors import PlanValidationError
from llm.base import LLMClient
from tools import READ_ONLY_TOOLS
from tools.base import ToolRegistry

from agent.messages import Message
from agent.runner import AgentRunner, RunConfig, RunResult
from agent.session_persister import HistoryStore
from agent.tool_executor import is_error_content

logger = logging.getLogger(__name__)

_decoder = json.JSONDecoder()


# ---------------------------------------------------------------------------
# Plan schema
# ---------------------------------------------------------------------------


class PlanTask(BaseModel):
    id: str
    description: str
    files_to_modify: List[str] = Field(default_factory=list)
    files_to_create: List[str] = Field(default_factory=list)
    files_to_delete: List[str] = Field(default_factory=list)
    estimated_effort: Literal["small", "medium", "large"] = "medium"
    dependencies: List[str] = Field(default_factory=list)
    rationale: str = ""


class Plan(BaseModel):
    overall_goal: str
    tasks: List[PlanTask] = Field(min_length=1)
    summary: str = ""
    estimated_total_effort: str = ""
    risks_and_considerations: List[str] = Field(default_factory=list)


PLAN_SYSTEM_PROMPT = """You are an expert software architect and project planner.

Your task is to analyze the user's goal and the provided codebase context to create a detailed development plan.

You have access to tools to read files and explore the codebase structure. Use these tools to gather any additional context you need.

Your final response must be a valid JSON plan following this structure:
{
  "overall_goal": "string",
  "tasks": [
    {
      "id": "string",
      "description": "string",
      "files_to_modify": ["string"],
      "files_to_create": ["string"],
      "files_to_delete": ["string"],
      "estimated_effort": "small|medium|large",
      "dependencies": ["string"],
      "rationale": "string"
    }
  ],
  "summary": "string",
  "estimated_total_effort": "string",
  "risks_and_considerations": ["string"]
}

Use tools to explore the codebase as needed, then provide the final plan in JSON format."""

GENERATE_SYSTEM_PROMPT = """You are an expert software engineer specializing in code generation.

Your task is to implement the given task by making precise code changes. You have access to tools to:
- Read existing files
- Write new files or overwrite existing ones
- Apply unified-diff patches to existing files
- List directory contents
- Search the codebase

For each change you make:
1. First read the existing file (if modifying)
2. Write the complete new content with write_file, or apply_patch for a small edit
3. Keep changes focused on the task

When you have completed all necessary changes, provide a summary of what was implemented."""

REVIEW_SYSTEM_PROMPT = """You are an expert software engineer specializing in code review and debugging.

Your task is to analyze test failures and linting issues, then fix them by making precise code changes.

You have access to tools to read files, write fixes, and run allow-listed commands such as the test suite or linter.

For each issue:
1. Analyze the error message to understand the problem
2. Read the relevant files to see the current code
3. Write a targeted fix with apply_patch (or write_file)
4. Verify the fix by running the tests or linter again

Focus on minimal changes that address the root cause."""


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """First JSON object in *text*, tolerating fences and surrounding prose."""
    if not text:
        return None
    candidates = []
    fence = text.find("```")
    while fence >= 0:
        body_start = text.find("\n", fence)
        end = text.find("```", body_start + 1) if body_start >= 0 else -1
        if body_start < 0 or end < 0:
            break
        candidates.append(text[body_start + 1:end])
        fence = text.find("```", end + 3)
    candidates.append(text)

    for candidate in candidates:
        pos = candidate.find("{")
        while pos >= 0:
            try:
                value, _ = _decoder.raw_decode(candidate, pos)
            except json.JSONDecodeError:
                pos = candidate.find("{", pos + 1)
                continue
            if isinstance(value, dict):
                return value
            pos = candidate.find("{", pos + 1)
    return None


def parse_plan(text: str) -> Plan:
    data = extract_json_object(text)
    if data is None:
        raise PlanValidationError("model response does not contain a JSON plan")
    try:
        return Plan.model_validate(data)
    except PydanticValidationError as e:
        raise PlanValidationError(f"invalid plan: {e}") from e


# ---------------------------------------------------------------------------
# Requests / responses
# ---------------------------------------------------------------------------


@dataclass
class PlanRequest:
    user_goal: str
    model: str
    codebase_context: Any = None


@dataclass
class PlanResponse:
    plan: Optional[Plan]
    messages: List[Message]
    success: bool
    result: Optional[RunResult] = None


@dataclass
class GenerateRequest:
    task: Any
    plan: Any
    model: str
    dry_run: bool = False


@dataclass
class FileChange:
    tool: str
    file_path: str
    bytes_written: int = 0
    summary: str = ""


@dataclass
class GenerateResponse:
    changes: List[FileChange]
    messages: List[Message]
    success: bool
    result: Optional[RunResult] = None


@dataclass
class ReviewRequest:
    target_dir: str
    test_output: str = ""
    lint_output: str = ""
    model: str = ""
    max_cycles: int = 0


@dataclass
class ReviewResponse:
    fixes_applied: List[str] = field(default_factory=list)
    messages: List[Message] = field(default_factory=list)
    success: bool = False
    result: Optional[RunResult] = None


FILE_CHANGING_TOOLS = ("write_file", "apply_patch")


def _result_data(content: str) -> Dict[str, Any]:
    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def _bytes_written(tool: str, args: Dict[str, Any], data: Dict[str, Any]) -> int:
    if tool == "write_file":
        text = args.get("content")
        return len(text.encode("utf-8")) if isinstance(text, str) else 0
    size = data.get("new_size")
    return size if isinstance(size, int) else 0


def collect_file_changes(messages: List[Message]) -> List[FileChange]:
    """Successful write_file / apply_patch calls, in conversation order."""
    calls = {}
    changes: List[FileChange] = []
    for msg in messages:
        if (msg.role == "assistant" and msg.tool_call is not None
                and msg.tool_call.name in FILE_CHANGING_TOOLS):
            calls[msg.tool_call.id] = msg.tool_call
        elif msg.role == "tool" and msg.tool_call_id in calls:
            if is_error_content(msg.content):
                continue
            call = calls[msg.tool_call_id]
            try:
                args = json.loads(call.arguments)
            except json.JSONDecodeError:
                args = {}
            if not isinstance(args, dict):
                args = {}
            if call.name == "apply_patch" and args.get("dry_run"):
                continue
            data = _result_data(msg.content)
            first_line = msg.content.splitlines()[0] if msg.content else ""
            changes.append(FileChange(
                tool=call.name,
                file_path=str(args.get("file_path", "")),
                bytes_written=_bytes_written(call.name, args, data),
                summary=str(data.get("message") or first_line),
            ))
    return changes


class CommandIntegrator:
    def __init__(self, llm_client: LLMClient, registry: ToolRegistry, workspace_root: str,
                 base_config: Optional[RunConfig] = None,
                 history_store: Optional[HistoryStore] = None):
        self.llm_client = llm_client
        self.registry = registry
        self.workspace_root = workspace_root
        self.base_config = base_config or RunConfig()
        self.history_store = history_store

    def _preset_overrides(self) -> Dict[str, Any]:
        # Timeouts follow the caller's configuration; presets only pick the
        # iteration cap and tool set.
        return {
            "tool_timeout_s": self.base_config.tool_timeout_s,
            "llm_timeout_s": self.base_config.llm_timeout_s,
            "run_timeout_s": self.base_config.run_timeout_s,
            "max_tool_result_chars": self.base_config.max_tool_result_chars,
        }

    def _runner(self, system_prompt: str, model: str, config: RunConfig) -> AgentRunner:
        return AgentRunner(self.llm_client, self.registry, system_prompt, model, config,
                           history_store=self.history_store)

    async def execute_plan(self, req: PlanRequest) -> PlanResponse:
        """Run the planning loop and validate the resulting plan.

        Raises PlanValidationError when the run answered but the answer is
        not a valid plan. A failed run returns ``success=False`` and no plan.
        """
        config = RunConfig.for_plan(**self._preset_overrides())
        context = req.codebase_context
        if context is not None and not isinstance(context, str):
            context = json.dumps(context, indent=2, default=str)

        prompt = (
            f"User Goal: {req.user_goal}\n\n"
            "Please analyze this goal and create a development plan. Use the available tools "
            "to explore the codebase structure and gather any additional context you need "
            "before creating the plan.\n\n"
            f"Codebase Context:\n{context or '(none provided)'}"
        )
        result = await self._runner(PLAN_SYSTEM_PROMPT, req.model, config).run(prompt, command="plan")
        if not result.success:
            logger.error("Plan run failed: %s", result.error)
            return PlanResponse(plan=None, messages=result.messages, success=False, result=result)

        plan = parse_plan(result.final_response)
        logger.info("Plan validated: %d tasks", len(plan.tasks))
        return PlanResponse(plan=plan, messages=result.messages, success=True, result=result)

    async def execute_generate(self, req: GenerateRequest) -> GenerateResponse:
        config = RunConfig.for_generate(**self._preset_overrides())
        if req.dry_run:
            config = config.with_allowed_tools(READ_ONLY_TOOLS)

        def dump(value: Any) -> str:
            if isinstance(value, BaseModel):
                return value.model_dump_json(indent=2)
            return json.dumps(value, indent=2, default=str)

        prompt = (
            f"Task to implement:\n{dump(req.task)}\n\n"
            f"Overall Plan Context:\n{dump(req.plan)}\n\n"
            "Please implement this task by making the necessary code changes. Use the "
            "available tools to read existing files and write new or modified files."
        )
        if req.dry_run:
            prompt += ("\n\nNOTE: This is a dry run. Do not modify files; describe the "
                       "changes you would make.")

        result = await self._runner(GENERATE_SYSTEM_PROMPT, req.model, config).run(
            prompt, command="generate"
        )
        return GenerateResponse(
            changes=collect_file_changes(result.messages),
            messages=result.messages,
            success=result.success,
            result=result,
        )

    async def execute_review(self, req: ReviewRequest) -> ReviewResponse:
        overrides = self._preset_overrides()
        if req.max_cycles > 0:
            overrides["max_iterations"] = req.max_cycles
        config = RunConfig.for_review(**overrides)

        prompt = (
            "Please analyze and fix the following issues:\n\n"
            f"Test Output:\n{req.test_output or '(none)'}\n\n"
            f"Lint Output:\n{req.lint_output or '(none)'}\n\n"
            f"Target Directory: {req.target_dir}\n\n"
            "Use the available tools to read the relevant files, understand the issues and "
            "write fixes. After making changes, run the tests and linter again to verify."
        )
        result = await self._runner(REVIEW_SYSTEM_PROMPT, req.model, config).run(
            prompt, command="review"
        )
        fixes = [f"Updated {c.file_path}" for c in collect_file_changes(result.messages)]
        return ReviewResponse(
            fixes_applied=fixes,
            messages=result.messages,
            success=result.success,
            result=result,
        )
