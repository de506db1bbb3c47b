"""LLM provider clients for CGE.

Public surface:
    LLMClient, ToolDefinition, FunctionCall, FunctionCallResponse -- llm.base
    parse_function_call, format_tools_for_prompt                 -- llm.function_call
    create_client                                                 -- llm.providers
"""

from llm.base import FunctionCall, FunctionCallResponse, LLMClient, ToolDefinition
from llm.function_call import format_tools_for_prompt, parse_function_call

__all__ = [
    "FunctionCall",
    "FunctionCallResponse",
    "LLMClient",
    "ToolDefinition",
    "format_tools_for_prompt",
    "parse_function_call",
]
