"""Shared constants for CGE.

Import-safe module with no dependencies; it can be imported from anywhere
without risk of circular imports.
"""

import os
from pathlib import Path

CGE_HOME = Path(os.getenv("CGE_HOME", Path.home() / ".cge"))

DEFAULT_PROVIDER = "ollama"
DEFAULT_MODEL = "llama3.2:latest"

OLLAMA_DEFAULT_HOST = "http://localhost:11434"
OLLAMA_DEFAULT_KEEP_ALIVE = "5m"

OPENAI_BASE_URL = "https://api.openai.com/v1"
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
GEMINI_DEFAULT_TEMPERATURE = 0.7

DEFAULT_MAX_ITERATIONS = 8
DEFAULT_TOOL_TIMEOUT_S = 60.0
DEFAULT_LLM_TIMEOUT_S = 120.0
DEFAULT_RUN_TIMEOUT_S = 300.0
DEFAULT_REQUEST_TIMEOUT_S = 300.0

# Tool output kept in the conversation; longer output is cut with a marker.
MAX_TOOL_RESULT_CHARS = 2000

DEFAULT_EVENT_BUFFER_SIZE = 64

# Files above this size are skipped by read/search tools.
MAX_READ_FILE_BYTES = 1024 * 1024

# Interpreters (python, node) are opt-in through allowed_shell_commands.
DEFAULT_ALLOWED_SHELL_COMMANDS = (
    "ls", "cat", "head", "tail", "wc", "grep", "find", "echo", "pwd",
    "git", "go", "pytest", "make", "npm",
)

SKIPPABLE_DIRS = frozenset({
    ".git", ".hg", ".svn", ".idea", ".vscode", "node_modules", "vendor",
    "target", "dist", "build", "__pycache__", ".venv", "venv", ".cge",
    ".mypy_cache", ".pytest_cache",
})

SOURCE_EXTENSIONS = frozenset({
    ".go", ".py", ".js", ".ts", ".tsx", ".jsx", ".java", ".md", ".rs",
    ".cpp", ".c", ".h", ".hpp", ".json", ".toml", ".yaml", ".yml",
    ".rb", ".sh", ".txt", ".cfg", ".ini",
})
