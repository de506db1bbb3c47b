"""Agent runtime -- the orchestration core of CGE.

Module Overview
---------------

**messages.py**
    Conversation Message model and ``render_prompt``, which flattens a
    conversation into the prompt text providers receive.

**tool_executor.py**
    Executes a single function call: registry lookup, allowed-tool
    filtering, per-tool timeout, progress reporting and output
    sanitization. Tool failures become tool-message content.

**runner.py**
    ``AgentRunner`` (the iteration state machine), ``RunConfig`` presets
    and ``RunResult``.

**command_integration.py**
    ``CommandIntegrator``: plan / generate / review on top of the runner,
    including pydantic validation of plans.

**event_bridge.py**
    ``ChatPresenter`` runs one asyncio task per turn and streams typed
    ChatMessage events through a bounded drop-on-full queue.

**session_persister.py**
    History save/load contract and the JSON file store.

**async_bridge.py**
    ``run_async`` for synchronous callers such as the CLI.

Architecture
------------
1. **Injected configuration**: every component receives its settings at
   construction; nothing reads a global config.

2. **No circular imports**: agent/ depends on llm/, tools/ and the
   cge_constants / cge_errors leaf modules, never the other way round.

3. **Read-only shared state**: the ToolRegistry and SafeFileOps roots are
   built once and only read afterwards, so concurrent runs need no locks.
"""
