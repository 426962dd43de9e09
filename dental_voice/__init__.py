"""Dental voice agent — the orchestration core of a phone booking assistant.

Architecture Overview
=====================

A voice provider streams each call's transcribed turns over a WebSocket.
For every turn that needs an answer, the core decides what to say and, when
needed, books, reschedules or cancels appointments in the practice system.

1. **Session bridge** (``bridge/``) — one handler per call.  Answers
   keepalives on the receive path, queues turns for a worker, sends each
   reply tagged with the provider's turn id, and sends hold messages and
   out-of-band replies as standalone announcements.

2. **Conversation store** (``services/conversation_store.py``) — session
   histories behind per-session locks, with TTL eviction.

3. **Orchestrator** (``orchestrator.py``) — a LangGraph loop: model →
   tools → model, one function call at a time, capped at a fixed number of
   round trips.

4. **Executor** (``tools/``) — typed catalogue of practice operations and a
   dispatch table that validates arguments before calling the API.

5. **Validation layer** (``validator.py``) — a second model reviews risky
   mutating calls; critical verdicts block them; every verdict is logged.

6. **Workflow synthesizer** (``workflows.py``) — plans for new intents from
   two generators and an arbiter that picks exactly one candidate.

Key Design Decisions
--------------------
- **LLM**: Claude via ``langchain-anthropic``; parallel tool calls are
  disabled because practice operations depend on each other's results.
- **Errors as data**: operation failures become ``FunctionResult`` errors
  the model can react to; nothing ends a call because of an exception.
- **Resilience**: the practice client retries idempotent reads with
  exponential backoff; mutating calls are sent once.
- **Dual interface**: FastAPI server (voice + HTTP) and a CLI chat loop.

Package Structure
-----------------
- ``dental_voice/config.py`` — configuration from environment variables
- ``dental_voice/models.py`` — sessions, messages, verdicts, workflows
- ``dental_voice/errors.py`` — error taxonomy
- ``dental_voice/orchestrator.py`` — LangGraph tool-call loop
- ``dental_voice/validator.py`` — validation layer
- ``dental_voice/workflows.py`` — workflow registry and synthesizer
- ``dental_voice/server.py`` — FastAPI application
- ``dental_voice/main.py`` — CLI chat interface
- ``dental_voice/bridge/`` — voice protocol and per-call bridge
- ``dental_voice/services/`` — store, practice client, incident log, metrics
- ``dental_voice/tools/`` — operation catalogue and executor
- ``dental_voice/api/`` — FastAPI routes and Pydantic schemas
"""
