"""Tests for the public Session surface."""
from __future__ import annotations

import asyncio

import pytest
from pydantic import BaseModel

from genloop.agent.loop import LoopState
from genloop.agent.messages import GenerationRequest, GenerationResponse, Role, ToolDescriptor
from genloop.agent.providers.base import Transport
from genloop.agent.providers.scripted import ScriptedTransport
from genloop.agent.session import Session
from genloop.config import GenerationConfig
from genloop.errors import MessageNotFoundError


class Verdict(BaseModel):
    ok: bool
    reason: str


class TrackingTransport(Transport):
    """Counts overlapping sends and echoes the conversation length."""

    def __init__(self) -> None:
        self.active = 0
        self.max_active = 0
        self.seen_lengths: list[int] = []

    async def send(self, request: GenerationRequest) -> GenerationResponse:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.seen_lengths.append(len(request.messages))
        await asyncio.sleep(0.01)
        self.active -= 1
        return GenerationResponse(text=f"reply to {len(request.messages)}")


def _session(script=None, **config) -> Session:
    transport = ScriptedTransport(script or [GenerationResponse(text="ok")])
    return Session(transport, GenerationConfig(**config))


# ─── messages ─────────────────────────────────────────────────────────────────

def test_message_management():
    session = _session()
    session.set_system_message("You are terse.")
    session.add_user_message("q1")
    session.add_developer_message("internal note")
    session.add_assistant_message("a1")
    session.add_message("user", "q2")

    assert session.get_message_count() == 5
    assert session.get_message_text(-1) == session.get_message_text(4) == "q2"
    assert session.get_message_role(0) is Role.SYSTEM
    assert session.get_text(3, role_filter=Role.ASSISTANT) == "a1"
    assert session.get_text(3, role_filter=Role.USER) == ""
    assert session.get_role(1, role_filter="user") is Role.USER
    assert session.get_role(1, role_filter="assistant") is None
    assert session.get_messages_by_role(Role.USER) == ["q1", "q2"]
    assert session.count_messages_by_role(Role.DEVELOPER) == 1
    assert session.get_last_message_text(Role.ASSISTANT) == "a1"
    assert session.get_last_message_text() == "q2"
    assert session.get_last_message_text(Role.TOOL) == ""

    with pytest.raises(MessageNotFoundError):
        session.get_message_text(5)

    session.clear_messages()
    assert session.get_message_count() == 0


def test_tool_management():
    session = _session()

    def lookup():
        """Look something up."""
        return "found"

    descriptor = session.add_tool_function(lookup)
    session.add_tools([ToolDescriptor(name="other", handler=print)])

    assert descriptor.description == "Look something up."
    assert session.has_tool("lookup")
    assert session.find_tool_by_name("other") is not None
    assert [td.name for td in session.get_tools()] == ["lookup", "other"]

    session.clear_tools()
    assert session.get_tools() == []
    assert session.find_tool_by_name("lookup") is None


def test_validity_and_schema_queries():
    session = _session(schema=Verdict)
    assert not session.is_valid_for_generation()
    session.add_user_message("judge")
    assert session.is_valid_for_generation()
    assert session.expects_structured_output()
    assert session.expected_schema_name() == "Verdict"
    assert not _session().expects_structured_output()
    assert _session().expected_schema_name() == ""


# ─── generate ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_generate_on_empty_conversation_fails():
    errors = []
    session = _session()
    outcome = await session.generate(on_error=errors.append)
    assert outcome.state is LoopState.FAILED
    assert outcome.error.code == "E_EMPTY_CONVERSATION"
    assert errors == [session]


@pytest.mark.asyncio
async def test_generate_reports_results():
    session = _session([GenerationResponse(text="fine", usage={"prompt_tokens": 10, "completion_tokens": 5})])
    session.add_user_message("how are you")

    assert not session.has_response()
    outcome = await session.generate()

    assert outcome.state is LoopState.COMPLETED
    assert session.has_response()
    assert session.last_response.text == "fine"
    assert session.aggregated_response_text() == "fine"
    assert session.total_tokens_used() == 15
    assert session.metrics.snapshot()["generations_total"] == 1


@pytest.mark.asyncio
async def test_generate_streams_chunks():
    transport = ScriptedTransport([GenerationResponse(text="streamed answer")], streaming=True, chunk_size=5)
    session = Session(transport, GenerationConfig())
    session.add_user_message("stream please")
    chunks = []

    await session.generate(on_stream_chunk=chunks.append)

    assert chunks == ["strea", "med a", "nswer"]
    assert session.aggregated_response_text() == "streamed answer"
    assert session.current_stream_chunk_text() == "nswer"


@pytest.mark.asyncio
async def test_structured_output_success_and_failure():
    session = _session([GenerationResponse(text='{"ok": true, "reason": "fits"}')], schema=Verdict)
    session.add_user_message("judge")
    await session.generate()
    assert session.structured_output == Verdict(ok=True, reason="fits")

    session = _session([GenerationResponse(text="yes it is fine")], schema=Verdict)
    session.add_user_message("judge")
    completed = []
    outcome = await session.generate(on_complete=completed.append)
    assert outcome.state is LoopState.COMPLETED
    assert session.structured_output is None
    assert not session.has_error()
    assert completed == [session]


@pytest.mark.asyncio
async def test_concurrent_generate_calls_never_interleave():
    transport = TrackingTransport()
    session = Session(transport, GenerationConfig())
    session.add_user_message("first")

    first, second = await asyncio.gather(session.generate(), session.generate())

    assert transport.max_active == 1
    assert transport.seen_lengths == [1, 2]
    assert first.text == "reply to 1"
    assert second.text == "reply to 2"
    assert session.get_message_count() == 3


@pytest.mark.asyncio
async def test_callbacks_run_after_guard_release():
    session = _session([GenerationResponse(text="one")])
    session.add_user_message("go")
    observed = []

    async def on_complete(s):
        observed.append(s.is_busy)
        s.add_user_message("follow up")
        await s.generate(on_complete=lambda inner: observed.append("nested"))

    await session.generate(on_complete=on_complete)

    assert observed == [False, "nested"]
    assert session.get_message_count() == 4


@pytest.mark.asyncio
async def test_on_complete_and_on_error_are_exclusive():
    completed, errors = [], []
    session = _session([RuntimeError("boom")])
    session.add_user_message("go")

    outcome = await session.generate(on_complete=completed.append, on_error=errors.append)

    assert outcome.state is LoopState.FAILED
    assert outcome.error.code == "E_INTERNAL"
    assert completed == []
    assert errors == [session]
    session.clear_error()
    assert not session.has_error()


@pytest.mark.asyncio
async def test_submit_generate_from_worker_thread():
    session = _session([GenerationResponse(text="from thread")])
    session.add_user_message("go")
    session.bind_loop()

    outcome = await asyncio.to_thread(lambda: session.submit_generate().result(timeout=5))

    assert outcome.text == "from thread"
    assert session.get_message_count() == 2


@pytest.mark.asyncio
async def test_reset_keeps_or_drops_config(settings):
    session = Session(ScriptedTransport([GenerationResponse(text="ok")]), GenerationConfig(max_api_requests=4), settings=settings)
    session.add_tool(ToolDescriptor(name="keep", handler=print))
    session.add_user_message("go")
    await session.generate()

    session.reset()
    assert session.get_message_count() == 0
    assert not session.has_response()
    assert session.total_tokens_used() == 0
    assert session.config.max_api_requests == 4
    assert session.has_tool("keep")

    session.reset(keep_config=False)
    assert session.config.max_api_requests == 10
    assert not session.has_tool("keep")


def test_submit_generate_requires_a_bound_loop(recwarn):
    session = _session([GenerationResponse(text="never")])
    session.add_user_message("go")

    with pytest.raises(RuntimeError, match="not bound"):
        session.submit_generate()
    assert not [w for w in recwarn if "never awaited" in str(w.message)]
    assert session.get_message_count() == 1
