"""Unit tests for genloop/agent/tool_registry.py."""
from __future__ import annotations

import asyncio
import json
import threading

import pytest
from pydantic import BaseModel

from genloop.agent.messages import ResultKind, ToolCallRequest, ToolDescriptor, ToolExecutionResult
from genloop.agent.scheduler import CallbackScheduler
from genloop.agent.tool_registry import ToolExecutor, ToolRegistry, coerce_result, tool
from genloop.observability.metrics import SessionMetrics

ECHO_SCHEMA = {"type": "object", "properties": {"msg": {"type": "string"}}, "required": ["msg"]}


def _call(name: str, arguments="{}", call_id: str = "call_1") -> ToolCallRequest:
    return ToolCallRequest(id=call_id, name=name, arguments=arguments)


def _executor(metrics: SessionMetrics | None = None) -> ToolExecutor:
    scheduler = CallbackScheduler()
    return ToolExecutor(scheduler, metrics=metrics)


# ─── ToolRegistry ─────────────────────────────────────────────────────────────

def test_tool_registry_register_and_get():
    registry = ToolRegistry()
    td = ToolDescriptor(name="my_tool", description="A test tool", handler=lambda: "ok")
    registry.register(td)
    assert registry.get("my_tool") is td
    assert registry.get("missing") is None
    assert registry.has("my_tool")
    assert "my_tool" in registry


def test_tool_registry_to_schemas():
    registry = ToolRegistry()
    registry.register(ToolDescriptor(name="tool_a", description="desc a", parameters=ECHO_SCHEMA, handler=print))
    schemas = registry.to_schemas()
    assert len(schemas) == 1
    assert schemas[0].name == "tool_a"
    assert schemas[0].description == "desc a"
    assert schemas[0].input_schema == ECHO_SCHEMA


def test_tool_registry_remove_and_clear():
    registry = ToolRegistry([
        ToolDescriptor(name="a", handler=print),
        ToolDescriptor(name="b", handler=print),
    ])
    assert registry.remove("a") is not None
    assert [td.name for td in registry.descriptors()] == ["b"]
    registry.clear()
    assert len(registry) == 0


def test_tool_registry_rejects_descriptor_without_handler():
    with pytest.raises(ValueError):
        ToolRegistry().register(ToolDescriptor(name="empty"))


def test_tool_registry_rejects_unusable_parameters():
    registry = ToolRegistry()
    with pytest.raises(ValueError, match="unusable parameters"):
        registry.register(
            ToolDescriptor(name="lookup", parameters={"properties": {"_id": {"type": "string"}}}, handler=print)
        )
    with pytest.raises(ValueError, match="unusable parameters"):
        registry.register(ToolDescriptor(name="lookup", parameters="city", handler=print))
    assert not registry.has("lookup")


def test_tool_decorator_uses_docstring():
    @tool(parameters=ECHO_SCHEMA, terminating=True)
    def echo(msg: str) -> str:
        """Echo a message back.

        Longer explanation.
        """
        return msg

    assert echo.name == "echo"
    assert echo.description == "Echo a message back."
    assert echo.terminating is True
    assert echo.handler("x") == "x"


def test_coerce_result():
    assert coerce_result(None) == ToolExecutionResult.success("")
    assert coerce_result("text").text == "text"
    assert json.loads(coerce_result({"a": 1}).text) == {"a": 1}
    terminate = ToolExecutionResult.terminate("bye")
    assert coerce_result(terminate) is terminate


# ─── ToolExecutor ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_execute_sync_handler_on_primary_context():
    seen = {}

    def handler(msg):
        seen["thread"] = threading.get_ident()
        return f"echo: {msg}"

    td = ToolDescriptor(name="echo", parameters=ECHO_SCHEMA, handler=handler)
    result = await _executor().execute(_call("echo", '{"msg": "hello"}'), td)
    assert result.kind is ResultKind.SUCCESS
    assert result.text == "echo: hello"
    assert seen["thread"] == threading.get_ident()


@pytest.mark.asyncio
async def test_execute_sync_handler_on_worker_thread():
    seen = {}

    def handler(msg):
        seen["thread"] = threading.get_ident()
        return msg.upper()

    td = ToolDescriptor(name="shout", parameters=ECHO_SCHEMA, handler=handler, execute_on_primary_context=False)
    result = await _executor().execute(_call("shout", {"msg": "hi"}), td)
    assert result.text == "HI"
    assert seen["thread"] != threading.get_ident()


@pytest.mark.asyncio
async def test_execute_async_handler():
    async def handler(msg):
        await asyncio.sleep(0)
        return {"msg": msg}

    td = ToolDescriptor(name="echo", parameters=ECHO_SCHEMA, handler=handler)
    result = await _executor().execute(_call("echo", '{"msg": "x"}'), td)
    assert json.loads(result.text) == {"msg": "x"}


@pytest.mark.asyncio
async def test_execute_model_parameters():
    class Point(BaseModel):
        x: int
        y: int

    td = ToolDescriptor(name="add", parameters=Point, handler=lambda p: p.x + p.y)
    result = await _executor().execute(_call("add", '{"x": 2, "y": 3}'), td)
    assert result.text == "5"


@pytest.mark.asyncio
async def test_execute_unknown_tool():
    result = await _executor().execute(_call("nope"), None)
    assert result.kind is ResultKind.ERROR
    assert result.text == "Unknown tool: nope"
    assert result.to_message_text() == "Error: Unknown tool: nope"


@pytest.mark.asyncio
async def test_execute_handler_exception_becomes_error():
    def bad_handler():
        raise ValueError("something went wrong")

    metrics = SessionMetrics()
    td = ToolDescriptor(name="bad", handler=bad_handler)
    result = await _executor(metrics).execute(_call("bad"), td)
    assert result.is_error
    assert "something went wrong" in result.text
    assert metrics.tool_errors_total == 1
    assert metrics.tool_calls_total == {"bad": 1}


@pytest.mark.asyncio
async def test_execute_decode_failure_becomes_error():
    td = ToolDescriptor(name="echo", parameters=ECHO_SCHEMA, handler=lambda msg: msg)
    result = await _executor().execute(_call("echo", "{broken"), td)
    assert result.is_error
    assert "echo" in result.text


@pytest.mark.asyncio
async def test_intercept_overrides_handler():
    calls = []
    td = ToolDescriptor(name="echo", parameters=ECHO_SCHEMA, handler=lambda msg: calls.append(msg))

    result = await _executor().execute(
        _call("echo", '{"msg": "x"}'),
        td,
        intercept=lambda call: ToolExecutionResult.success("intercepted"),
    )
    assert result.text == "intercepted"
    assert calls == []


@pytest.mark.asyncio
async def test_intercept_unhandled_falls_through():
    td = ToolDescriptor(name="echo", parameters=ECHO_SCHEMA, handler=lambda msg: msg)

    async def intercept(call):
        return ToolExecutionResult.unhandled()

    result = await _executor().execute(_call("echo", '{"msg": "x"}'), td, intercept=intercept)
    assert result.text == "x"

    result = await _executor().execute(_call("echo", '{"msg": "y"}'), td, intercept=lambda call: None)
    assert result.text == "y"


@pytest.mark.asyncio
async def test_intercept_runs_for_unknown_tool():
    result = await _executor().execute(
        _call("virtual"),
        None,
        intercept=lambda call: ToolExecutionResult.success(f"handled {call.name}"),
    )
    assert result.text == "handled virtual"


@pytest.mark.asyncio
async def test_intercept_exception_becomes_error():
    calls = []
    td = ToolDescriptor(name="echo", parameters=ECHO_SCHEMA, handler=lambda msg: calls.append(msg))

    def intercept(call):
        raise RuntimeError("hook failed")

    metrics = SessionMetrics()
    result = await _executor(metrics).execute(_call("echo", '{"msg": "x"}'), td, intercept=intercept)
    assert result.is_error
    assert result.to_message_text() == "Error: Tool 'echo' failed: hook failed"
    assert calls == []
    assert metrics.tool_errors_total == 1


@pytest.mark.asyncio
async def test_runner_exception_becomes_error():
    async def runner():
        raise RuntimeError("delegate crashed")

    result = await _executor().execute(_call("helper"), None, runner=runner)
    assert result.is_error
    assert result.text == "Tool 'helper' failed: delegate crashed"
