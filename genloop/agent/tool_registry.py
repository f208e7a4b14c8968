"""Tool registry: descriptors, schema generation, and dispatch."""
from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from typing import Any, Awaitable, Callable, Iterable

from genloop.agent.codec import ParameterCodec, parameters_model, parameters_schema
from genloop.agent.messages import (
    ResultKind,
    ToolCallRequest,
    ToolDescriptor,
    ToolExecutionResult,
    ToolSchema,
)
from genloop.agent.scheduler import CallbackScheduler
from genloop.errors import ToolDecodeError, ToolExecutionError
from genloop.observability.metrics import SessionMetrics

logger = logging.getLogger(__name__)

ToolIntercept = Callable[[ToolCallRequest], "ToolExecutionResult | None | Awaitable[ToolExecutionResult | None]"]


def tool(
    name: str | None = None,
    *,
    description: str | None = None,
    parameters: Any = None,
    terminating: bool = False,
    execute_on_primary_context: bool = True,
) -> Callable[[Callable[..., Any]], ToolDescriptor]:
    """Build a ``ToolDescriptor`` from a function.

    The description defaults to the first line of the docstring. Parameters are
    never inferred from the signature; pass a pydantic model or a JSON schema.
    """

    def decorator(fn: Callable[..., Any]) -> ToolDescriptor:
        doc = inspect.getdoc(fn) or ""
        return ToolDescriptor(
            name=name or fn.__name__,
            description=description if description is not None else doc.split("\n", 1)[0],
            parameters=parameters,
            handler=fn,
            terminating=terminating,
            execute_on_primary_context=execute_on_primary_context,
        )

    return decorator


class ToolRegistry:
    def __init__(self, descriptors: Iterable[ToolDescriptor] = ()) -> None:
        self._tools: dict[str, ToolDescriptor] = {}
        self.register_many(descriptors)

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def register(self, descriptor: ToolDescriptor) -> ToolDescriptor:
        if not descriptor.name:
            raise ValueError("tool name must not be empty")
        if descriptor.handler is None and descriptor.sub_agent is None:
            raise ValueError(f"tool '{descriptor.name}' has no handler")
        try:
            parameters_model(descriptor.name, descriptor.parameters)
        except Exception as exc:
            raise ValueError(f"tool '{descriptor.name}' has unusable parameters: {exc}") from exc
        # re-registering a name replaces the previous descriptor
        self._tools[descriptor.name] = descriptor
        return descriptor

    def register_many(self, descriptors: Iterable[ToolDescriptor]) -> None:
        for descriptor in descriptors:
            self.register(descriptor)

    def get(self, name: str) -> ToolDescriptor | None:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def remove(self, name: str) -> ToolDescriptor | None:
        return self._tools.pop(name, None)

    def clear(self) -> None:
        self._tools.clear()

    def descriptors(self) -> list[ToolDescriptor]:
        return list(self._tools.values())

    def to_schemas(self) -> list[ToolSchema]:
        return [
            ToolSchema(
                name=td.name,
                description=td.description,
                input_schema=parameters_schema(td.parameters),
            )
            for td in self._tools.values()
        ]

    def copy(self) -> "ToolRegistry":
        return ToolRegistry(self._tools.values())


def coerce_result(value: Any) -> ToolExecutionResult:
    if isinstance(value, ToolExecutionResult):
        return value
    if value is None:
        return ToolExecutionResult.success("")
    if isinstance(value, str):
        return ToolExecutionResult.success(value)
    return ToolExecutionResult.success(json.dumps(value, ensure_ascii=False, default=str))


class ToolExecutor:
    def __init__(
        self,
        scheduler: CallbackScheduler,
        codec: ParameterCodec | None = None,
        metrics: SessionMetrics | None = None,
    ) -> None:
        self._scheduler = scheduler
        self._codec = codec or ParameterCodec()
        self._metrics = metrics

    async def intercept(self, call: ToolCallRequest, hook: ToolIntercept | None) -> ToolExecutionResult | None:
        if hook is None:
            return None
        outcome = await self._scheduler.invoke(hook, call)
        if outcome is None:
            return None
        outcome = coerce_result(outcome)
        if outcome.kind is ResultKind.UNHANDLED:
            return None
        return outcome

    async def execute(
        self,
        call: ToolCallRequest,
        descriptor: ToolDescriptor | None,
        intercept: ToolIntercept | None = None,
        runner: Callable[[], Awaitable[ToolExecutionResult]] | None = None,
    ) -> ToolExecutionResult:
        started = time.perf_counter()
        if self._metrics is not None:
            self._metrics.increment_tool_call(call.name)

        try:
            result = await self.intercept(call, intercept)
            if result is None and runner is not None:
                result = await runner()
        except Exception as exc:
            result = self._failure(call, exc)
        if result is None:
            result = await self._run_default(call, descriptor)

        if result.is_error and self._metrics is not None:
            self._metrics.tool_errors_total += 1
        logger.debug(
            "tool executed",
            extra={
                "tool_name": call.name,
                "tool_call_id": call.id,
                "outcome": result.kind.value,
                "duration_ms": int((time.perf_counter() - started) * 1000),
            },
        )
        return result

    async def _run_default(self, call: ToolCallRequest, descriptor: ToolDescriptor | None) -> ToolExecutionResult:
        if descriptor is None or descriptor.handler is None:
            return ToolExecutionResult.error(f"Unknown tool: {call.name}")
        try:
            decoded = self._codec.decode(descriptor, call.arguments)
        except ToolDecodeError as exc:
            return ToolExecutionResult.error(str(exc))

        handler = descriptor.handler
        args = decoded.args
        kwargs = decoded.kwargs or {}
        try:
            if inspect.iscoroutinefunction(handler):
                value = await handler(*args, **kwargs)
            elif descriptor.execute_on_primary_context:
                value = handler(*args, **kwargs)
                if inspect.isawaitable(value):
                    value = await value
            else:
                value = await asyncio.to_thread(handler, *args, **kwargs)
        except Exception as exc:
            return self._failure(call, exc)
        return coerce_result(value)

    @staticmethod
    def _failure(call: ToolCallRequest, exc: Exception) -> ToolExecutionResult:
        failure = exc
        if not isinstance(exc, ToolExecutionError):
            failure = ToolExecutionError(call.name, str(exc) or exc.__class__.__name__)
        logger.warning("tool call raised", extra={"tool_name": call.name, "tool_call_id": call.id}, exc_info=True)
        return ToolExecutionResult.error(str(failure))
