"""One request/response cycle against the transport."""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import asdict, replace
from typing import TYPE_CHECKING, Any, Callable, Sequence

from genloop.agent.codec import SchemaProvider
from genloop.agent.messages import (
    GenerationChoice,
    GenerationRequest,
    GenerationResponse,
    StreamUnit,
    ToolCallRequest,
)
from genloop.agent.providers.base import Transport
from genloop.agent.scheduler import CallbackScheduler
from genloop.agent.streaming import StreamDispatcher
from genloop.errors import MalformedResponseError, StructuredOutputParseError, error_from_exception
from genloop.observability.logging import get_traffic_logger

if TYPE_CHECKING:
    from genloop.agent.session import SessionState

logger = logging.getLogger(__name__)


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:8]}"


class GenerationEngine:
    def __init__(self, transport: Transport, scheduler: CallbackScheduler) -> None:
        self._transport = transport
        self._scheduler = scheduler

    @property
    def transport(self) -> Transport:
        return self._transport

    def build_request(self, state: "SessionState", tool_choice: str | None, stream: bool) -> GenerationRequest:
        config = state.config
        schema = SchemaProvider.resolve(config.schema)
        tools = tuple(state.tools.to_schemas())
        return GenerationRequest(
            model=config.model,
            messages=state.conversation.snapshot(),
            tools=tools,
            tool_choice=tool_choice if tools else None,
            temperature=config.temperature,
            max_output_tokens=config.max_output_tokens,
            schema=schema.json_schema if schema else None,
            schema_name=schema.name if schema else None,
            stream=stream,
            choice_count=config.choice_count,
            params=dict(config.params),
        )

    async def generate(
        self,
        state: "SessionState",
        *,
        tool_choice: str | None = None,
        on_stream_chunk: Callable[[str], Any] | None = None,
        on_choice_selection: Callable[[list[GenerationChoice]], Any] | None = None,
    ) -> GenerationResponse:
        """Run one cycle and append exactly one assistant message on success.

        Raises ``GenerationError`` for every failure; the conversation is left
        untouched in that case.
        """
        streaming = on_stream_chunk is not None and self._transport.supports_streaming
        request = self.build_request(state, tool_choice, streaming)
        state.aggregated_text = ""
        state.current_stream_chunk = ""
        self._record_traffic(state, "request", request)

        started = time.perf_counter()
        try:
            timeout = state.config.request_timeout_seconds
            call = self._stream(state, request, on_stream_chunk) if streaming else self._transport.send(request)
            if timeout:
                response = await asyncio.wait_for(call, timeout)
            else:
                response = await call
            response = await self._validate(response, on_choice_selection)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            err = error_from_exception(exc)
            state.metrics.generations_failed_total += 1
            logger.warning(
                "generation failed: %s",
                err.message,
                extra={"iteration": state.iteration_count, "outcome": err.code},
            )
            if err is exc:
                raise
            raise err from exc

        if on_stream_chunk is not None and not streaming and response.text:
            state.current_stream_chunk = response.text
            await self._scheduler.invoke(on_stream_chunk, response.text)

        state.conversation.append_assistant(response.text, response.tool_calls)
        state.iteration_count += 1
        response = self._parse_structured_output(state, response)
        state.last_response = response
        state.aggregated_text = response.text
        state.metrics.generations_total += 1
        state.metrics.record_usage(response.usage)
        self._record_traffic(state, "response", response)

        logger.debug(
            "generation completed",
            extra={
                "iteration": state.iteration_count,
                "duration_ms": int((time.perf_counter() - started) * 1000),
                "outcome": response.finish_reason,
            },
        )
        return response

    async def _stream(
        self,
        state: "SessionState",
        request: GenerationRequest,
        on_stream_chunk: Callable[[str], Any],
    ) -> GenerationResponse:
        dispatcher = StreamDispatcher(self._scheduler, on_stream_chunk, on_progress=state.record_stream_progress)
        async for unit in self._transport.stream(request):
            if not isinstance(unit, StreamUnit):
                raise MalformedResponseError(
                    code="E_MALFORMED_RESPONSE",
                    message=f"transport yielded {type(unit).__name__}, expected StreamUnit",
                )
            await dispatcher.feed(unit)
        return dispatcher.finish()

    async def _validate(
        self,
        response: Any,
        on_choice_selection: Callable[[list[GenerationChoice]], Any] | None,
    ) -> GenerationResponse:
        if not isinstance(response, GenerationResponse):
            raise MalformedResponseError(
                code="E_MALFORMED_RESPONSE",
                message=f"transport returned {type(response).__name__}, expected GenerationResponse",
            )
        # the transport keeps ownership of the object it returned
        text, tool_calls, finish_reason = response.text, response.tool_calls, response.finish_reason
        if response.choices:
            choice = response.choices[await self._select_choice(response.choices, on_choice_selection)]
            text = choice.text
            tool_calls = list(choice.tool_calls)
            finish_reason = choice.finish_reason or finish_reason
        return replace(
            response,
            text=text or "",
            tool_calls=_normalize_tool_calls(tool_calls),
            finish_reason=finish_reason,
            parsed_structured_output=None,
        )

    async def _select_choice(
        self,
        choices: list[GenerationChoice],
        on_choice_selection: Callable[[list[GenerationChoice]], Any] | None,
    ) -> int:
        if on_choice_selection is None or len(choices) < 2:
            return 0
        selected = await self._scheduler.invoke(on_choice_selection, list(choices))
        if isinstance(selected, int) and not isinstance(selected, bool) and 0 <= selected < len(choices):
            return selected
        logger.warning("choice selection returned %r, using the first choice", selected)
        return 0

    def _parse_structured_output(self, state: "SessionState", response: GenerationResponse) -> GenerationResponse:
        schema = SchemaProvider.resolve(state.config.schema)
        if schema is None or not response.text.strip():
            return response
        try:
            parsed = schema.parse(response.text)
        except StructuredOutputParseError as exc:
            logger.warning("structured output not parsed: %s", exc, extra={"iteration": state.iteration_count})
            return response
        state.structured_output = parsed
        return replace(response, parsed_structured_output=parsed)

    def _record_traffic(self, state: "SessionState", direction: str, payload: Any) -> None:
        if not state.config.record_traffic:
            return
        get_traffic_logger().info(
            "%s %s",
            direction,
            state.config.model,
            extra={"direction": direction, "payload": asdict(payload)},
        )


def _normalize_tool_calls(tool_calls: Sequence[Any] | None) -> list[ToolCallRequest]:
    normalized: list[ToolCallRequest] = []
    seen: set[str] = set()
    for call in tool_calls or ():
        if not isinstance(call, ToolCallRequest) or not call.name:
            raise MalformedResponseError(
                code="E_MALFORMED_RESPONSE",
                message=f"invalid tool call in response: {call!r}",
            )
        if not call.id:
            call = ToolCallRequest(id=new_call_id(), name=call.name, arguments=call.arguments)
        if call.id in seen:
            raise MalformedResponseError(
                code="E_MALFORMED_RESPONSE",
                message=f"duplicate tool call id '{call.id}' in response",
            )
        seen.add(call.id)
        normalized.append(call)
    return normalized
