"""Transport that replays a preset script; used offline and in tests."""
from __future__ import annotations

import asyncio
from typing import AsyncIterator, Callable, Sequence, Union

from genloop.agent.messages import GenerationRequest, GenerationResponse, StreamUnit
from genloop.agent.providers.base import Transport

ScriptEntry = Union[
    GenerationResponse,
    BaseException,
    Sequence[StreamUnit],
    Callable[[GenerationRequest], GenerationResponse],
]


def units_from_response(response: GenerationResponse, chunk_size: int = 4) -> list[StreamUnit]:
    units = [
        StreamUnit(text_delta=response.text[start:start + chunk_size])
        for start in range(0, len(response.text), chunk_size)
    ]
    units.append(
        StreamUnit(
            tool_calls=tuple(response.tool_calls),
            finish_reason=response.finish_reason,
            usage=dict(response.usage) or None,
        )
    )
    return units


class ScriptedTransport(Transport):
    """Returns script entries in order; the last entry repeats once the script runs out."""

    def __init__(
        self,
        script: Sequence[ScriptEntry],
        *,
        streaming: bool = False,
        delay: float = 0.0,
        chunk_size: int = 4,
    ) -> None:
        if not script:
            raise ValueError("script must contain at least one entry")
        self._script = list(script)
        self._idx = 0
        self._streaming = streaming
        self._delay = delay
        self._chunk_size = chunk_size
        self.requests: list[GenerationRequest] = []

    @property
    def supports_streaming(self) -> bool:
        return self._streaming

    @property
    def call_count(self) -> int:
        return len(self.requests)

    def _next(self, request: GenerationRequest) -> ScriptEntry:
        self.requests.append(request)
        entry = self._script[self._idx]
        self._idx = min(self._idx + 1, len(self._script) - 1)
        return entry

    async def send(self, request: GenerationRequest) -> GenerationResponse:
        entry = self._next(request)
        if self._delay:
            await asyncio.sleep(self._delay)
        if isinstance(entry, BaseException):
            raise entry
        if isinstance(entry, GenerationResponse):
            return entry
        if callable(entry):
            return entry(request)
        return _collapse(entry)

    async def stream(self, request: GenerationRequest) -> AsyncIterator[StreamUnit]:
        entry = self._next(request)
        if isinstance(entry, BaseException):
            raise entry
        if callable(entry) and not isinstance(entry, GenerationResponse):
            entry = entry(request)
        units = units_from_response(entry, self._chunk_size) if isinstance(entry, GenerationResponse) else entry
        for unit in units:
            if self._delay:
                await asyncio.sleep(self._delay)
            yield unit


def _collapse(units: Sequence[StreamUnit]) -> GenerationResponse:
    response = GenerationResponse()
    for unit in units:
        response.text += unit.text_delta
        response.tool_calls.extend(unit.tool_calls)
        if unit.finish_reason:
            response.finish_reason = unit.finish_reason
        if unit.usage:
            response.usage = dict(unit.usage)
    return response
