"""Incremental aggregation of streamed generation output."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

from genloop.agent.messages import GenerationResponse, StreamUnit, ToolCallRequest
from genloop.agent.scheduler import CallbackScheduler


@dataclass(slots=True)
class _PartialCall:
    id: str | None = None
    name: str = ""
    arguments: list[str] = field(default_factory=list)


class StreamDispatcher:
    def __init__(
        self,
        scheduler: CallbackScheduler,
        on_chunk: Callable[[str], Any] | None,
        on_progress: Callable[[str, str], None] | None = None,
    ) -> None:
        self._scheduler = scheduler
        self._on_chunk = on_chunk
        # (aggregated_text, current_chunk) mirror for session state
        self._on_progress = on_progress
        self._buffer: list[str] = []
        self._complete_calls: list[ToolCallRequest] = []
        self._partial_calls: dict[int, _PartialCall] = {}
        self._finish_reason: str | None = None
        self._usage: dict[str, int] = {}
        self.chunk_count = 0

    @property
    def aggregated_text(self) -> str:
        return "".join(self._buffer)

    async def feed(self, unit: StreamUnit) -> None:
        if unit.tool_calls:
            self._complete_calls.extend(unit.tool_calls)
        for delta in unit.tool_call_deltas:
            partial = self._partial_calls.setdefault(delta.index, _PartialCall())
            if delta.id:
                partial.id = delta.id
            if delta.name:
                partial.name += delta.name
            if delta.arguments:
                partial.arguments.append(delta.arguments)
        if unit.finish_reason:
            self._finish_reason = unit.finish_reason
        if unit.usage:
            self._usage = dict(unit.usage)

        if not unit.text_delta:
            return
        self._buffer.append(unit.text_delta)
        self.chunk_count += 1
        if self._on_progress is not None:
            self._on_progress(self.aggregated_text, unit.text_delta)
        await self._scheduler.invoke(self._on_chunk, unit.text_delta)

    def finish(self) -> GenerationResponse:
        tool_calls = list(self._complete_calls)
        for index in sorted(self._partial_calls):
            partial = self._partial_calls[index]
            tool_calls.append(
                ToolCallRequest(id=partial.id or "", name=partial.name, arguments="".join(partial.arguments))
            )
        return GenerationResponse(
            text=self.aggregated_text,
            tool_calls=tool_calls,
            finish_reason=self._finish_reason,
            usage=dict(self._usage),
        )
