"""Transport abstraction: the only seam between the engine and a model provider."""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import AsyncIterator, Iterator

from genloop.agent.messages import GenerationRequest, GenerationResponse, StreamUnit
from genloop.agent.scheduler import iterate_in_worker


class Transport(ABC):
    @abstractmethod
    async def send(self, request: GenerationRequest) -> GenerationResponse: ...

    @property
    def supports_streaming(self) -> bool:
        return False

    async def stream(self, request: GenerationRequest) -> AsyncIterator[StreamUnit]:  # pragma: no cover
        raise NotImplementedError("streaming not implemented for this transport")
        yield


class BlockingTransport(Transport):
    """Base for transports built on blocking I/O.

    Subclasses implement ``send_blocking`` (and optionally ``stream_blocking``);
    both run on a worker thread so the primary loop never blocks. Every stream
    unit is handed back to the loop as it arrives.
    """

    @abstractmethod
    def send_blocking(self, request: GenerationRequest) -> GenerationResponse: ...

    def stream_blocking(self, request: GenerationRequest) -> Iterator[StreamUnit]:
        raise NotImplementedError("streaming not implemented for this transport")

    @property
    def supports_streaming(self) -> bool:
        return type(self).stream_blocking is not BlockingTransport.stream_blocking

    async def send(self, request: GenerationRequest) -> GenerationResponse:
        return await asyncio.to_thread(self.send_blocking, request)

    async def stream(self, request: GenerationRequest) -> AsyncIterator[StreamUnit]:
        async for unit in iterate_in_worker(lambda: self.stream_blocking(request)):
            yield unit
