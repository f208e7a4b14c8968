"""Session: owner of one conversation and the single-flight generate cycle."""
from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable

from genloop.agent.codec import SchemaProvider
from genloop.agent.conversation import ConversationStore
from genloop.agent.engine import GenerationEngine
from genloop.agent.loop import AgentController, LoopCallbacks, LoopOutcome, LoopState, SubAgentRunner
from genloop.agent.messages import (
    GenerationChoice,
    GenerationResponse,
    Message,
    Role,
    ToolDescriptor,
)
from genloop.agent.providers.base import Transport
from genloop.agent.scheduler import CallbackScheduler
from genloop.agent.tool_registry import ToolExecutor, ToolIntercept, ToolRegistry, tool
from genloop.config import GenerationConfig, Settings, load_settings
from genloop.errors import GenerationError, error_from_exception, error_payload
from genloop.observability.logging import get_sdk_logger
from genloop.observability.metrics import SessionMetrics
from genloop.trace import generate_trace_id, set_current_trace_id

logger = logging.getLogger(__name__)

SessionCallback = Callable[["Session"], Awaitable[None] | None]


@dataclass(slots=True)
class SessionState:
    config: GenerationConfig
    conversation: ConversationStore = field(default_factory=ConversationStore)
    tools: ToolRegistry = field(default_factory=ToolRegistry)
    metrics: SessionMetrics = field(default_factory=SessionMetrics)
    iteration_count: int = 0
    last_error: GenerationError | None = None
    last_response: GenerationResponse | None = None
    in_flight: bool = False
    structured_output: Any = None
    aggregated_text: str = ""
    current_stream_chunk: str = ""
    stop_requested: bool = False

    def record_stream_progress(self, aggregated: str, chunk: str) -> None:
        self.aggregated_text = aggregated
        self.current_stream_chunk = chunk

    def clear_cycle_state(self) -> None:
        self.iteration_count = 0
        self.last_error = None
        self.last_response = None
        self.structured_output = None
        self.aggregated_text = ""
        self.current_stream_chunk = ""
        self.stop_requested = False


class Session:
    def __init__(
        self,
        transport: Transport,
        config: GenerationConfig | None = None,
        *,
        settings: Settings | None = None,
        tools: Iterable[ToolDescriptor] = (),
        name: str = "session",
    ) -> None:
        self.name = name
        self._settings = settings or load_settings()
        get_sdk_logger(self._settings.log_level)
        self._scheduler = CallbackScheduler()
        self._state = SessionState(config=config or GenerationConfig.from_settings(self._settings))
        self._state.tools.register_many(tools)
        self._lock = asyncio.Lock()
        self._engine = GenerationEngine(transport, self._scheduler)
        self._executor = ToolExecutor(self._scheduler, metrics=self._state.metrics)
        self._controller = AgentController(self._engine, self._executor)
        self._last_outcome: LoopOutcome | None = None

    # ─── state ────────────────────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def config(self) -> GenerationConfig:
        return self._state.config

    @config.setter
    def config(self, value: GenerationConfig) -> None:
        self._state.config = value

    @property
    def conversation(self) -> ConversationStore:
        return self._state.conversation

    @property
    def scheduler(self) -> CallbackScheduler:
        return self._scheduler

    @property
    def metrics(self) -> SessionMetrics:
        return self._state.metrics

    @property
    def is_busy(self) -> bool:
        return self._lock.locked()

    @property
    def last_outcome(self) -> LoopOutcome | None:
        return self._last_outcome

    def set_sub_agent_runner(self, runner: SubAgentRunner | None) -> None:
        self._controller = AgentController(self._engine, self._executor, run_sub_agent=runner)

    def bind_loop(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._scheduler.bind(loop)

    def reset(self, keep_config: bool = True) -> None:
        """Drop the conversation and cycle results; without ``keep_config`` also tools and config."""
        self._state.conversation.clear()
        self._state.clear_cycle_state()
        self._state.metrics.reset()
        if not keep_config:
            self._state.tools.clear()
            self._state.config = GenerationConfig.from_settings(self._settings)
        self._last_outcome = None

    # ─── generate ─────────────────────────────────────────────────────────

    async def generate(
        self,
        on_complete: SessionCallback | None = None,
        on_error: SessionCallback | None = None,
        on_stream_chunk: Callable[[str], Awaitable[None] | None] | None = None,
        on_tool_call: ToolIntercept | None = None,
        on_choice_selection: Callable[[list[GenerationChoice]], Awaitable[int] | int] | None = None,
    ) -> LoopOutcome:
        callbacks = LoopCallbacks(
            on_stream_chunk=on_stream_chunk,
            on_tool_call=on_tool_call,
            on_choice_selection=on_choice_selection,
        )
        outcome = await self.run_cycle(callbacks, trace_id=generate_trace_id())

        # dispatched after the guard is released so a callback may start the next cycle
        if outcome.is_error:
            await self._scheduler.invoke(on_error, self)
        else:
            await self._scheduler.invoke(on_complete, self)
        return outcome

    async def run_cycle(
        self,
        callbacks: LoopCallbacks,
        trace_id: str,
        prepare: Callable[[SessionState], None] | None = None,
    ) -> LoopOutcome:
        """Run one guarded cycle; ``prepare`` mutates the state once the guard is held."""
        async with self._lock:
            self._scheduler.bind()
            set_current_trace_id(trace_id)
            state = self._state
            state.in_flight = True
            state.last_error = None
            state.structured_output = None
            state.stop_requested = False
            extra = {"session": self.name, "trace_id": trace_id}
            logger.info("generate started", extra=extra)
            try:
                if prepare is not None:
                    prepare(state)
                if not self.is_valid_for_generation():
                    raise GenerationError(
                        code="E_EMPTY_CONVERSATION",
                        message="Conversation has no user or developer message to respond to.",
                    )
                outcome = await self._controller.run(state, callbacks)
            except GenerationError as err:
                outcome = self._failed(err)
            except Exception as exc:
                logger.exception("generate raised", extra=extra)
                outcome = self._failed(error_from_exception(exc))
            finally:
                state.in_flight = False

            if outcome.error is not None:
                logger.warning(
                    "generate failed: %s",
                    outcome.error.message,
                    extra={**extra, "outcome": outcome.error.code, "payload": error_payload(outcome.error, trace_id)},
                )
            else:
                logger.info(
                    "generate finished",
                    extra={**extra, "state": outcome.state.value, "iteration": outcome.iterations},
                )
            self._last_outcome = outcome
            return outcome

    def _failed(self, err: GenerationError) -> LoopOutcome:
        self._state.last_error = err
        return LoopOutcome(
            state=LoopState.FAILED,
            error=err,
            response=self._state.last_response,
            iterations=self._state.iteration_count,
        )

    def submit_generate(self, **callbacks: Any) -> concurrent.futures.Future[LoopOutcome]:
        """Schedule ``generate`` on the session's loop from any thread."""
        self._scheduler.require_loop()
        return self._scheduler.submit(self.generate(**callbacks))

    def request_stop(self) -> None:
        self._state.stop_requested = True

    # ─── messages ─────────────────────────────────────────────────────────

    def add_message(self, role: Role | str, text: str) -> Message:
        return self._state.conversation.append(role, text)

    def add_user_message(self, text: str) -> Message:
        return self._state.conversation.append(Role.USER, text)

    def add_developer_message(self, text: str) -> Message:
        return self._state.conversation.append(Role.DEVELOPER, text)

    def add_assistant_message(self, text: str) -> Message:
        return self._state.conversation.append_assistant(text)

    def set_system_message(self, text: str) -> Message:
        return self._state.conversation.set_system_message(text)

    def add_tool_result_message(self, tool_call_id: str, text: str, tool_name: str | None = None) -> Message:
        return self._state.conversation.append_tool_result(tool_call_id, text, tool_name)

    def clear_messages(self) -> None:
        self._state.conversation.clear()

    def get_message_count(self) -> int:
        return len(self._state.conversation)

    def get_message_text(self, index: int = -1) -> str:
        return self._state.conversation.get(index).text

    def get_message_role(self, index: int = -1) -> Role:
        return self._state.conversation.get(index).role

    def get_text(self, index: int = -1, role_filter: Role | str | None = None) -> str:
        message = self._state.conversation.get(index)
        if role_filter is not None and message.role is not Role(role_filter):
            return ""
        return message.text

    def get_role(self, index: int = -1, role_filter: Role | str | None = None) -> Role | None:
        message = self._state.conversation.get(index)
        if role_filter is not None and message.role is not Role(role_filter):
            return None
        return message.role

    def get_messages_by_role(self, role: Role | str) -> list[str]:
        return self._state.conversation.texts_by_role(role)

    def count_messages_by_role(self, role: Role | str) -> int:
        return self._state.conversation.count_by_role(role)

    def get_last_message_text(self, role: Role | str | None = None) -> str:
        index = self._state.conversation.last_index_matching(role)
        if index is None:
            return ""
        return self._state.conversation.get(index).text

    # ─── tools ────────────────────────────────────────────────────────────

    def add_tool(self, descriptor: ToolDescriptor) -> ToolDescriptor:
        return self._state.tools.register(descriptor)

    def add_tools(self, descriptors: Iterable[ToolDescriptor]) -> None:
        self._state.tools.register_many(descriptors)

    def add_tool_function(self, fn: Callable[..., Any], **options: Any) -> ToolDescriptor:
        return self.add_tool(tool(**options)(fn))

    def clear_tools(self) -> None:
        self._state.tools.clear()

    def find_tool_by_name(self, name: str) -> ToolDescriptor | None:
        return self._state.tools.get(name)

    def has_tool(self, name: str) -> bool:
        return self._state.tools.has(name)

    def get_tools(self) -> list[ToolDescriptor]:
        return self._state.tools.descriptors()

    # ─── results ──────────────────────────────────────────────────────────

    def has_error(self) -> bool:
        return self._state.last_error is not None

    @property
    def last_error(self) -> GenerationError | None:
        return self._state.last_error

    def error_message(self) -> str:
        err = self._state.last_error
        return err.message if err is not None else ""

    def clear_error(self) -> None:
        self._state.last_error = None

    def has_response(self) -> bool:
        return self._state.last_response is not None

    @property
    def last_response(self) -> GenerationResponse | None:
        return self._state.last_response

    def is_valid_for_generation(self) -> bool:
        return any(message.role in {Role.USER, Role.DEVELOPER} for message in self._state.conversation)

    def expects_structured_output(self) -> bool:
        return self._state.config.schema is not None

    def expected_schema_name(self) -> str:
        schema = SchemaProvider.resolve(self._state.config.schema)
        return schema.name if schema is not None else ""

    @property
    def structured_output(self) -> Any:
        return self._state.structured_output

    def aggregated_response_text(self) -> str:
        return self._state.aggregated_text

    def current_stream_chunk_text(self) -> str:
        return self._state.current_stream_chunk

    def total_tokens_used(self) -> int:
        return self._state.metrics.total_tokens
