"""Agent: a session plus instructions, sub-agents and a prompt entry point."""
from __future__ import annotations

import copy
import dataclasses
import enum
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable

from pydantic import BaseModel, Field

from genloop.agent.codec import ParameterCodec
from genloop.agent.loop import LoopCallbacks, LoopOutcome, LoopState, SubAgentOutcome
from genloop.agent.messages import Message, Role, ToolCallRequest, ToolDescriptor, ToolExecutionResult
from genloop.agent.providers.base import Transport
from genloop.agent.session import Session, SessionState
from genloop.agent.tool_registry import ToolIntercept
from genloop.config import GenerationConfig, Settings
from genloop.errors import GenerationError, ToolDecodeError
from genloop.trace import generate_trace_id, get_current_trace_id

logger = logging.getLogger(__name__)

SUCCESS_STATES = {
    LoopState.COMPLETED,
    LoopState.TERMINATED,
    LoopState.ITERATION_LIMIT_REACHED,
    LoopState.STOPPED,
}


class InteractionMode(str, enum.Enum):
    DELEGATION = "delegation"
    HANDOFF = "handoff"


class HistoryMode(str, enum.Enum):
    NO_HISTORY = "no_history"
    FULL_HISTORY = "full_history"


class SubAgentRequest(BaseModel):
    task: str = Field(description="The task or question for the agent")


@dataclass(slots=True)
class AgentRunResult:
    text: str = ""
    responding_agent: "Agent | None" = None
    terminating_tool: str | None = None
    error: GenerationError | None = None
    state: LoopState = LoopState.IDLE
    iterations: int = 0
    trace_id: str | None = None

    @property
    def is_success(self) -> bool:
        return self.error is None and self.state in SUCCESS_STATES

    @property
    def error_message(self) -> str:
        return self.error.message if self.error is not None else ""


@dataclass(slots=True)
class _SubAgentLink:
    agent: "Agent"
    interaction_mode: InteractionMode
    history_mode: HistoryMode


AgentCallback = Callable[[AgentRunResult], Awaitable[None] | None]


def _sanitize_name(name: str) -> str:
    return re.sub(r"[^a-z0-9_]+", "_", name.strip().lower()).strip("_") or "agent"


class Agent:
    def __init__(
        self,
        transport: Transport,
        *,
        name: str = "agent",
        instructions: str | None = None,
        description: str = "",
        config: GenerationConfig | None = None,
        settings: Settings | None = None,
        tools: Iterable[ToolDescriptor] = (),
        log_tool_calls: bool = False,
    ) -> None:
        self.name = name
        self.instructions = instructions
        self.description = description
        self.log_tool_calls = log_tool_calls
        self._session = Session(transport, config, settings=settings, tools=tools, name=name)
        self._session.set_sub_agent_runner(self._run_sub_agent)
        self._sub_agents: dict[str, _SubAgentLink] = {}
        self._codec = ParameterCodec()
        self._last_result: AgentRunResult | None = None
        self._apply_instructions(self._session.state)

    def __repr__(self) -> str:
        return f"Agent(name={self.name!r})"

    @property
    def session(self) -> Session:
        return self._session

    @property
    def tool_name(self) -> str:
        return _sanitize_name(self.name)

    @property
    def last_result(self) -> AgentRunResult | None:
        return self._last_result

    # ─── tools and sub-agents ─────────────────────────────────────────────

    def add_tool(self, descriptor: ToolDescriptor, terminating: bool | None = None) -> ToolDescriptor:
        if terminating is not None:
            descriptor = dataclasses.replace(descriptor, terminating=terminating)
        return self._session.add_tool(descriptor)

    def add_agent(
        self,
        sub_agent: "Agent",
        interaction_mode: InteractionMode | str,
        history_mode: HistoryMode | str = HistoryMode.NO_HISTORY,
    ) -> ToolDescriptor:
        if sub_agent is self:
            raise ValueError("an agent cannot be added as its own sub-agent")
        interaction_mode = InteractionMode(interaction_mode)
        history_mode = HistoryMode(history_mode)

        if interaction_mode is InteractionMode.HANDOFF:
            description = sub_agent.description or f"Hand the conversation over to {sub_agent.name}."
        else:
            description = sub_agent.description or f"Delegate a task to {sub_agent.name} and get its answer."
        descriptor = ToolDescriptor(
            name=sub_agent.tool_name,
            description=description,
            parameters=SubAgentRequest,
            sub_agent=sub_agent,
        )
        self._session.add_tool(descriptor)
        self._sub_agents[descriptor.name] = _SubAgentLink(sub_agent, interaction_mode, history_mode)
        return descriptor

    def clear_tools(self) -> None:
        self._session.clear_tools()
        self._sub_agents.clear()

    def find_tool_by_name(self, name: str) -> ToolDescriptor | None:
        return self._session.find_tool_by_name(name)

    def reset_session(self) -> None:
        self._session.reset(keep_config=True)
        self._apply_instructions(self._session.state)
        self._last_result = None

    def request_stop(self) -> None:
        self._session.request_stop()

    # ─── prompt ───────────────────────────────────────────────────────────

    async def prompt(
        self,
        text: str,
        on_complete: AgentCallback | None = None,
        on_error: AgentCallback | None = None,
        on_tool_call: ToolIntercept | None = None,
    ) -> AgentRunResult:
        result = await self._run(text, on_tool_call=on_tool_call, trace_id=generate_trace_id())
        if result.is_success:
            await self._session.scheduler.invoke(on_complete, result)
        else:
            await self._session.scheduler.invoke(on_error, result)
        return result

    async def _run(
        self,
        text: str,
        *,
        on_tool_call: ToolIntercept | None,
        trace_id: str,
        history: tuple[Message, ...] | None = None,
        fresh: bool = False,
    ) -> AgentRunResult:
        def prepare(state: SessionState) -> None:
            if fresh:
                state.conversation.clear()
                self._apply_instructions(state)
                for message in history or ():
                    if message.role is not Role.SYSTEM:
                        state.conversation.add(copy.deepcopy(message))
            state.conversation.append(Role.USER, text)

        callbacks = LoopCallbacks(on_tool_call=self._wrap_intercept(on_tool_call))
        outcome = await self._session.run_cycle(callbacks, trace_id, prepare=prepare)
        result = self._result_from(outcome, trace_id)
        self._last_result = result
        return result

    def _result_from(self, outcome: LoopOutcome, trace_id: str) -> AgentRunResult:
        return AgentRunResult(
            text=outcome.text,
            responding_agent=outcome.responding_agent or self,
            terminating_tool=outcome.terminating_tool,
            error=outcome.error,
            state=outcome.state,
            iterations=outcome.iterations,
            trace_id=trace_id,
        )

    def _apply_instructions(self, state: SessionState) -> None:
        if self.instructions:
            state.conversation.set_system_message(self.instructions)

    def _wrap_intercept(self, on_tool_call: ToolIntercept | None) -> ToolIntercept | None:
        if not self.log_tool_calls:
            return on_tool_call

        def _logged(call: ToolCallRequest) -> Any:
            logger.info(
                "tool call requested",
                extra={"agent": self.name, "tool_name": call.name, "tool_call_id": call.id},
            )
            if on_tool_call is None:
                return None
            return on_tool_call(call)

        return _logged

    # ─── sub-agent dispatch ───────────────────────────────────────────────

    async def _run_sub_agent(
        self,
        descriptor: ToolDescriptor,
        call: ToolCallRequest,
        history: tuple[Message, ...],
        allow_handoff: bool,
    ) -> SubAgentOutcome:
        link = self._sub_agents.get(descriptor.name)
        if link is None or link.agent is not descriptor.sub_agent:
            return SubAgentOutcome(ToolExecutionResult.error(f"Unknown tool: {call.name}"))
        sub_agent = link.agent

        try:
            decoded = self._codec.decode(descriptor, call.arguments)
        except ToolDecodeError as exc:
            return SubAgentOutcome(ToolExecutionResult.error(str(exc)))
        request: SubAgentRequest = decoded.args[0]

        if link.interaction_mode is InteractionMode.HANDOFF and not allow_handoff:
            return SubAgentOutcome(
                ToolExecutionResult.error(
                    f"handoff to {sub_agent.name} ignored: another call in this batch already ended the run"
                )
            )
        if sub_agent.session.is_busy:
            return SubAgentOutcome(ToolExecutionResult.error(f"sub-agent {sub_agent.name} is busy"))

        seed = history if link.history_mode is HistoryMode.FULL_HISTORY else None
        logger.info(
            "sub-agent started",
            extra={
                "agent": self.name,
                "tool_name": descriptor.name,
                "state": link.interaction_mode.value,
            },
        )
        result = await sub_agent._run(
            request.task,
            on_tool_call=None,
            trace_id=get_current_trace_id(),
            history=seed,
            fresh=True,
        )

        if link.interaction_mode is InteractionMode.DELEGATION:
            if not result.is_success:
                return SubAgentOutcome(
                    ToolExecutionResult.error(f"sub-agent {sub_agent.name} failed: {result.error_message}")
                )
            return SubAgentOutcome(ToolExecutionResult.success(result.text))

        handoff = LoopOutcome(
            state=result.state,
            text=result.text,
            error=result.error,
            terminating_tool=result.terminating_tool,
            responding_agent=result.responding_agent or sub_agent,
            iterations=result.iterations,
        )
        if not result.is_success:
            return SubAgentOutcome(
                ToolExecutionResult.error(f"sub-agent {sub_agent.name} failed: {result.error_message}"),
                handoff=handoff,
            )
        return SubAgentOutcome(ToolExecutionResult.success(result.text), handoff=handoff)
