"""
loop.py: agentic loop

State machine over one session: ask the model, run the requested tools, feed
the results back, and stop on a final answer, a terminating tool, a handoff,
a failure, an external stop request or the request budget.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from genloop.agent.engine import GenerationEngine
from genloop.agent.messages import (
    GenerationChoice,
    GenerationResponse,
    Message,
    ResultKind,
    ToolCallRequest,
    ToolDescriptor,
    ToolExecutionResult,
)
from genloop.agent.tool_registry import ToolExecutor, ToolIntercept
from genloop.errors import GenerationError

if TYPE_CHECKING:
    from genloop.agent.session import SessionState

logger = logging.getLogger(__name__)

FORCING_TOOL_CHOICES_EXEMPT = {"auto", "none"}


class LoopState(str, enum.Enum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOLS = "executing_tools"
    COMPLETED = "completed"
    TERMINATED = "terminated"
    FAILED = "failed"
    ITERATION_LIMIT_REACHED = "iteration_limit_reached"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self not in {LoopState.IDLE, LoopState.AWAITING_MODEL, LoopState.EXECUTING_TOOLS}


@dataclass(slots=True)
class LoopOutcome:
    state: LoopState
    text: str = ""
    response: GenerationResponse | None = None
    error: GenerationError | None = None
    terminating_tool: str | None = None
    responding_agent: Any = None
    iterations: int = 0

    @property
    def is_error(self) -> bool:
        return self.state is LoopState.FAILED


@dataclass(slots=True)
class LoopCallbacks:
    on_stream_chunk: Callable[[str], Awaitable[None] | None] | None = None
    on_tool_call: ToolIntercept | None = None
    on_choice_selection: Callable[[list[GenerationChoice]], Awaitable[int] | int] | None = None


@dataclass(slots=True)
class SubAgentOutcome:
    result: ToolExecutionResult
    # set when the sub-agent took over the conversation
    handoff: LoopOutcome | None = None


SubAgentRunner = Callable[
    [ToolDescriptor, ToolCallRequest, "tuple[Message, ...]", bool],
    Awaitable[SubAgentOutcome],
]


class AgentController:
    def __init__(
        self,
        engine: GenerationEngine,
        executor: ToolExecutor,
        run_sub_agent: SubAgentRunner | None = None,
    ) -> None:
        self._engine = engine
        self._executor = executor
        self._run_sub_agent = run_sub_agent

    async def run(self, state: "SessionState", callbacks: LoopCallbacks | None = None) -> LoopOutcome:
        """
        Drive the session until a terminal state.

        The budget check happens before every model call, so a loop that keeps
        requesting tools makes exactly ``max_api_requests`` calls.
        """
        cb = callbacks or LoopCallbacks()
        tool_choice = state.config.tool_choice
        last_text = ""
        state.iteration_count = 0
        loop_state = LoopState.AWAITING_MODEL

        while True:
            if state.stop_requested:
                logger.info("loop stopped on request", extra={"iteration": state.iteration_count})
                return self._outcome(state, LoopState.STOPPED, last_text)

            if state.iteration_count >= state.config.max_api_requests:
                logger.warning(
                    "loop hit max_api_requests=%d",
                    state.config.max_api_requests,
                    extra={"iteration": state.iteration_count, "state": LoopState.ITERATION_LIMIT_REACHED.value},
                )
                return self._outcome(state, LoopState.ITERATION_LIMIT_REACHED, last_text)

            logger.debug(
                "loop iteration",
                extra={"iteration": state.iteration_count, "state": loop_state.value},
            )
            try:
                response = await self._engine.generate(
                    state,
                    tool_choice=tool_choice,
                    on_stream_chunk=cb.on_stream_chunk,
                    on_choice_selection=cb.on_choice_selection,
                )
            except GenerationError as err:
                state.last_error = err
                return self._outcome(state, LoopState.FAILED, last_text, error=err)

            if response.text:
                last_text = response.text

            if not response.tool_calls:
                return self._outcome(state, LoopState.COMPLETED, response.text)

            loop_state = LoopState.EXECUTING_TOOLS
            terminal = await self._execute_batch(state, response, cb)
            if terminal is not None:
                return terminal

            if tool_choice and tool_choice not in FORCING_TOOL_CHOICES_EXEMPT:
                tool_choice = "auto"
            loop_state = LoopState.AWAITING_MODEL

    async def _execute_batch(
        self,
        state: "SessionState",
        response: GenerationResponse,
        cb: LoopCallbacks,
    ) -> LoopOutcome | None:
        # history as it stood before this batch's assistant message
        history = state.conversation.snapshot()[:-1]
        terminal: LoopOutcome | None = None

        for call in response.tool_calls:
            descriptor = state.tools.get(call.name)
            handoffs: list[LoopOutcome] = []
            runner = None
            if descriptor is not None and descriptor.sub_agent is not None and self._run_sub_agent is not None:
                runner = self._sub_agent_runner(descriptor, call, history, terminal is None, handoffs)

            result = await self._executor.execute(call, descriptor, cb.on_tool_call, runner=runner)
            state.conversation.append_tool_result(call.id, result.to_message_text(), call.name)

            if terminal is not None:
                continue
            if handoffs:
                handoff = handoffs[0]
                terminal = LoopOutcome(
                    state=handoff.state,
                    text=handoff.text,
                    response=state.last_response,
                    error=handoff.error,
                    terminating_tool=handoff.terminating_tool,
                    responding_agent=handoff.responding_agent,
                    iterations=state.iteration_count,
                )
                if handoff.error is not None:
                    state.last_error = handoff.error
            elif result.kind is ResultKind.TERMINATE or (descriptor is not None and descriptor.terminating):
                # a failed terminating tool still ends the run, carrying its error text
                terminal = self._outcome(
                    state, LoopState.TERMINATED, result.to_message_text(), terminating_tool=call.name
                )

        return terminal

    def _sub_agent_runner(
        self,
        descriptor: ToolDescriptor,
        call: ToolCallRequest,
        history: tuple[Message, ...],
        allow_handoff: bool,
        handoffs: list[LoopOutcome],
    ) -> Callable[[], Awaitable[ToolExecutionResult]]:
        async def _run() -> ToolExecutionResult:
            outcome = await self._run_sub_agent(descriptor, call, history, allow_handoff)
            if outcome.handoff is not None:
                handoffs.append(outcome.handoff)
            return outcome.result

        return _run

    @staticmethod
    def _outcome(
        state: "SessionState",
        loop_state: LoopState,
        text: str,
        *,
        error: GenerationError | None = None,
        terminating_tool: str | None = None,
    ) -> LoopOutcome:
        logger.info(
            "loop finished",
            extra={"iteration": state.iteration_count, "state": loop_state.value},
        )
        return LoopOutcome(
            state=loop_state,
            text=text,
            response=state.last_response,
            error=error,
            terminating_tool=terminating_tool,
            iterations=state.iteration_count,
        )
