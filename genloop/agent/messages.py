"""Conversation, request and response types shared by the session and the loop."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Mapping

if TYPE_CHECKING:
    from genloop.agent.agent import Agent


class Role(str, enum.Enum):
    SYSTEM = "system"
    DEVELOPER = "developer"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True, slots=True)
class ToolCallRequest:
    id: str
    name: str
    # JSON text or an already-decoded mapping, as the provider produced it
    arguments: str | Mapping[str, Any] = ""


@dataclass(frozen=True, slots=True)
class Message:
    role: Role
    text: str = ""
    tool_calls: tuple[ToolCallRequest, ...] = ()
    tool_call_id: str | None = None
    tool_name: str | None = None


class ResultKind(str, enum.Enum):
    SUCCESS = "success"
    ERROR = "error"
    UNHANDLED = "unhandled"
    TERMINATE = "terminate"


@dataclass(frozen=True, slots=True)
class ToolExecutionResult:
    kind: ResultKind
    text: str = ""

    @classmethod
    def success(cls, text: str = "") -> "ToolExecutionResult":
        return cls(ResultKind.SUCCESS, text)

    @classmethod
    def error(cls, message: str) -> "ToolExecutionResult":
        return cls(ResultKind.ERROR, message)

    @classmethod
    def unhandled(cls) -> "ToolExecutionResult":
        return cls(ResultKind.UNHANDLED)

    @classmethod
    def terminate(cls, text: str = "") -> "ToolExecutionResult":
        return cls(ResultKind.TERMINATE, text)

    @property
    def is_error(self) -> bool:
        return self.kind is ResultKind.ERROR

    def to_message_text(self) -> str:
        if self.kind is ResultKind.ERROR:
            return f"Error: {self.text}"
        return self.text


@dataclass(slots=True)
class ToolDescriptor:
    name: str
    description: str = ""
    # pydantic model class, explicit JSON schema dict, or None for no arguments
    parameters: Any = None
    handler: Callable[..., Any] | None = None
    terminating: bool = False
    execute_on_primary_context: bool = True
    sub_agent: "Agent | None" = None


@dataclass(frozen=True, slots=True)
class ToolSchema:
    name: str
    description: str
    input_schema: dict


@dataclass(frozen=True, slots=True)
class GenerationRequest:
    model: str
    messages: tuple[Message, ...]
    tools: tuple[ToolSchema, ...] = ()
    tool_choice: str | None = None
    temperature: float | None = None
    max_output_tokens: int | None = None
    schema: dict | None = None
    schema_name: str | None = None
    stream: bool = False
    choice_count: int = 1
    params: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class GenerationChoice:
    text: str = ""
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    finish_reason: str | None = None


@dataclass(slots=True)
class GenerationResponse:
    text: str = ""
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    finish_reason: str | None = None
    usage: dict[str, int] = field(default_factory=dict)
    parsed_structured_output: Any = None
    choices: list[GenerationChoice] = field(default_factory=list)

    @property
    def total_tokens(self) -> int:
        return int(self.usage.get("prompt_tokens", 0) or 0) + int(self.usage.get("completion_tokens", 0) or 0)


@dataclass(frozen=True, slots=True)
class ToolCallDelta:
    index: int
    id: str | None = None
    name: str | None = None
    arguments: str = ""


@dataclass(frozen=True, slots=True)
class StreamUnit:
    text_delta: str = ""
    tool_calls: tuple[ToolCallRequest, ...] = ()
    tool_call_deltas: tuple[ToolCallDelta, ...] = ()
    finish_reason: str | None = None
    usage: Mapping[str, int] | None = None
