"""Ordered message history owned by a single session."""
from __future__ import annotations

import copy
from typing import Iterable, Iterator, Sequence

from genloop.agent.messages import Message, Role, ToolCallRequest
from genloop.errors import ConversationError, MessageNotFoundError


class ConversationStore:
    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self._messages: list[Message] = []
        for message in messages:
            self.add(message)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._messages))

    def add(self, message: Message) -> Message:
        if message.role is Role.TOOL:
            self._check_tool_call_id(message.tool_call_id)
        self._messages.append(message)
        return message

    def append(self, role: Role | str, text: str) -> Message:
        role = Role(role)
        if role is Role.TOOL:
            raise ConversationError("tool messages must be added with append_tool_result")
        return self.add(Message(role=role, text=text or ""))

    def append_assistant(self, text: str, tool_calls: Sequence[ToolCallRequest] = ()) -> Message:
        return self.add(Message(role=Role.ASSISTANT, text=text or "", tool_calls=tuple(tool_calls)))

    def append_tool_result(self, tool_call_id: str, text: str, tool_name: str | None = None) -> Message:
        return self.add(
            Message(role=Role.TOOL, text=text or "", tool_call_id=tool_call_id, tool_name=tool_name)
        )

    def set_system_message(self, text: str) -> Message:
        message = Message(role=Role.SYSTEM, text=text or "")
        if self._messages and self._messages[0].role is Role.SYSTEM:
            self._messages[0] = message
        else:
            self._messages.insert(0, message)
        return message

    def clear(self) -> None:
        self._messages.clear()

    def get(self, index: int) -> Message:
        try:
            return self._messages[index]
        except IndexError:
            raise MessageNotFoundError(index, len(self._messages)) from None

    def count_by_role(self, role: Role | str) -> int:
        role = Role(role)
        return sum(1 for message in self._messages if message.role is role)

    def texts_by_role(self, role: Role | str) -> list[str]:
        role = Role(role)
        return [message.text for message in self._messages if message.role is role]

    def last_index_matching(self, role: Role | str | None = None) -> int | None:
        wanted = Role(role) if role is not None else None
        for index in range(len(self._messages) - 1, -1, -1):
            if wanted is None or self._messages[index].role is wanted:
                return index
        return None

    def snapshot(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def copy(self) -> "ConversationStore":
        clone = ConversationStore()
        clone._messages = copy.deepcopy(self._messages)
        return clone

    def _check_tool_call_id(self, tool_call_id: str | None) -> None:
        if not tool_call_id:
            raise ConversationError("tool message requires a tool_call_id")
        for message in reversed(self._messages):
            if message.role is not Role.ASSISTANT:
                continue
            if any(call.id == tool_call_id for call in message.tool_calls):
                return
        raise ConversationError(f"no prior assistant tool call with id '{tool_call_id}'")
