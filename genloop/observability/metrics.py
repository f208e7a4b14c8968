from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict


@dataclass(slots=True)
class SessionMetrics:
    generations_total: int = 0
    generations_failed_total: int = 0
    tool_calls_total: Dict[str, int] = field(default_factory=dict)
    tool_errors_total: int = 0
    prompt_tokens_total: int = 0
    completion_tokens_total: int = 0

    def increment_tool_call(self, tool_name: str) -> None:
        self.tool_calls_total[tool_name] = self.tool_calls_total.get(tool_name, 0) + 1

    def record_usage(self, usage: dict[str, int] | None) -> None:
        if not usage:
            return
        self.prompt_tokens_total += int(usage.get("prompt_tokens", 0) or 0)
        self.completion_tokens_total += int(usage.get("completion_tokens", 0) or 0)

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens_total + self.completion_tokens_total

    def reset(self) -> None:
        self.generations_total = 0
        self.generations_failed_total = 0
        self.tool_calls_total.clear()
        self.tool_errors_total = 0
        self.prompt_tokens_total = 0
        self.completion_tokens_total = 0

    def snapshot(self) -> dict:
        return {
            "generations_total": self.generations_total,
            "generations_failed_total": self.generations_failed_total,
            "tool_calls_total": dict(self.tool_calls_total),
            "tool_errors_total": self.tool_errors_total,
            "prompt_tokens_total": self.prompt_tokens_total,
            "completion_tokens_total": self.completion_tokens_total,
        }
