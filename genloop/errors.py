from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx

from genloop.trace import get_current_trace_id

DEFAULT_INTERNAL_MESSAGE = "Generation failed"
CONTENT_FILTER_MARKERS = ("content_filter", "content_policy", "safety")


@dataclass(slots=True)
class GenerationError(Exception):
    code: str
    message: str
    retryable: bool = False
    details: dict[str, Any] | None = None
    cause: str | None = None

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True)
class TransportError(GenerationError):
    pass


@dataclass(slots=True)
class ProviderError(GenerationError):
    # rate_limit | auth | content_filter | unsupported_feature | rejected
    kind: str = "rejected"


@dataclass(slots=True)
class MalformedResponseError(GenerationError):
    pass


class ToolDecodeError(ValueError):
    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(f"Invalid arguments for tool '{tool_name}': {message}")
        self.tool_name = tool_name


class ToolExecutionError(RuntimeError):
    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class StructuredOutputParseError(ValueError):
    """Raised by schema providers; the engine logs it and carries on."""


class ConversationError(ValueError):
    pass


class MessageNotFoundError(IndexError):
    def __init__(self, index: int, length: int) -> None:
        super().__init__(f"message index {index} out of range for conversation of {length}")
        self.index = index
        self.length = length


def error_payload(err: GenerationError, trace_id: str | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "code": err.code,
        "message": err.message,
        "trace_id": trace_id or get_current_trace_id(),
        "retryable": err.retryable,
        "ts": datetime.now(tz=timezone.utc).isoformat(),
    }
    if isinstance(err, ProviderError):
        payload["kind"] = err.kind
    if err.details:
        payload["details"] = err.details
    if err.cause:
        payload["cause"] = err.cause
    return payload


def error_from_exception(exc: BaseException) -> GenerationError:
    if isinstance(exc, GenerationError):
        return exc

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return TransportError(
            code="E_TIMEOUT",
            message="Request timed out.",
            retryable=True,
            cause="timeout",
        )

    if isinstance(exc, httpx.TimeoutException):
        return TransportError(
            code="E_NETWORK_TIMEOUT",
            message="Network timeout.",
            retryable=True,
            cause="network_timeout",
        )

    if isinstance(exc, httpx.HTTPStatusError):
        return _from_status_error(exc)

    if isinstance(exc, httpx.TransportError):
        return TransportError(
            code="E_NETWORK",
            message=f"Network request failed: {exc}",
            retryable=True,
            cause=exc.__class__.__name__,
        )

    if isinstance(exc, (json.JSONDecodeError, KeyError, ValueError, TypeError)):
        return MalformedResponseError(
            code="E_MALFORMED_RESPONSE",
            message=f"Invalid response payload: {exc}",
            retryable=False,
            cause=exc.__class__.__name__,
        )

    return GenerationError(
        code="E_INTERNAL",
        message=str(exc) or DEFAULT_INTERNAL_MESSAGE,
        retryable=False,
        cause=exc.__class__.__name__,
    )


def _from_status_error(exc: httpx.HTTPStatusError) -> GenerationError:
    status = int(exc.response.status_code)
    body = _decode_error_body(exc.response)
    details = {"status_code": status, "body": body}

    if status in {401, 403}:
        return ProviderError(
            code="E_PROVIDER_AUTH",
            message="Provider rejected the credentials.",
            retryable=False,
            details=details,
            cause="provider_auth",
            kind="auth",
        )
    if status == 429:
        return ProviderError(
            code="E_PROVIDER_RATE_LIMIT",
            message="Provider rate limited request.",
            retryable=True,
            details=details,
            cause="provider_rate_limit",
            kind="rate_limit",
        )
    if status >= 500:
        return TransportError(
            code="E_NETWORK",
            message=f"Provider request failed with status={status}.",
            retryable=True,
            details=details,
            cause="http_status_error",
        )

    lowered = body.lower()
    if any(marker in lowered for marker in CONTENT_FILTER_MARKERS):
        return ProviderError(
            code="E_PROVIDER_CONTENT_FILTER",
            message="Provider blocked the request by content policy.",
            retryable=False,
            details=details,
            cause="provider_content_filter",
            kind="content_filter",
        )
    if "unsupported" in lowered or "not supported" in lowered:
        return ProviderError(
            code="E_PROVIDER_UNSUPPORTED",
            message="Provider does not support a requested feature.",
            retryable=False,
            details=details,
            cause="provider_unsupported_feature",
            kind="unsupported_feature",
        )
    return ProviderError(
        code="E_PROVIDER_REJECTED",
        message=f"Provider rejected request with status={status}.",
        retryable=False,
        details=details,
        cause="http_status_error",
        kind="rejected",
    )


def _decode_error_body(response: httpx.Response) -> str:
    try:
        raw = response.content
    except httpx.ResponseNotRead:
        return ""
    try:
        parsed = json.loads(raw.decode("utf-8"))
        if isinstance(parsed, dict):
            return json.dumps(parsed)[:500]
    except ValueError:
        pass
    return raw.decode("utf-8", errors="ignore")[:500].strip()
