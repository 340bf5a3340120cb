"""Structured log events for requests and streams.

Every event is a loguru record whose fields live in ``record["extra"]``, so
the JSONL sink configured by ``setup_logging`` can be queried per event type.
"""

import contextvars
import time
import uuid
from enum import Enum
from typing import Any, Dict, Optional

from chatstream.config.settings import settings
from chatstream.utils.logger import logger

_correlation_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "chatstream_correlation_id", default=None
)

MAX_LOGGED_TEXT = 200


class EventType(str, Enum):
    CHAT_REQUEST = "chat_request"
    CHAT_RESPONSE = "chat_response"
    STREAM = "stream"
    ERROR = "error"

    def __str__(self) -> str:
        return self.value


def generate_correlation_id() -> str:
    """Return a short id such as ``req-1a2b3c4d``."""
    return f"req-{uuid.uuid4().hex[:8]}"


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def set_correlation_id(correlation_id: str) -> None:
    _correlation_id.set(correlation_id)


class CorrelationContext:
    """
    Bind a correlation id to every event emitted inside the block.

    Each send or regenerate runs inside its own context, so the request event,
    stream lifecycle events and the final response event share one id.
    """

    def __init__(self, correlation_id: Optional[str] = None):
        self.correlation_id = correlation_id or generate_correlation_id()
        self._token: Optional[contextvars.Token] = None

    def __enter__(self) -> str:
        self._token = _correlation_id.set(self.correlation_id)
        return self.correlation_id

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        token, self._token = self._token, None
        if token is None:
            return
        try:
            _correlation_id.reset(token)
        except ValueError:
            # Exited from a different context than the one entered
            _correlation_id.set(None)


def _truncate(text: str) -> str:
    return text if len(text) <= MAX_LOGGED_TEXT else text[:MAX_LOGGED_TEXT]


def _emit(event: EventType, level: str = "INFO", message: Optional[str] = None, **fields: Any) -> None:
    """
    Emit one structured event.

    Args:
        event: Event type, stored as ``event_type``
        level: loguru level name
        message: Human readable line; defaults to the event type
        **fields: Extra fields bound on the record
    """
    fields["event_type"] = event.value
    fields["timestamp_unix"] = time.time()

    correlation_id = get_correlation_id()
    if correlation_id and settings.ENABLE_CORRELATION_IDS:
        fields["correlation_id"] = correlation_id

    logger.bind(**fields).log(level.upper(), message or f"{event} event")


def log_chat_request(user_message: str, model: str, operation: str = "sendMessage", **kwargs: Any) -> None:
    """
    Record that a request was handed to the transport.

    Args:
        user_message: Text being answered (truncated in the record)
        model: Selected model id
        operation: "sendMessage" or "regenerateResponse"
        **kwargs: Extra fields such as history_length
    """
    _emit(
        EventType.CHAT_REQUEST,
        message=f"{operation} request (model={model})",
        user_message=_truncate(user_message),
        message_length=len(user_message),
        model=model,
        operation=operation,
        **kwargs
    )


def log_chat_response(
    message_id: str,
    outcome: str,
    latency_ms: int,
    chunk_count: int,
    response_length: int,
    prompt_tokens: int = 0,
    completion_tokens: int = 0,
    total_tokens: int = 0,
    cost_usd: float = 0.0,
    error_message: Optional[str] = None,
    **kwargs: Any
) -> None:
    """
    Record how a stream ended, with its telemetry.

    Errors are logged at WARNING; completed and stopped streams at INFO.

    Args:
        message_id: Assistant message the stream wrote into
        outcome: "completed", "error" or "stopped"
        latency_ms: Time from first read to termination
        chunk_count: Chunks applied to the message
        response_length: Characters of accumulated content
        prompt_tokens: Prompt tokens, when the stream reported usage
        completion_tokens: Completion tokens, when reported
        total_tokens: Total tokens, when reported
        cost_usd: Estimated cost
        error_message: Failure message for errored streams
    """
    failed = outcome == "error"
    _emit(
        EventType.CHAT_RESPONSE,
        level="WARNING" if failed else "INFO",
        message=f"response {outcome} for {message_id} ({chunk_count} chunks, {latency_ms} ms)",
        message_id=message_id,
        outcome=outcome,
        success=not failed,
        latency_ms=latency_ms,
        chunk_count=chunk_count,
        response_length=response_length,
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=total_tokens,
        cost_usd=round(cost_usd, 8),
        error_message=error_message,
        **kwargs
    )


def log_stream_event(action: str, message_id: Optional[str] = None, **kwargs: Any) -> None:
    """Record a stream lifecycle action: started, stopped, abandoned or rejected."""
    _emit(
        EventType.STREAM,
        level="DEBUG",
        message=f"stream {action}",
        action=action,
        message_id=message_id,
        **kwargs
    )


def log_error(
    error_type: str,
    error_message: str,
    context: Optional[Dict[str, Any]] = None,
    **kwargs: Any
) -> None:
    _emit(
        EventType.ERROR,
        level="ERROR",
        message=f"{error_type}: {error_message}",
        error_type=error_type,
        error_message=error_message,
        context=context,
        **kwargs
    )
