"""Reads one response stream and applies its chunks to the message store."""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator, Optional

from chatstream.chat.cancellation import CancellationHandle
from chatstream.chat.chunks import DoneChunk, ErrorChunk, StreamChunk, is_terminal, parse_chunk
from chatstream.chat.message_store import MessageStore
from chatstream.chat.models import MessageStatus
from chatstream.exceptions import MalformedChunkError, StreamFailure
from chatstream.telemetry.metrics import TelemetryMetrics
from chatstream.utils.logger import logger
from chatstream.utils.structured_logging import log_chat_response

_END_OF_STREAM = object()


class ConsumerState(str, Enum):
    IDLE = "idle"
    READING = "reading"
    TERMINATED = "terminated"


class StreamOutcome(str, Enum):
    """How a stream ended; mirrors the terminal message status."""
    COMPLETED = "completed"
    ERROR = "error"
    STOPPED = "stopped"

    def __str__(self) -> str:
        return self.value


@dataclass
class StreamResult:
    """
    Result of consuming a stream.

    Attributes:
        outcome: Terminal outcome
        chunk_count: Number of chunks applied to the message
        error: The failure when outcome is ERROR
    """
    outcome: StreamOutcome
    chunk_count: int = 0
    error: Optional[StreamFailure] = None


async def _read_next(iterator: AsyncIterator[Any]) -> Any:
    return await anext(iterator, _END_OF_STREAM)


class StreamConsumer:
    """
    Applies the chunks of one stream to one assistant message.

    Lifecycle is IDLE -> READING -> TERMINATED, once per instance. Reading stops
    at the first ``done`` or ``error`` chunk, on a read failure, or when the
    cancellation handle fires; the stream is closed exactly once on every path.
    Handle cancellation is not an error and never raises.
    """

    def __init__(
        self,
        store: MessageStore,
        stream: AsyncIterable[Any],
        message_id: str,
        handle: CancellationHandle,
    ):
        """
        Initialize the consumer.

        Args:
            store: Message store holding the target message
            stream: Async iterable of StreamChunk objects or wire mappings
            message_id: Assistant message to write into
            handle: Cancellation handle guarding this stream
        """
        self.store = store
        self.stream = stream
        self.message_id = message_id
        self.handle = handle
        self.state = ConsumerState.IDLE
        message = store.get(message_id)
        model = message.annotations.model if message and message.annotations else None
        self.metrics = TelemetryMetrics(model)
        self._iterator: Optional[AsyncIterator[Any]] = None
        self._pending_read: Optional[asyncio.Task] = None
        self._released = False

    async def consume(self) -> StreamResult:
        """
        Read the stream to its end.

        Returns:
            StreamResult describing how the stream ended

        Raises:
            RuntimeError: If the consumer was already used
        """
        if self.state != ConsumerState.IDLE:
            raise RuntimeError("StreamConsumer can only consume once")

        self.state = ConsumerState.READING
        self.metrics.start_timer()
        logger.debug(f"Consuming stream for message {self.message_id}")

        try:
            result = await self._read_loop()
        except asyncio.CancelledError:
            # The task running us was cancelled (not the handle): finalize, then propagate
            self.store.set_status(self.message_id, MessageStatus.STOPPED)
            raise
        finally:
            await self._release()
            self.metrics.stop_timer()
            self.state = ConsumerState.TERMINATED

        self._log_result(result)
        return result

    async def _read_loop(self) -> StreamResult:
        try:
            self._iterator = aiter(self.stream)
        except TypeError as e:
            return self._failed(StreamFailure(f"Stream is not async iterable: {e}"), e)

        while True:
            if self.handle.cancelled:
                return self._stopped()

            try:
                raw = await self._next_chunk()
            except _HandleCancelled:
                return self._stopped()
            except Exception as e:
                # An aborted request usually surfaces as a read error
                if self.handle.cancelled:
                    return self._stopped()
                return self._failed(StreamFailure(str(e) or "Stream read error"), e)

            if raw is _END_OF_STREAM:
                # Closed without a terminal chunk: finalize what we have
                self.store.set_status(self.message_id, MessageStatus.COMPLETED)
                return StreamResult(StreamOutcome.COMPLETED, self.metrics.chunk_count)

            if self.handle.cancelled:
                return self._stopped()

            try:
                chunk = parse_chunk(raw)
            except MalformedChunkError as e:
                return self._failed(e)

            self._apply(chunk)

            if is_terminal(chunk):
                return self._terminal_result(chunk)

    async def _next_chunk(self) -> Any:
        """Await the next chunk, abandoning the read if the handle fires first."""
        read = asyncio.ensure_future(_read_next(self._iterator))
        cancelled = asyncio.ensure_future(self.handle.wait())
        self._pending_read = read
        try:
            await asyncio.wait({read, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()

        if read.done():
            self._pending_read = None
            return read.result()
        raise _HandleCancelled()

    def _apply(self, chunk: StreamChunk) -> None:
        self.store.apply_chunk(self.message_id, chunk)
        self.metrics.record_chunk()
        if isinstance(chunk, DoneChunk) and chunk.usage is not None:
            self.metrics.set_token_usage(chunk.usage.prompt, chunk.usage.completion, chunk.usage.total)

    def _terminal_result(self, chunk: StreamChunk) -> StreamResult:
        if isinstance(chunk, ErrorChunk):
            logger.warning(f"Stream for message {self.message_id} reported an error: {chunk.message}")
            return StreamResult(
                StreamOutcome.ERROR, self.metrics.chunk_count, StreamFailure(chunk.message)
            )
        return StreamResult(StreamOutcome.COMPLETED, self.metrics.chunk_count)

    def _stopped(self) -> StreamResult:
        logger.info(f"Stream for message {self.message_id} stopped after {self.metrics.chunk_count} chunks")
        self.store.set_status(self.message_id, MessageStatus.STOPPED)
        return StreamResult(StreamOutcome.STOPPED, self.metrics.chunk_count)

    def _failed(self, error: StreamFailure, cause: Optional[BaseException] = None) -> StreamResult:
        if cause is not None:
            error.__cause__ = cause
        logger.error(f"Stream for message {self.message_id} failed: {error}")
        self.store.set_status(self.message_id, MessageStatus.ERROR)
        return StreamResult(StreamOutcome.ERROR, self.metrics.chunk_count, error)

    async def _release(self) -> None:
        """Close the stream reader. Runs at most once."""
        if self._released:
            return
        self._released = True

        pending = self._pending_read
        self._pending_read = None
        if pending is not None and not pending.done():
            pending.cancel()
            # Let the reader unwind before closing it
            await asyncio.wait({pending})
        if pending is not None and not pending.cancelled():
            pending.exception()

        aclose = getattr(self._iterator, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            logger.warning(f"Failed to close stream for message {self.message_id}: {e}")

    def _log_result(self, result: StreamResult) -> None:
        message = self.store.get(self.message_id)
        stats = self.metrics.to_dict()
        log_chat_response(
            message_id=self.message_id,
            outcome=result.outcome.value,
            latency_ms=stats["latency_ms"],
            chunk_count=stats["chunk_count"],
            response_length=len(message.content) if message else 0,
            prompt_tokens=stats["prompt_tokens"],
            completion_tokens=stats["completion_tokens"],
            total_tokens=stats["total_tokens"],
            cost_usd=stats["cost_usd"],
            error_message=str(result.error) if result.error else None,
            first_chunk_ms=stats["first_chunk_ms"],
        )
        logger.debug(f"Stream for message {self.message_id}: {self.metrics.format_stats()}")


class _HandleCancelled(Exception):
    """Internal signal: the handle fired while a read was pending."""
