"""Shared pytest fixtures for all tests."""

import asyncio
from typing import Any, List, Optional
from unittest.mock import Mock

import pytest

from chatstream.chat.chunks import DoneChunk, TokenChunk
from chatstream.chat.message_store import MessageStore
from chatstream.chat.models import Citation, SendMessagePayload, SendMessageResponse
from chatstream.chat.orchestrator import ChatOrchestrator
from chatstream.chat.transport import BaseTransport

_CLOSE = object()


class ScriptedStream:
    """
    Async iterator driven by the test.

    Items are returned in order; exceptions in the script are raised instead of
    returned. Unless ``closed`` is set the stream waits for more ``push`` calls.
    """

    def __init__(self, items: Optional[List[Any]] = None, closed: bool = True):
        self._queue: asyncio.Queue = asyncio.Queue()
        self.reads = 0
        self.close_count = 0
        for item in items or []:
            self.push(item)
        if closed:
            self.close()

    def push(self, item: Any) -> None:
        self._queue.put_nowait(item)

    def close(self) -> None:
        self._queue.put_nowait(_CLOSE)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Any:
        item = await self._queue.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        self.reads += 1
        if isinstance(item, BaseException):
            raise item
        return item

    async def aclose(self) -> None:
        self.close_count += 1


class FakeTransport:
    """In-memory transport handing out prepared streams."""

    def __init__(self, streams=None, send_error: Optional[Exception] = None):
        self.streams = list(streams or [])
        self.send_error = send_error
        self.payloads: List[SendMessagePayload] = []
        self.regenerated: List[str] = []
        self.stop_streaming = Mock()
        self.on_error = Mock()

    def _next_response(self) -> SendMessageResponse:
        return SendMessageResponse(
            message_id=f"srv-{len(self.payloads) + len(self.regenerated)}",
            conversation_id="conv-1",
            stream=self.streams.pop(0),
        )

    async def send_message(self, payload: SendMessagePayload) -> SendMessageResponse:
        self.payloads.append(payload)
        if self.send_error is not None:
            raise self.send_error
        return self._next_response()

    async def regenerate_response(self, message_id: str) -> SendMessageResponse:
        self.regenerated.append(message_id)
        if self.send_error is not None:
            raise self.send_error
        return self._next_response()


class EchoTransport(BaseTransport):
    """Transport answering "answer to <message>" for each request."""

    async def _start(self, payload: SendMessagePayload) -> SendMessageResponse:
        async def stream():
            yield TokenChunk(content=f"answer to {payload.message}")
            yield DoneChunk()

        return self._new_response(payload, stream())


async def _wait_until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not reached before timeout")
        await asyncio.sleep(0.001)


@pytest.fixture
def wait_until():
    """Poll a predicate while letting other tasks run."""
    return _wait_until


@pytest.fixture
def scripted_stream():
    """Factory for ScriptedStream instances."""
    return ScriptedStream


@pytest.fixture
def fake_transport():
    """Transport with no prepared streams; tests append to ``streams``."""
    return FakeTransport()


@pytest.fixture
def echo_transport():
    """BaseTransport that echoes the request message in its answer."""
    return EchoTransport()


@pytest.fixture
def transport_factory():
    """Factory for FakeTransport instances."""
    return FakeTransport


@pytest.fixture
def message_store():
    """Create an empty message store."""
    return MessageStore()


@pytest.fixture
def orchestrator(fake_transport, message_store):
    """Orchestrator over the fake transport with default policies."""
    return ChatOrchestrator(
        fake_transport,
        model_id="gpt-4o",
        data_sources=["doc-1"],
        store=message_store,
        overlap_policy="reject",
        max_history_messages=100,
        regenerate_via_transport=False,
    )


@pytest.fixture
def sample_citation():
    """Citation as sent by the document search backend."""
    return Citation(
        id="cit-1",
        document="Employee_Handbook.pdf",
        page=15,
        chunk_index=3,
        relevance_score=92,
    )


@pytest.fixture
def model_chunk():
    """Factory for LangChain-like model chunks with explicit attributes."""

    def _make(content: Any = "", additional_kwargs=None, tool_call_chunks=None, usage_metadata=None):
        return Mock(
            content=content,
            additional_kwargs=additional_kwargs or {},
            tool_call_chunks=tool_call_chunks or [],
            usage_metadata=usage_metadata,
        )

    return _make
