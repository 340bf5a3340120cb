"""Unit tests for StreamConsumer."""

import asyncio

import pytest

from chatstream.chat.cancellation import CancellationHandle
from chatstream.chat.chunks import DoneChunk, ErrorChunk, TokenChunk
from chatstream.chat.models import MessageStatus, TokenUsage
from chatstream.chat.stream_consumer import ConsumerState, StreamConsumer, StreamOutcome
from chatstream.exceptions import MalformedChunkError, StreamFailure


@pytest.fixture
def placeholder(message_store):
    return message_store.append_assistant_placeholder("gpt-4o")


def make_consumer(store, stream, message, handle=None):
    return StreamConsumer(store, stream, message.id, handle or CancellationHandle(message.id))


class TestStreamConsumer:
    """Tests for reading a stream into a message."""

    @pytest.mark.asyncio
    async def test_tokens_then_done(self, message_store, placeholder, scripted_stream):
        stream = scripted_stream([
            {"type": "token", "content": "Hi"},
            TokenChunk(content=" there"),
            {"type": "done", "usage": {"prompt": 5, "completion": 2, "total": 7}},
        ])
        consumer = make_consumer(message_store, stream, placeholder)

        result = await consumer.consume()

        message = message_store.get(placeholder.id)
        assert result.outcome == StreamOutcome.COMPLETED
        assert result.chunk_count == 3
        assert result.error is None
        assert message.content == "Hi there"
        assert message.status == MessageStatus.COMPLETED
        assert message.annotations.usage == TokenUsage(prompt=5, completion=2, total=7)
        assert consumer.metrics.total_tokens == 7
        assert consumer.state == ConsumerState.TERMINATED
        assert stream.close_count == 1

    @pytest.mark.asyncio
    async def test_nothing_is_read_after_terminal_chunk(self, message_store, placeholder, scripted_stream):
        stream = scripted_stream([
            TokenChunk(content="A"),
            ErrorChunk(message="boom"),
            DoneChunk(),
            TokenChunk(content="B"),
        ])

        result = await make_consumer(message_store, stream, placeholder).consume()

        message = message_store.get(placeholder.id)
        assert stream.reads == 2
        assert result.outcome == StreamOutcome.ERROR
        assert str(result.error) == "boom"
        assert message.content == "A"
        assert message.status == MessageStatus.ERROR

    @pytest.mark.asyncio
    async def test_zero_chunks_completes_empty(self, message_store, placeholder, scripted_stream):
        stream = scripted_stream([])

        result = await make_consumer(message_store, stream, placeholder).consume()

        message = message_store.get(placeholder.id)
        assert result.outcome == StreamOutcome.COMPLETED
        assert message.content == ""
        assert message.status == MessageStatus.COMPLETED
        assert stream.close_count == 1

    @pytest.mark.asyncio
    async def test_malformed_chunk_fails_stream(self, message_store, placeholder, scripted_stream):
        stream = scripted_stream([TokenChunk(content="A"), {"type": "bogus"}, DoneChunk()])

        result = await make_consumer(message_store, stream, placeholder).consume()

        assert result.outcome == StreamOutcome.ERROR
        assert isinstance(result.error, MalformedChunkError)
        assert message_store.get(placeholder.id).status == MessageStatus.ERROR
        assert message_store.get(placeholder.id).content == "A"
        assert stream.close_count == 1

    @pytest.mark.asyncio
    async def test_read_exception_fails_stream(self, message_store, placeholder, scripted_stream):
        cause = ConnectionError("connection reset")
        stream = scripted_stream([TokenChunk(content="Par"), cause])

        result = await make_consumer(message_store, stream, placeholder).consume()

        assert result.outcome == StreamOutcome.ERROR
        assert isinstance(result.error, StreamFailure)
        assert str(result.error) == "connection reset"
        assert result.error.__cause__ is cause
        assert message_store.get(placeholder.id).status == MessageStatus.ERROR
        assert stream.close_count == 1

    @pytest.mark.asyncio
    async def test_not_iterable_stream_fails(self, message_store, placeholder):
        result = await make_consumer(message_store, 42, placeholder).consume()

        assert result.outcome == StreamOutcome.ERROR
        assert message_store.get(placeholder.id).status == MessageStatus.ERROR

    @pytest.mark.asyncio
    async def test_cancelled_before_start_reads_nothing(self, message_store, placeholder, scripted_stream):
        stream = scripted_stream([TokenChunk(content="A"), DoneChunk()])
        handle = CancellationHandle(placeholder.id)
        handle.cancel()

        result = await make_consumer(message_store, stream, placeholder, handle).consume()

        assert result.outcome == StreamOutcome.STOPPED
        assert stream.reads == 0
        assert stream.close_count == 1
        assert message_store.get(placeholder.id).status == MessageStatus.STOPPED

    @pytest.mark.asyncio
    async def test_cancel_during_pending_read(self, message_store, placeholder, scripted_stream, wait_until):
        stream = scripted_stream([TokenChunk(content="Par")], closed=False)
        handle = CancellationHandle(placeholder.id)
        task = asyncio.create_task(make_consumer(message_store, stream, placeholder, handle).consume())

        await wait_until(lambda: message_store.get(placeholder.id).content == "Par")
        handle.cancel()
        result = await asyncio.wait_for(task, timeout=1)

        message = message_store.get(placeholder.id)
        assert result.outcome == StreamOutcome.STOPPED
        assert result.error is None
        assert message.content == "Par"
        assert message.status == MessageStatus.STOPPED
        assert stream.close_count == 1

    @pytest.mark.asyncio
    async def test_read_error_after_cancel_counts_as_stopped(self, message_store, placeholder, scripted_stream):
        handle = CancellationHandle(placeholder.id)

        async def aborted_stream():
            yield TokenChunk(content="Par")
            handle.cancel()
            raise ConnectionError("aborted")

        result = await make_consumer(message_store, aborted_stream(), placeholder, handle).consume()

        assert result.outcome == StreamOutcome.STOPPED
        assert message_store.get(placeholder.id).status == MessageStatus.STOPPED

    @pytest.mark.asyncio
    async def test_task_cancellation_propagates(self, message_store, placeholder, scripted_stream, wait_until):
        stream = scripted_stream([], closed=False)
        consumer = make_consumer(message_store, stream, placeholder)
        task = asyncio.create_task(consumer.consume())

        await wait_until(lambda: consumer.state == ConsumerState.READING)
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert message_store.get(placeholder.id).status == MessageStatus.STOPPED
        assert stream.close_count == 1

    @pytest.mark.asyncio
    async def test_close_failure_is_not_raised(self, message_store, placeholder, scripted_stream):
        stream = scripted_stream([DoneChunk()])

        async def failing_close():
            raise RuntimeError("socket already closed")

        stream.aclose = failing_close

        result = await make_consumer(message_store, stream, placeholder).consume()

        assert result.outcome == StreamOutcome.COMPLETED

    @pytest.mark.asyncio
    async def test_message_removed_while_streaming(self, message_store, placeholder, scripted_stream):
        stream = scripted_stream([TokenChunk(content="A"), DoneChunk()])
        message_store.clear()

        result = await make_consumer(message_store, stream, placeholder).consume()

        assert result.outcome == StreamOutcome.COMPLETED
        assert message_store.get_messages() == []

    @pytest.mark.asyncio
    async def test_consume_only_once(self, message_store, placeholder, scripted_stream):
        consumer = make_consumer(message_store, scripted_stream([DoneChunk()]), placeholder)
        await consumer.consume()

        with pytest.raises(RuntimeError):
            await consumer.consume()
