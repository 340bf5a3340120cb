"""Transport boundary: how the orchestrator reaches the answering service."""

import asyncio
import uuid
from abc import ABC, abstractmethod
from contextlib import aclosing
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol, Sequence

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from chatstream.chat.cancellation import CancellationHandle
from chatstream.chat.chunk_parsers import LLMChunkParser
from chatstream.chat.chunks import CitationChunk, DoneChunk, StreamChunk, TokenChunk
from chatstream.chat.message_store import MessageStore
from chatstream.chat.models import (
    Citation,
    SendMessagePayload,
    SendMessageResponse,
    new_message_id,
)
from chatstream.config.settings import settings
from chatstream.exceptions import TransportError
from chatstream.utils.logger import logger

ErrorCallback = Callable[[Exception, str], None]


class ChatTransport(Protocol):
    """
    Protocol for the external service the orchestrator talks to.
    """

    async def send_message(self, payload: SendMessagePayload) -> SendMessageResponse:
        """
        Send a message and start a response stream.

        Args:
            payload: Message, selected model and sources, prior history

        Returns:
            Response whose ``stream`` yields stream chunks
        """
        ...

    async def regenerate_response(self, message_id: str) -> SendMessageResponse:
        """Start a new response stream redoing the response with this ``message_id``."""
        ...

    def stop_streaming(self, handle: CancellationHandle) -> None:
        """Abort the in-flight request guarded by ``handle``. Fire-and-forget."""
        ...

    def on_error(self, error: Exception, context: str) -> None:
        """
        Observe an error state transition.

        Args:
            error: The error recorded by the orchestrator
            context: "sendMessage", "stream" or "regenerateResponse"
        """
        ...


class BaseTransport(ABC):
    """
    Base class for transports with common stop and error handling.
    """

    def __init__(self, error_callback: Optional[ErrorCallback] = None):
        """
        Args:
            error_callback: Optional extra observer for ``on_error``
        """
        self.error_callback = error_callback
        # Request behind each response, keyed by the response message id
        self._payloads: Dict[str, SendMessagePayload] = {}

    def _new_response(self, payload: SendMessagePayload, stream: AsyncIterator[Any]) -> SendMessageResponse:
        response = SendMessageResponse(
            message_id=new_message_id(),
            conversation_id=payload.conversation_id or str(uuid.uuid4()),
            stream=stream,
        )
        self._payloads[response.message_id] = payload
        return response

    async def send_message(self, payload: SendMessagePayload) -> SendMessageResponse:
        logger.info(
            f"{type(self).__name__} sending message (model={payload.model}, "
            f"sources={len(payload.data_sources)}, history={len(payload.conversation_history)})"
        )
        return await self._start(payload)

    async def regenerate_response(self, message_id: str) -> SendMessageResponse:
        """
        Re-run the request that produced an earlier response.

        Args:
            message_id: ``message_id`` of the response to redo

        Raises:
            TransportError: If no response with that id was started here
        """
        payload = self._payloads.get(message_id)
        if payload is None:
            raise TransportError(f"Cannot regenerate {message_id}: unknown response")
        logger.info(f"{type(self).__name__} regenerating response {message_id}")
        return await self._start(payload)

    def stop_streaming(self, handle: CancellationHandle) -> None:
        logger.info(f"{type(self).__name__} stopping stream for message {handle.message_id}")
        handle.cancel("stopped")

    def on_error(self, error: Exception, context: str) -> None:
        logger.error(f"[{type(self).__name__}] Error in {context}: {error}")
        if self.error_callback is not None:
            self.error_callback(error, context)

    @abstractmethod
    async def _start(self, payload: SendMessagePayload) -> SendMessageResponse:
        """
        Start a response stream for a payload.

        Args:
            payload: Request payload

        Returns:
            Response with a stream of chunks
        """
        pass


class LLMTransport(BaseTransport):
    """
    Transport answering through a LangChain chat model.

    The first model chunk is awaited before returning, so connection and
    HTTP errors surface as start failures rather than mid-stream failures.
    """

    def __init__(
        self,
        llm_client: BaseChatModel,
        system_prompt: Optional[str] = None,
        error_callback: Optional[ErrorCallback] = None,
    ):
        """
        Initialize the LLM transport.

        Args:
            llm_client: Configured chat model (e.g., AzureChatOpenAI)
            system_prompt: Optional system prompt prepended to every request
            error_callback: Optional extra observer for ``on_error``
        """
        super().__init__(error_callback)
        self.llm_client = llm_client
        self.system_prompt = system_prompt

    def build_messages(self, payload: SendMessagePayload) -> List[BaseMessage]:
        """Build the LangChain prompt: system prompt, prior history, new message."""
        messages: List[BaseMessage] = []
        if self.system_prompt:
            messages.append(SystemMessage(content=self.system_prompt))
        messages.extend(MessageStore.to_langchain_messages(payload.conversation_history))
        messages.append(HumanMessage(content=payload.message))
        return messages

    async def _start(self, payload: SendMessagePayload) -> SendMessageResponse:
        messages = self.build_messages(payload)
        logger.debug(f"Prompt contains {len(messages)} messages")

        model_stream = self.llm_client.astream(messages)
        try:
            first = await anext(model_stream, None)
        except BaseException:
            await model_stream.aclose()
            raise
        return self._new_response(payload, self._stream(first, model_stream))

    async def _stream(self, first: Any, model_stream: AsyncIterator[Any]) -> AsyncIterator[StreamChunk]:
        parser = LLMChunkParser()
        async with aclosing(model_stream):
            if first is not None:
                for chunk in parser.parse(first):
                    yield chunk
            async for model_chunk in model_stream:
                for chunk in parser.parse(model_chunk):
                    yield chunk
        for chunk in parser.finish():
            yield chunk


DEFAULT_DEMO_ANSWER = (
    "This is a simulated AI response demonstrating the chat client. "
    "Connect an LLM transport to get real answers grounded in your documents."
)

DEFAULT_DEMO_CITATIONS = (
    Citation(id="cit-1", document="Employee_Handbook.pdf", page=15, chunk_index=3, relevance_score=92),
    Citation(id="cit-2", document="Product_Documentation.docx", chunk_index=7, relevance_score=87),
)


class DemoTransport(BaseTransport):
    """
    Offline transport replaying a canned answer.

    Streams the answer in small token chunks with a delay between them,
    then the citations, then ``done``.
    """

    def __init__(
        self,
        answer: str = DEFAULT_DEMO_ANSWER,
        citations: Sequence[Citation] = DEFAULT_DEMO_CITATIONS,
        chunk_size: Optional[int] = None,
        delay_ms: Optional[int] = None,
        error_callback: Optional[ErrorCallback] = None,
    ):
        """
        Initialize the demo transport.

        Args:
            answer: Text to stream
            citations: Citations sent after the text
            chunk_size: Characters per token chunk (defaults to settings.DEMO_CHUNK_SIZE)
            delay_ms: Delay between token chunks (defaults to settings.DEMO_TOKEN_DELAY_MS)
            error_callback: Optional extra observer for ``on_error``
        """
        super().__init__(error_callback)
        self.answer = answer
        self.citations = tuple(citations)
        self.chunk_size = max(1, chunk_size or settings.DEMO_CHUNK_SIZE)
        self.delay_ms = settings.DEMO_TOKEN_DELAY_MS if delay_ms is None else delay_ms

    async def _start(self, payload: SendMessagePayload) -> SendMessageResponse:
        return self._new_response(payload, self._stream())

    async def _stream(self) -> AsyncIterator[StreamChunk]:
        sequence = 0
        for start in range(0, len(self.answer), self.chunk_size):
            yield TokenChunk(content=self.answer[start:start + self.chunk_size], sequence=sequence)
            sequence += 1
            await asyncio.sleep(self.delay_ms / 1000)

        for citation in self.citations:
            yield CitationChunk(citation=citation, sequence=sequence)
            sequence += 1

        yield DoneChunk(sequence=sequence)
