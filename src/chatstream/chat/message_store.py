"""Conversation log and the chunk reducer that mutates it."""

from dataclasses import replace
from typing import Callable, List, Optional, Tuple

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from chatstream.chat.chunks import (
    CitationChunk,
    DoneChunk,
    ErrorChunk,
    ReasoningChunk,
    StreamChunk,
    TokenChunk,
    ToolCallChunk,
)
from chatstream.chat.models import (
    ChatMessage,
    MessageAnnotations,
    MessageRole,
    MessageStatus,
    utc_now_iso,
)
from chatstream.utils.logger import logger

MessageListener = Callable[[ChatMessage], None]


def _annotations(message: ChatMessage) -> MessageAnnotations:
    # Placeholders always carry annotations; this covers turns built elsewhere
    return message.annotations or MessageAnnotations(timestamp=utc_now_iso(), model="")


def apply_chunk_to_message(message: ChatMessage, chunk: StreamChunk) -> ChatMessage:
    """
    Return the message that results from applying one chunk.

    Pure: the input message is never modified. A message that is no longer
    streaming is returned unchanged.

    Args:
        message: Current snapshot of the target message
        chunk: Chunk to apply

    Returns:
        New message snapshot (or the same one when the chunk has no effect)
    """
    if message.status != MessageStatus.STREAMING:
        return message

    if isinstance(chunk, TokenChunk):
        return replace(message, content=message.content + chunk.content)
    elif isinstance(chunk, CitationChunk):
        annotations = _annotations(message)
        return replace(
            message,
            annotations=replace(annotations, citations=annotations.citations + (chunk.citation,)),
        )
    elif isinstance(chunk, ReasoningChunk):
        return replace(message, annotations=replace(_annotations(message), reasoning=chunk.text))
    elif isinstance(chunk, ToolCallChunk):
        return replace(message, tool_calls=message.tool_calls + (chunk.tool_call,))
    elif isinstance(chunk, ErrorChunk):
        return replace(message, status=MessageStatus.ERROR)
    elif isinstance(chunk, DoneChunk):
        if chunk.usage is not None:
            message = replace(message, annotations=replace(_annotations(message), usage=chunk.usage))
        return replace(message, status=MessageStatus.COMPLETED)

    raise TypeError(f"Unhandled stream chunk: {chunk!r}")


class MessageStore:
    """
    In-memory, ordered conversation log.

    Messages are immutable snapshots; every update swaps the snapshot at its
    position so a chunk's effects become visible all at once.
    """

    def __init__(self, messages: Optional[List[ChatMessage]] = None):
        """
        Initialize the message store.

        Args:
            messages: Optional initial messages, in conversation order
        """
        self._messages: List[ChatMessage] = list(messages or [])
        self._listeners: List[MessageListener] = []
        logger.debug(f"MessageStore initialized with {len(self._messages)} messages")

    def __len__(self) -> int:
        return len(self._messages)

    def get_messages(self) -> List[ChatMessage]:
        """
        Get all stored messages.

        Returns:
            Copy of the messages in conversation order
        """
        return self._messages.copy()

    def get(self, message_id: str) -> Optional[ChatMessage]:
        index = self.index_of(message_id)
        return self._messages[index] if index is not None else None

    def index_of(self, message_id: str) -> Optional[int]:
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                return index
        return None

    def subscribe(self, listener: MessageListener) -> Callable[[], None]:
        """
        Register a listener called with every added or updated message.

        Returns:
            Callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, message: ChatMessage) -> None:
        for listener in list(self._listeners):
            listener(message)

    def _append(self, message: ChatMessage) -> ChatMessage:
        self._messages.append(message)
        self._notify(message)
        return message

    def append_user_turn(self, content: str) -> ChatMessage:
        """Append a completed user message."""
        logger.debug(f"Appending user message (length: {len(content)} chars), current count: {len(self._messages)}")
        return self._append(
            ChatMessage(role=MessageRole.USER, content=content, status=MessageStatus.COMPLETED)
        )

    def append_assistant_placeholder(self, model_id: str) -> ChatMessage:
        """Append an empty, streaming assistant message annotated with the model."""
        timestamp = utc_now_iso()
        message = ChatMessage(
            role=MessageRole.ASSISTANT,
            content="",
            status=MessageStatus.STREAMING,
            timestamp=timestamp,
            annotations=MessageAnnotations(timestamp=timestamp, model=model_id),
        )
        logger.debug(f"Appending assistant placeholder {message.id} for model {model_id}")
        return self._append(message)

    def append_exchange(self, content: str, model_id: str) -> Tuple[ChatMessage, ChatMessage]:
        """
        Append a user message and its assistant placeholder together.

        Returns:
            Tuple of (user message, assistant placeholder)
        """
        return self.append_user_turn(content), self.append_assistant_placeholder(model_id)

    def _replace_at(self, index: int, message: ChatMessage) -> ChatMessage:
        if message is not self._messages[index]:
            self._messages[index] = message
            self._notify(message)
        return message

    def apply_chunk(self, message_id: str, chunk: StreamChunk) -> Optional[ChatMessage]:
        """
        Apply a chunk to a message.

        Args:
            message_id: Target message id
            chunk: Chunk to apply

        Returns:
            The updated message, or None if the id is not in the log
        """
        index = self.index_of(message_id)
        if index is None:
            logger.debug(f"Dropping {chunk.type} chunk for unknown message {message_id}")
            return None
        return self._replace_at(index, apply_chunk_to_message(self._messages[index], chunk))

    def set_status(self, message_id: str, status: MessageStatus) -> Optional[ChatMessage]:
        """
        Finalize a streaming message.

        Only a message that is still streaming changes; the terminal status it
        reached first is kept.

        Returns:
            The message after the call, or None if the id is not in the log
        """
        index = self.index_of(message_id)
        if index is None:
            return None
        message = self._messages[index]
        if message.status != MessageStatus.STREAMING:
            return message
        logger.debug(f"Message {message_id} status: {message.status} -> {status}")
        return self._replace_at(index, replace(message, status=status))

    def streaming_messages(self) -> List[ChatMessage]:
        return [m for m in self._messages if m.status == MessageStatus.STREAMING]

    def truncate_after(self, message_id: str) -> int:
        """
        Remove every message after (not including) the given one.

        Returns:
            Number of removed messages (0 if the id is not in the log)
        """
        index = self.index_of(message_id)
        if index is None:
            return 0
        return self._truncate_at(index + 1)

    def truncate_from(self, message_id: str) -> int:
        """
        Remove the given message and everything after it.

        Returns:
            Number of removed messages (0 if the id is not in the log)
        """
        index = self.index_of(message_id)
        if index is None:
            return 0
        return self._truncate_at(index)

    def _truncate_at(self, index: int) -> int:
        removed = len(self._messages) - index
        del self._messages[index:]
        if removed:
            logger.debug(f"Truncated {removed} messages, keeping {len(self._messages)}")
        return removed

    def clear(self) -> None:
        """Clear all messages from the store."""
        message_count = len(self._messages)
        self._messages.clear()
        logger.info(f"Cleared {message_count} messages from store")

    def history_window(self, limit: Optional[int] = None) -> List[ChatMessage]:
        """
        Get the most recent messages, oldest first.

        Args:
            limit: Maximum number of messages; all messages if None or <= 0
        """
        if not limit or limit <= 0 or len(self._messages) <= limit:
            return self.get_messages()
        return self._messages[-limit:]

    @staticmethod
    def to_langchain_messages(messages: List[ChatMessage]) -> List[BaseMessage]:
        """
        Convert conversation messages to LangChain messages.

        Assistant messages without content (failed or stopped before the first
        token) are skipped.

        Args:
            messages: Conversation messages

        Returns:
            List of LangChain BaseMessage objects
        """
        converted: List[BaseMessage] = []
        for message in messages:
            if message.role == MessageRole.USER:
                converted.append(HumanMessage(content=message.content))
            elif message.role == MessageRole.ASSISTANT:
                if message.content:
                    converted.append(AIMessage(content=message.content))
            elif message.role == MessageRole.SYSTEM:
                converted.append(SystemMessage(content=message.content))
        return converted
