"""Data models for the chat client."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, List, Mapping, Optional, Tuple


class MessageRole(str, Enum):
    """Role of a conversation turn."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"

    def __str__(self) -> str:
        return self.value


class MessageStatus(str, Enum):
    """
    Lifecycle status of a conversation turn.

    An assistant turn is created STREAMING and leaves it exactly once, for
    COMPLETED, ERROR or STOPPED.
    """
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERROR = "error"
    STOPPED = "stopped"

    def __str__(self) -> str:
        return self.value


class ToolCallState(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ERROR = "error"

    def __str__(self) -> str:
        return self.value


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_message_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class Citation:
    """
    A source passage backing part of an answer.

    Attributes:
        id: Citation identifier
        document: Document filename (e.g., "Employee_Handbook.pdf")
        chunk_index: Chunk index in the vector store
        relevance_score: Relevance score from 0 to 100
        page: Page number for paged documents
        url: Optional link to a document viewer
    """
    id: str
    document: str
    chunk_index: int = 0
    relevance_score: float = 0.0
    page: Optional[int] = None
    url: Optional[str] = None


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation reported by the answering service."""
    name: str
    arguments: Mapping[str, Any] = field(default_factory=dict)
    state: ToolCallState = ToolCallState.PENDING
    result: Any = None
    error: Optional[str] = None


@dataclass(frozen=True)
class TokenUsage:
    prompt: int = 0
    completion: int = 0
    total: int = 0


@dataclass(frozen=True)
class MessageAnnotations:
    """
    Metadata accumulated on a turn while it streams.

    Attributes:
        timestamp: When the annotations were created
        model: Model identifier used for generation
        citations: Ordered, append-only citations
        reasoning: Latest reasoning text, if any
        usage: Token usage, if the stream reported it
    """
    timestamp: str
    model: str
    citations: Tuple[Citation, ...] = ()
    reasoning: Optional[str] = None
    usage: Optional[TokenUsage] = None


@dataclass(frozen=True)
class ChatMessage:
    """
    One turn of the conversation log.

    Instances are immutable snapshots; updates produce a new instance with the
    same id.
    """
    role: MessageRole
    content: str = ""
    status: MessageStatus = MessageStatus.COMPLETED
    id: str = field(default_factory=new_message_id)
    timestamp: str = field(default_factory=utc_now_iso)
    annotations: Optional[MessageAnnotations] = None
    tool_calls: Tuple[ToolCall, ...] = ()

    @property
    def is_streaming(self) -> bool:
        return self.status == MessageStatus.STREAMING


@dataclass(frozen=True)
class AIModel:
    """A model the user can pick."""
    id: str
    name: str
    provider: str
    provider_slug: str
    context_window: Optional[int] = None
    max_output_tokens: Optional[int] = None


@dataclass(frozen=True)
class DataSourceFile:
    """An uploaded document the answer may be grounded on."""
    id: str
    filename: str
    file_type: str
    size: int
    uploaded_at: str
    chunk_count: Optional[int] = None


@dataclass
class SendMessagePayload:
    """
    Request handed to the transport.

    Attributes:
        message: User message text
        data_sources: Selected data source ids
        model: Selected model id
        conversation_history: Turns preceding this request, captured at call time
        conversation_id: Conversation id, None for a new conversation
    """
    message: str
    data_sources: List[str]
    model: str
    conversation_history: List[ChatMessage]
    conversation_id: Optional[str] = None


@dataclass
class SendMessageResponse:
    """
    Response returned by the transport once a stream has started.

    ``stream`` yields StreamChunk objects or their wire mappings.
    """
    message_id: str
    conversation_id: str
    stream: AsyncIterator[Any]
