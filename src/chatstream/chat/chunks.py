"""
Stream chunk protocol.

A response stream is a finite, ordered sequence of chunks terminated by exactly
one ``error`` or ``done`` chunk. Chunks are applied in delivery order; the
per-stream ``sequence`` number is diagnostic only and never used to reorder.

Wire mappings use the field names of the answering service's contract::

    {"type": "token", "content": "Hi", "sequence": 0}
    {"type": "citation", "citation": {"id": "c1", "document": "faq.pdf", ...}, "sequence": 1}
    {"type": "reasoning", "reasoning": "...", "sequence": 2}
    {"type": "tool_call", "toolCall": {"name": "search", "arguments": {}, "state": "pending"}, "sequence": 3}
    {"type": "error", "error": "rate limited", "sequence": 4}
    {"type": "done", "sequence": 5}
"""

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Union

from chatstream.chat.models import Citation, TokenUsage, ToolCall, ToolCallState
from chatstream.exceptions import MalformedChunkError


class ChunkType(str, Enum):
    """Chunk type discriminant."""
    TOKEN = "token"
    CITATION = "citation"
    REASONING = "reasoning"
    TOOL_CALL = "tool_call"
    ERROR = "error"
    DONE = "done"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class TokenChunk:
    content: str
    sequence: int = 0
    type: ClassVar[ChunkType] = ChunkType.TOKEN


@dataclass(frozen=True)
class CitationChunk:
    citation: Citation
    sequence: int = 0
    type: ClassVar[ChunkType] = ChunkType.CITATION


@dataclass(frozen=True)
class ReasoningChunk:
    text: str
    sequence: int = 0
    type: ClassVar[ChunkType] = ChunkType.REASONING


@dataclass(frozen=True)
class ToolCallChunk:
    tool_call: ToolCall
    sequence: int = 0
    type: ClassVar[ChunkType] = ChunkType.TOOL_CALL


@dataclass(frozen=True)
class ErrorChunk:
    message: str
    sequence: int = 0
    type: ClassVar[ChunkType] = ChunkType.ERROR


@dataclass(frozen=True)
class DoneChunk:
    usage: Optional[TokenUsage] = None
    sequence: int = 0
    type: ClassVar[ChunkType] = ChunkType.DONE


StreamChunk = Union[TokenChunk, CitationChunk, ReasoningChunk, ToolCallChunk, ErrorChunk, DoneChunk]

CHUNK_CLASSES = (TokenChunk, CitationChunk, ReasoningChunk, ToolCallChunk, ErrorChunk, DoneChunk)


def is_terminal(chunk: StreamChunk) -> bool:
    """Return True for chunks that end a stream (``error`` and ``done``)."""
    return chunk.type in (ChunkType.ERROR, ChunkType.DONE)


def _require(raw: Mapping[str, Any], key: str, expected: type) -> Any:
    if key not in raw:
        raise MalformedChunkError(f"{raw.get('type')} chunk is missing '{key}'")
    value = raw[key]
    if not isinstance(value, expected):
        raise MalformedChunkError(
            f"{raw.get('type')} chunk field '{key}' must be {expected.__name__}, "
            f"got {type(value).__name__}"
        )
    return value


def _parse_citation(raw: Mapping[str, Any]) -> Citation:
    try:
        return Citation(
            id=str(raw["id"]),
            document=str(raw["document"]),
            chunk_index=int(raw.get("chunkIndex", 0)),
            relevance_score=float(raw.get("relevanceScore", 0.0)),
            page=int(raw["page"]) if raw.get("page") is not None else None,
            url=raw.get("url"),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedChunkError(f"Invalid citation: {e}") from e


def _parse_tool_call(raw: Mapping[str, Any]) -> ToolCall:
    try:
        return ToolCall(
            name=str(raw["name"]),
            arguments=dict(raw.get("arguments") or {}),
            state=ToolCallState(raw.get("state", ToolCallState.PENDING.value)),
            result=raw.get("result"),
            error=raw.get("error"),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedChunkError(f"Invalid tool call: {e}") from e


def _parse_usage(raw: Optional[Mapping[str, Any]]) -> Optional[TokenUsage]:
    if raw is None:
        return None
    if not isinstance(raw, Mapping):
        raise MalformedChunkError("done chunk field 'usage' must be a mapping")
    try:
        return TokenUsage(
            prompt=int(raw.get("prompt", 0)),
            completion=int(raw.get("completion", 0)),
            total=int(raw.get("total", 0)),
        )
    except (TypeError, ValueError) as e:
        raise MalformedChunkError(f"Invalid usage: {e}") from e


def parse_chunk(raw: Union[StreamChunk, Mapping[str, Any]]) -> StreamChunk:
    """
    Decode a wire mapping into a StreamChunk.

    Chunks that are already decoded are returned unchanged.

    Args:
        raw: A StreamChunk or a mapping with a ``type`` discriminant

    Returns:
        The decoded chunk

    Raises:
        MalformedChunkError: If the type is unknown or a field is missing/invalid
    """
    if isinstance(raw, CHUNK_CLASSES):
        return raw
    if not isinstance(raw, Mapping):
        raise MalformedChunkError(f"Expected a chunk mapping, got {type(raw).__name__}")

    try:
        chunk_type = ChunkType(raw.get("type"))
    except ValueError:
        raise MalformedChunkError(f"Unknown chunk type: {raw.get('type')!r}") from None

    sequence = raw.get("sequence", 0)
    if not isinstance(sequence, int):
        raise MalformedChunkError(f"Chunk sequence must be int, got {type(sequence).__name__}")

    if chunk_type == ChunkType.TOKEN:
        return TokenChunk(content=_require(raw, "content", str), sequence=sequence)
    elif chunk_type == ChunkType.CITATION:
        return CitationChunk(
            citation=_parse_citation(_require(raw, "citation", Mapping)), sequence=sequence
        )
    elif chunk_type == ChunkType.REASONING:
        return ReasoningChunk(text=_require(raw, "reasoning", str), sequence=sequence)
    elif chunk_type == ChunkType.TOOL_CALL:
        return ToolCallChunk(
            tool_call=_parse_tool_call(_require(raw, "toolCall", Mapping)), sequence=sequence
        )
    elif chunk_type == ChunkType.ERROR:
        # The remote side may omit the message
        message = raw.get("error") or "Unknown error"
        return ErrorChunk(message=str(message), sequence=sequence)
    else:
        return DoneChunk(usage=_parse_usage(raw.get("usage")), sequence=sequence)


def chunk_to_dict(chunk: StreamChunk) -> Dict[str, Any]:
    """Encode a chunk into its wire mapping."""
    if not isinstance(chunk, CHUNK_CLASSES):
        raise TypeError(f"Not a stream chunk: {chunk!r}")

    data: Dict[str, Any] = {"type": chunk.type.value, "sequence": chunk.sequence}

    if isinstance(chunk, TokenChunk):
        data["content"] = chunk.content
    elif isinstance(chunk, CitationChunk):
        citation = chunk.citation
        data["citation"] = {
            "id": citation.id,
            "document": citation.document,
            "chunkIndex": citation.chunk_index,
            "relevanceScore": citation.relevance_score,
        }
        if citation.page is not None:
            data["citation"]["page"] = citation.page
        if citation.url is not None:
            data["citation"]["url"] = citation.url
    elif isinstance(chunk, ReasoningChunk):
        data["reasoning"] = chunk.text
    elif isinstance(chunk, ToolCallChunk):
        tool_call = chunk.tool_call
        data["toolCall"] = {
            "name": tool_call.name,
            "arguments": dict(tool_call.arguments),
            "state": tool_call.state.value,
        }
        if tool_call.result is not None:
            data["toolCall"]["result"] = tool_call.result
        if tool_call.error is not None:
            data["toolCall"]["error"] = tool_call.error
    elif isinstance(chunk, ErrorChunk):
        data["error"] = chunk.message
    elif isinstance(chunk, DoneChunk):
        if chunk.usage is not None:
            data["usage"] = {
                "prompt": chunk.usage.prompt,
                "completion": chunk.usage.completion,
                "total": chunk.usage.total,
            }

    return data
