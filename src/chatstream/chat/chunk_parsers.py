"""Chunk parsers translating model output into stream chunks."""

import itertools
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from chatstream.chat.chunks import (
    DoneChunk,
    ReasoningChunk,
    StreamChunk,
    TokenChunk,
    ToolCallChunk,
)
from chatstream.chat.models import TokenUsage, ToolCall, ToolCallState
from chatstream.utils.logger import logger


@dataclass
class _PendingToolCall:
    name: str = ""
    args: str = ""
    id: Optional[str] = None


class LLMChunkParser:
    """
    Stateful parser for LangChain ``AIMessageChunk`` streams.

    Text content becomes ``token`` chunks. Reasoning text is accumulated and
    re-emitted whole as a ``reasoning`` chunk each time it grows. Tool call
    fragments are merged by index and emitted when the stream finishes,
    followed by a ``done`` chunk carrying token usage.
    """

    def __init__(self):
        self.reasoning = ""
        self.usage: Optional[TokenUsage] = None
        self._tool_calls: Dict[int, _PendingToolCall] = {}
        self._sequence = itertools.count()

    def _next_sequence(self) -> int:
        return next(self._sequence)

    def parse(self, chunk: Any) -> List[StreamChunk]:
        """
        Parse one model chunk.

        Args:
            chunk: LangChain message chunk with content and optional metadata

        Returns:
            Stream chunks to forward, possibly empty
        """
        updates: List[StreamChunk] = []

        content = getattr(chunk, "content", None)
        if isinstance(content, str):
            if content:
                updates.append(TokenChunk(content=content, sequence=self._next_sequence()))
        elif isinstance(content, list):
            updates.extend(self._parse_content_blocks(content))

        additional_kwargs = getattr(chunk, "additional_kwargs", None) or {}
        reasoning = additional_kwargs.get("reasoning_content")
        if reasoning:
            updates.append(self._add_reasoning(reasoning))

        for tool_chunk in getattr(chunk, "tool_call_chunks", None) or []:
            self._merge_tool_call(tool_chunk)

        usage_metadata = getattr(chunk, "usage_metadata", None)
        if usage_metadata:
            self.usage = TokenUsage(
                prompt=usage_metadata.get("input_tokens", 0),
                completion=usage_metadata.get("output_tokens", 0),
                total=usage_metadata.get("total_tokens", 0),
            )

        return updates

    def finish(self) -> List[StreamChunk]:
        """
        Flush buffered tool calls and close the stream.

        Returns:
            Tool call chunks in index order followed by a ``done`` chunk
        """
        updates: List[StreamChunk] = []
        for index in sorted(self._tool_calls):
            pending = self._tool_calls[index]
            updates.append(
                ToolCallChunk(tool_call=self._build_tool_call(pending), sequence=self._next_sequence())
            )
        self._tool_calls.clear()
        updates.append(DoneChunk(usage=self.usage, sequence=self._next_sequence()))
        return updates

    def _parse_content_blocks(self, blocks: List[Any]) -> List[StreamChunk]:
        updates: List[StreamChunk] = []
        for block in blocks:
            if isinstance(block, str):
                if block:
                    updates.append(TokenChunk(content=block, sequence=self._next_sequence()))
                continue
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text" and block.get("text"):
                updates.append(TokenChunk(content=block["text"], sequence=self._next_sequence()))
            elif block_type in ("reasoning", "thinking"):
                text = block.get("reasoning") or block.get("thinking") or block.get("text")
                if text:
                    updates.append(self._add_reasoning(text))
        return updates

    def _add_reasoning(self, text: str) -> ReasoningChunk:
        self.reasoning += text
        return ReasoningChunk(text=self.reasoning, sequence=self._next_sequence())

    def _merge_tool_call(self, tool_chunk: Dict[str, Any]) -> None:
        index = tool_chunk.get("index")
        if index is None:
            index = len(self._tool_calls)
        pending = self._tool_calls.setdefault(index, _PendingToolCall())
        if tool_chunk.get("name"):
            pending.name += tool_chunk["name"]
        if tool_chunk.get("args"):
            pending.args += tool_chunk["args"]
        if tool_chunk.get("id"):
            pending.id = tool_chunk["id"]

    @staticmethod
    def _build_tool_call(pending: _PendingToolCall) -> ToolCall:
        if not pending.args:
            return ToolCall(name=pending.name, arguments={})
        try:
            arguments = json.loads(pending.args)
        except json.JSONDecodeError as e:
            logger.warning(f"Tool call {pending.name} has invalid JSON arguments: {e}")
            return ToolCall(
                name=pending.name,
                arguments={"raw": pending.args},
                state=ToolCallState.ERROR,
                error=f"Invalid arguments: {e}",
            )
        if not isinstance(arguments, dict):
            arguments = {"value": arguments}
        return ToolCall(name=pending.name, arguments=arguments)
