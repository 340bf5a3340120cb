"""Unit tests for LLMChunkParser."""

from chatstream.chat.chunk_parsers import LLMChunkParser
from chatstream.chat.chunks import DoneChunk, ReasoningChunk, TokenChunk, ToolCallChunk
from chatstream.chat.models import TokenUsage, ToolCallState


class TestLLMChunkParser:
    """Tests for translating model chunks into stream chunks."""

    def test_text_content(self, model_chunk):
        parser = LLMChunkParser()
        updates = parser.parse(model_chunk("Hello")) + parser.parse(model_chunk(" world"))

        assert [u.content for u in updates] == ["Hello", " world"]
        assert [u.sequence for u in updates] == [0, 1]

    def test_empty_content_yields_nothing(self, model_chunk):
        assert LLMChunkParser().parse(model_chunk("")) == []

    def test_content_blocks(self, model_chunk):
        parser = LLMChunkParser()
        updates = parser.parse(model_chunk([
            {"type": "reasoning", "reasoning": "Check the handbook. "},
            {"type": "text", "text": "Answer"},
            {"type": "image_url", "image_url": "ignored"},
        ]))

        assert isinstance(updates[0], ReasoningChunk)
        assert updates[0].text == "Check the handbook. "
        assert updates[1] == TokenChunk(content="Answer", sequence=1)
        assert len(updates) == 2

    def test_reasoning_is_accumulated(self, model_chunk):
        parser = LLMChunkParser()
        parser.parse(model_chunk(additional_kwargs={"reasoning_content": "First. "}))
        updates = parser.parse(model_chunk(additional_kwargs={"reasoning_content": "Second."}))

        assert updates[0].text == "First. Second."
        assert parser.reasoning == "First. Second."

    def test_tool_call_fragments_are_merged(self, model_chunk):
        parser = LLMChunkParser()
        parser.parse(model_chunk(tool_call_chunks=[
            {"name": "search", "args": '{"query": ', "id": "call_1", "index": 0},
        ]))
        parser.parse(model_chunk(tool_call_chunks=[
            {"name": None, "args": '"leave policy"}', "id": None, "index": 0},
        ]))

        updates = parser.finish()

        assert isinstance(updates[0], ToolCallChunk)
        assert updates[0].tool_call.name == "search"
        assert updates[0].tool_call.arguments == {"query": "leave policy"}
        assert updates[0].tool_call.state == ToolCallState.PENDING
        assert isinstance(updates[-1], DoneChunk)

    def test_invalid_tool_arguments(self, model_chunk):
        parser = LLMChunkParser()
        parser.parse(model_chunk(tool_call_chunks=[{"name": "search", "args": "{broken", "index": 0}]))

        tool_call = parser.finish()[0].tool_call

        assert tool_call.state == ToolCallState.ERROR
        assert tool_call.arguments == {"raw": "{broken"}
        assert tool_call.error.startswith("Invalid arguments")

    def test_usage_is_reported_on_done(self, model_chunk):
        parser = LLMChunkParser()
        parser.parse(model_chunk("Hi"))
        parser.parse(model_chunk(usage_metadata={"input_tokens": 10, "output_tokens": 5, "total_tokens": 15}))

        updates = parser.finish()

        assert updates == [DoneChunk(usage=TokenUsage(prompt=10, completion=5, total=15), sequence=1)]

    def test_finish_without_usage(self):
        assert LLMChunkParser().finish() == [DoneChunk(sequence=0)]
