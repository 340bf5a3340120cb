"""Tests for the console entry point helpers."""

from dataclasses import replace

from chat import ConsoleRenderer, build_transport, parse_args
from chatstream.chat.chunks import TokenChunk
from chatstream.chat.message_store import MessageStore
from chatstream.chat.models import ChatMessage, Citation, MessageAnnotations, MessageRole, MessageStatus
from chatstream.chat.transport import DemoTransport


class TestParseArgs:
    def test_defaults(self):
        args = parse_args([])
        assert args.demo is False
        assert args.sources == []

    def test_repeatable_sources(self):
        args = parse_args(["--demo", "--model", "gpt-4o-mini", "--source", "a", "--source", "b"])
        assert args.demo is True
        assert args.model == "gpt-4o-mini"
        assert args.sources == ["a", "b"]

    def test_demo_transport(self):
        assert isinstance(build_transport(parse_args(["--demo"])), DemoTransport)


class TestConsoleRenderer:
    def test_prints_only_new_content(self, capsys):
        renderer = ConsoleRenderer()
        message = ChatMessage(role=MessageRole.ASSISTANT, status=MessageStatus.STREAMING)

        renderer(message)
        message = replace(message, content="Hi")
        renderer(message)
        message = replace(message, content="Hi there")
        renderer(message)

        assert capsys.readouterr().out == "Hi there"

    def test_finished_message_prints_status_and_citations(self, capsys):
        renderer = ConsoleRenderer()
        annotations = MessageAnnotations(
            timestamp="2024-01-01T00:00:00+00:00",
            model="gpt-4o",
            citations=(Citation(id="cit-1", document="Employee_Handbook.pdf", page=15, relevance_score=92),),
        )
        message = ChatMessage(
            role=MessageRole.ASSISTANT,
            content="Par",
            status=MessageStatus.STOPPED,
            annotations=annotations,
        )

        renderer(message)

        out = capsys.readouterr().out
        assert out.startswith("Par\n[stopped]\n")
        assert "[cit-1] Employee_Handbook.pdf p.15 (92%)" in out

    def test_user_messages_are_not_printed(self, capsys):
        ConsoleRenderer()(ChatMessage(role=MessageRole.USER, content="Hello"))
        assert capsys.readouterr().out == ""

    def test_forgets_messages_removed_from_store(self, capsys):
        store = MessageStore()
        renderer = ConsoleRenderer(store)
        store.subscribe(renderer)
        _, assistant = store.append_exchange("Hi", "gpt-4o")
        store.apply_chunk(assistant.id, TokenChunk(content="Hel"))
        assert assistant.id in renderer._printed

        store.clear()
        store.append_exchange("Again", "gpt-4o")

        assert assistant.id not in renderer._printed
        assert capsys.readouterr().out == "Hel"
