#!/usr/bin/env python3
"""Console entry point for the streaming chat client."""

import argparse
import asyncio
import os
import signal
import sys
from typing import Dict, Optional

from chatstream.chat.message_store import MessageStore
from chatstream.chat.models import ChatMessage, MessageRole, MessageStatus
from chatstream.chat.orchestrator import ChatOrchestrator
from chatstream.chat.transport import BaseTransport, DemoTransport, LLMTransport
from chatstream.config.settings import settings
from chatstream.exceptions import ChatStreamError, ConfigurationError
from chatstream.utils.logger import logger, setup_logging

HELP_TEXT = "Commands: /regen, /clear, /model <id>, /quit. Ctrl+C stops the current answer."


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Streaming chat client")
    parser.add_argument("--demo", action="store_true", help="Use the offline demo transport")
    parser.add_argument("--model", default=settings.MODEL_NAME, help="Model id sent with each message")
    parser.add_argument(
        "--source",
        action="append",
        default=[],
        dest="sources",
        help="Data source id to search (repeatable)",
    )
    parser.add_argument("--system-prompt", default=None, help="System prompt for the LLM transport")
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "WARNING"))
    parser.add_argument("--log-file", default=os.getenv("LOG_FILE"))
    parser.add_argument(
        "--log-format",
        default=os.getenv("LOG_FORMAT", "text"),
        choices=["text", "json", "both"],
    )
    return parser.parse_args(argv)


class ConsoleRenderer:
    """Prints assistant content to stdout as it streams in."""

    def __init__(self, store: Optional[MessageStore] = None):
        """
        Args:
            store: Store being rendered; progress for messages it no longer
                holds (cleared or regenerated mid-stream) is dropped
        """
        self.store = store
        self._printed: Dict[str, int] = {}

    def __call__(self, message: ChatMessage) -> None:
        self._forget_removed()
        if message.role != MessageRole.ASSISTANT:
            return
        printed = self._printed.get(message.id, 0)
        if len(message.content) > printed:
            sys.stdout.write(message.content[printed:])
            sys.stdout.flush()
            self._printed[message.id] = len(message.content)
        if not message.is_streaming:
            self._finish(message)

    def _forget_removed(self) -> None:
        if self.store is None:
            return
        for message_id in [m for m in self._printed if self.store.get(m) is None]:
            del self._printed[message_id]

    def _finish(self, message: ChatMessage) -> None:
        self._printed.pop(message.id, None)
        print()
        if message.status == MessageStatus.STOPPED:
            print("[stopped]")
        elif message.status == MessageStatus.ERROR:
            print("[error]")
        annotations = message.annotations
        if annotations is not None:
            for citation in annotations.citations:
                page = f" p.{citation.page}" if citation.page is not None else ""
                print(f"  [{citation.id}] {citation.document}{page} ({citation.relevance_score:.0f}%)")


def build_transport(args: argparse.Namespace) -> BaseTransport:
    if args.demo:
        logger.info("Using demo transport")
        return DemoTransport()

    from chatstream.clients.llm_client import create_llm_client

    logger.info("Using LLM transport")
    return LLMTransport(create_llm_client(), system_prompt=args.system_prompt)


async def run_turn(orchestrator: ChatOrchestrator, coro) -> None:
    """Run one streaming operation with Ctrl+C wired to stop_streaming."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.stop_streaming)
        installed = True
    except NotImplementedError:
        installed = False

    try:
        await coro
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)

    if orchestrator.error is not None:
        print(f"Error: {orchestrator.error}")


async def run(args: argparse.Namespace) -> None:
    transport = build_transport(args)
    store = MessageStore()
    store.subscribe(ConsoleRenderer(store))
    orchestrator = ChatOrchestrator(
        transport,
        model_id=args.model,
        data_sources=args.sources,
        store=store,
    )

    print(HELP_TEXT)
    while True:
        try:
            line = await asyncio.to_thread(input, "> ")
        except EOFError:
            break

        text = line.strip()
        if not text:
            continue
        if text == "/quit":
            break
        if text == "/clear":
            orchestrator.clear_messages()
            print("Conversation cleared.")
            continue
        if text.startswith("/model"):
            parts = text.split(maxsplit=1)
            if len(parts) == 2:
                orchestrator.select_model(parts[1])
            print(f"Model: {orchestrator.model_id}")
            continue
        if text == "/regen":
            assistant = next(
                (m for m in reversed(orchestrator.messages) if m.role == MessageRole.ASSISTANT),
                None,
            )
            if assistant is None:
                print("Nothing to regenerate.")
                continue
            await run_turn(orchestrator, orchestrator.regenerate_response(assistant.id))
            continue

        await run_turn(orchestrator, orchestrator.send_message(text))


def main(argv=None) -> None:
    """Parse arguments, configure logging and start the console loop."""
    args = parse_args(argv)
    setup_logging(
        level=args.log_level,
        log_file=args.log_file,
        log_format=args.log_format,
    )

    try:
        asyncio.run(run(args))
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        print(f"Configuration error: {e}\nRun with --demo to try the client offline.")
        sys.exit(1)
    except ChatStreamError as e:
        logger.exception("Chat client failed")
        print(f"Error: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        print()


if __name__ == "__main__":
    main()
