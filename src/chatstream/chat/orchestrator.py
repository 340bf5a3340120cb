"""Chat orchestrator: the operation surface driving one conversation."""

import asyncio
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from chatstream.chat.cancellation import CancellationHandle
from chatstream.chat.message_store import MessageStore
from chatstream.chat.models import (
    AIModel,
    ChatMessage,
    DataSourceFile,
    MessageRole,
    MessageStatus,
    SendMessagePayload,
    SendMessageResponse,
)
from chatstream.chat.stream_consumer import StreamConsumer, StreamOutcome
from chatstream.chat.transport import ChatTransport
from chatstream.config.settings import settings
from chatstream.exceptions import (
    ChatError,
    RegeneratePrecedingUserTurnMissing,
    RegenerateTargetNotFound,
    SendFailure,
    StreamInProgressError,
)
from chatstream.utils.logger import logger
from chatstream.utils.structured_logging import (
    CorrelationContext,
    log_chat_request,
    log_error,
    log_stream_event,
)

SEND_CONTEXT = "sendMessage"
STREAM_CONTEXT = "stream"
REGENERATE_CONTEXT = "regenerateResponse"


class OverlapPolicy(str, Enum):
    """
    What to do when a stream is requested while another is active.

    REJECT raises StreamInProgressError before touching any state. REPLACE
    stops the active stream first, then starts the new one.
    """
    REJECT = "reject"
    REPLACE = "replace"

    def __str__(self) -> str:
        return self.value


class ChatOrchestrator:
    """
    Owns the conversation log, the active stream and the error slot.

    Every failure except a caller starting overlapping streams is reported
    through the error slot and the transport's ``on_error`` hook instead of
    being raised. The failed message stays in the log with status ``error``.
    """

    def __init__(
        self,
        transport: ChatTransport,
        model_id: Optional[str] = None,
        data_sources: Optional[Iterable[str]] = None,
        store: Optional[MessageStore] = None,
        overlap_policy: OverlapPolicy | str | None = None,
        max_history_messages: Optional[int] = None,
        regenerate_via_transport: Optional[bool] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            transport: Transport used to start and stop streams
            model_id: Selected model id (defaults to settings.MODEL_NAME)
            data_sources: Selected data source ids
            store: Message store (a fresh one if None)
            overlap_policy: OverlapPolicy or its value (defaults to settings.OVERLAP_POLICY)
            max_history_messages: Cap on history sent per request (defaults to settings)
            regenerate_via_transport: Use transport.regenerate_response and keep the
                original user message (defaults to settings.REGENERATE_VIA_TRANSPORT)
        """
        self.transport = transport
        self.store = store if store is not None else MessageStore()
        self.model_id = model_id or settings.MODEL_NAME
        self.selected_model: Optional[AIModel] = None
        self.data_sources: List[str] = list(data_sources or [])
        self.overlap_policy = self._resolve_policy(overlap_policy or settings.OVERLAP_POLICY)
        self.max_history_messages = (
            settings.MAX_HISTORY_MESSAGES if max_history_messages is None else max_history_messages
        )
        self.regenerate_via_transport = (
            settings.REGENERATE_VIA_TRANSPORT
            if regenerate_via_transport is None
            else regenerate_via_transport
        )
        self.conversation_id: Optional[str] = None
        self.error: Optional[ChatError] = None
        self.is_loading = False
        self._active_handle: Optional[CancellationHandle] = None
        # Local assistant message id -> message_id of the transport response
        self._response_ids: Dict[str, str] = {}

    @staticmethod
    def _resolve_policy(policy: OverlapPolicy | str) -> OverlapPolicy:
        if isinstance(policy, OverlapPolicy):
            return policy
        try:
            return OverlapPolicy(policy)
        except ValueError:
            logger.warning(f"Invalid overlap policy '{policy}', defaulting to {OverlapPolicy.REJECT}")
            return OverlapPolicy.REJECT

    @property
    def messages(self) -> List[ChatMessage]:
        return self.store.get_messages()

    @property
    def is_streaming(self) -> bool:
        return self._active_handle is not None

    @property
    def active_handle(self) -> Optional[CancellationHandle]:
        return self._active_handle

    def select_model(self, model: AIModel | str) -> None:
        """
        Select the model used for later requests.

        Args:
            model: An AIModel from the catalogue, or a bare model id
        """
        if isinstance(model, AIModel):
            self.selected_model = model
            model_id = model.id
        else:
            self.selected_model = None
            model_id = model
        logger.info(f"Model changed: {self.model_id} -> {model_id}")
        self.model_id = model_id

    @staticmethod
    def _source_id(source: DataSourceFile | str) -> str:
        return source.id if isinstance(source, DataSourceFile) else source

    def set_data_sources(self, sources: Iterable[DataSourceFile | str]) -> None:
        self.data_sources = list(dict.fromkeys(self._source_id(s) for s in sources))
        logger.info(f"Data sources set: {self.data_sources}")

    def toggle_data_source(self, source: DataSourceFile | str) -> None:
        source_id = self._source_id(source)
        if source_id in self.data_sources:
            self.data_sources.remove(source_id)
        else:
            self.data_sources.append(source_id)
        logger.debug(f"Data sources toggled ({source_id}): {self.data_sources}")

    async def send_message(self, content: str) -> None:
        """
        Send a user message and stream the answer into a new assistant message.

        Resolves once the stream has ended (completed, failed or stopped).
        Blank content is not rejected here; callers validate input.

        Args:
            content: User message text

        Raises:
            StreamInProgressError: If a stream is active and the policy is REJECT
        """
        self._prepare_new_stream()
        self.clear_error()

        # History is captured before this exchange is appended
        history = self.store.history_window(self.max_history_messages)
        _, assistant = self.store.append_exchange(content, self.model_id)
        payload = SendMessagePayload(
            message=content,
            data_sources=list(self.data_sources),
            model=self.model_id,
            conversation_history=history,
            conversation_id=self.conversation_id,
        )

        await self._stream_into(
            assistant.id,
            lambda: self.transport.send_message(payload),
            SEND_CONTEXT,
            content,
            len(history),
        )

    async def regenerate_response(self, message_id: str) -> None:
        """
        Replace an assistant message with a fresh answer.

        By default the message and everything after it are removed and the
        preceding user message is sent again, so the log gains a new user
        message and a new assistant message. With ``regenerate_via_transport``
        the original user message is kept and only the answer is replaced.

        Args:
            message_id: Assistant message to regenerate

        Raises:
            StreamInProgressError: If a stream is active and the policy is REJECT
        """
        self._prepare_new_stream()

        messages = self.store.get_messages()
        index = self.store.index_of(message_id)
        if index is None:
            logger.warning(f"Regenerate requested for unknown message {message_id}")
            self._report_error(RegenerateTargetNotFound(message_id), REGENERATE_CONTEXT)
            return

        preceding = messages[index - 1] if index > 0 else None
        if preceding is None or preceding.role != MessageRole.USER:
            logger.warning(f"Regenerate requested for {message_id} without a preceding user message")
            self._report_error(RegeneratePrecedingUserTurnMissing(message_id), REGENERATE_CONTEXT)
            return

        removed = self.store.truncate_from(message_id)
        logger.info(f"Regenerating response {message_id} ({removed} messages removed)")

        if not self.regenerate_via_transport:
            await self.send_message(preceding.content)
            return

        self.clear_error()
        history = messages[:index]
        if self.max_history_messages and self.max_history_messages > 0:
            history = history[-self.max_history_messages:]
        remote_id = self._response_ids.pop(message_id, message_id)
        assistant = self.store.append_assistant_placeholder(self.model_id)
        await self._stream_into(
            assistant.id,
            lambda: self.transport.regenerate_response(remote_id),
            REGENERATE_CONTEXT,
            preceding.content,
            len(history),
        )

    def stop_streaming(self) -> None:
        """
        Stop the active stream, if any.

        Signals the transport once, marks the streaming message ``stopped``
        and releases the cancellation handle. No-op when nothing streams.
        """
        handle = self._active_handle
        if handle is None:
            logger.debug("stop_streaming called with no active stream")
            return

        logger.info(f"Stopping stream for message {handle.message_id}")
        try:
            self.transport.stop_streaming(handle)
        finally:
            handle.cancel("stopped")
            self._active_handle = None
            self.is_loading = False
            if handle.message_id is not None:
                self.store.set_status(handle.message_id, MessageStatus.STOPPED)
            log_stream_event("stopped", handle.message_id)

    def clear_error(self) -> None:
        self.error = None

    def clear_messages(self) -> None:
        """
        Reset the conversation.

        An in-flight stream is abandoned, not cancelled: it keeps reading but
        its message no longer exists, so its chunks are dropped.
        """
        handle = self._active_handle
        if handle is not None:
            log_stream_event("abandoned", handle.message_id)
        logger.info("Clearing conversation")
        self.store.clear()
        self.error = None
        self.is_loading = False
        self.conversation_id = None
        self._active_handle = None
        self._response_ids.clear()

    def _prepare_new_stream(self) -> None:
        handle = self._active_handle
        if handle is None:
            return
        if self.overlap_policy == OverlapPolicy.REPLACE:
            logger.info(f"Replacing active stream for message {handle.message_id}")
            self.stop_streaming()
            return
        log_stream_event("rejected", handle.message_id)
        raise StreamInProgressError(
            f"A response is already streaming into message {handle.message_id}"
        )

    async def _stream_into(
        self,
        message_id: str,
        start: Callable[[], Awaitable[SendMessageResponse]],
        context: str,
        user_message: str,
        history_length: int,
    ) -> None:
        """
        Start a stream through the transport and consume it into a message.

        Args:
            message_id: Assistant placeholder to fill
            start: Coroutine factory calling the transport
            context: Operation name reported with start failures
            user_message: Text being answered, for logging
            history_length: Number of history messages sent
        """
        handle = CancellationHandle(message_id)
        self._active_handle = handle
        self.is_loading = True

        with CorrelationContext():
            log_chat_request(
                user_message=user_message,
                model=self.model_id,
                operation=context,
                history_length=history_length,
                data_source_count=len(self.data_sources),
            )

            try:
                try:
                    response = await start()
                except asyncio.CancelledError:
                    logger.info(f"Request for message {message_id} cancelled before streaming")
                    self.store.set_status(message_id, MessageStatus.STOPPED)
                    raise
                except Exception as e:
                    if handle.cancelled:
                        logger.info(f"Request for message {message_id} aborted before streaming")
                        self.store.set_status(message_id, MessageStatus.STOPPED)
                        return
                    logger.error(f"Failed to start stream: {e}")
                    self.store.set_status(message_id, MessageStatus.ERROR)
                    failure = SendFailure(str(e) or "Send message failed")
                    failure.__cause__ = e
                    self._release(handle)
                    self._report_error(failure, context)
                    return
                finally:
                    if self._active_handle is handle:
                        self.is_loading = False

                if response.conversation_id:
                    self.conversation_id = response.conversation_id
                self._response_ids[message_id] = response.message_id
                log_stream_event("started", message_id, remote_message_id=response.message_id)

                consumer = StreamConsumer(self.store, response.stream, message_id, handle)
                result = await consumer.consume()
            finally:
                self._release(handle)

            if result.outcome == StreamOutcome.ERROR and result.error is not None:
                self._report_error(result.error, STREAM_CONTEXT)

    def _release(self, handle: CancellationHandle) -> None:
        # A newer stream may own the slot already
        if self._active_handle is handle:
            self._active_handle = None

    def _report_error(self, error: ChatError, context: str) -> None:
        """Set the error slot and notify the transport hook together."""
        self.error = error
        log_error(
            error_type=type(error).__name__,
            error_message=str(error),
            context={"operation": context, "model": self.model_id},
        )
        self.transport.on_error(error, context)
