"""Custom exception hierarchy for the chatstream client."""


class ChatStreamError(Exception):
    """Base exception for chatstream errors."""
    pass


class ConfigurationError(ChatStreamError):
    """Configuration errors."""
    pass


class TransportError(ChatStreamError):
    """Errors raised by a transport implementation."""
    pass


class ChatError(ChatStreamError):
    """Chat-related errors surfaced through the orchestrator's error slot."""
    pass


class SendFailure(ChatError):
    """The transport could not start a stream."""
    pass


class StreamFailure(ChatError):
    """The stream failed mid-read or delivered an explicit error chunk."""
    pass


class MalformedChunkError(StreamFailure):
    """A chunk could not be decoded."""
    pass


class RegenerateError(ChatError):
    """Local precondition for regenerate was not met."""
    pass


class RegenerateTargetNotFound(RegenerateError):
    """The message to regenerate is not in the conversation log."""

    def __init__(self, message_id: str):
        self.message_id = message_id
        super().__init__(f"Cannot regenerate: message {message_id} not found")


class RegeneratePrecedingUserTurnMissing(RegenerateError):
    """The message to regenerate is not preceded by a user turn."""

    def __init__(self, message_id: str):
        self.message_id = message_id
        super().__init__("Cannot regenerate: user message not found")


class StreamInProgressError(ChatError):
    """A new stream was requested while another one is active."""
    pass
