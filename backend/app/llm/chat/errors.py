"""Exceptions raised while running a chat turn."""


class ChatSessionError(Exception):
    """Base exception for chat session errors."""

    kind = "error"

    def __init__(self, message: str, retriable: bool = False):
        super().__init__(message)
        self.retriable = retriable


class TransportError(ChatSessionError):
    """The request could not be sent or the connection dropped."""

    kind = "transport"


class StreamTimeoutError(TransportError):
    """No frame arrived within the idle-read interval."""

    kind = "timeout"

    def __init__(self, timeout: float):
        super().__init__(f"No response received within {timeout:g} seconds", retriable=True)
        self.timeout = timeout


class FrameParseError(ChatSessionError):
    """A single event record could not be decoded."""

    kind = "frame_parse"


class UpstreamError(ChatSessionError):
    """The backend reported an error inside the stream."""

    kind = "upstream"


class EmptyStreamError(ChatSessionError):
    """The stream ended without content and without an explicit error."""

    kind = "empty_stream"


class ConfigResolutionError(ChatSessionError):
    """Credential or tool schema resolution failed."""

    kind = "config_resolution"
