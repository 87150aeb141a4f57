"""Error types raised by the chat client core and mapped to HTTP by the host."""
from __future__ import annotations

from typing import Optional


class ChatClientError(Exception):
    """Base class for errors the host reports back to a caller."""

    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        return {"error": self.message, "type": type(self).__name__, "retryable": self.retryable}


class ValidationError(ChatClientError):
    status_code = 400


class NotEditableError(ValidationError):
    """Edit targeted a message that is not user-authored."""


class NotFoundError(ChatClientError):
    status_code = 404


class MessageNotFoundError(NotFoundError):
    pass


class SessionNotFoundError(NotFoundError):
    pass


class SessionBusyError(ChatClientError):
    """An inference request is already in flight for this session."""

    status_code = 409


class SessionClosedError(ChatClientError):
    status_code = 410


class UploadError(ChatClientError):
    status_code = 502


class InferenceError(ChatClientError):
    status_code = 502
    retryable = True


class StorageError(ChatClientError):
    status_code = 503


class ConfigError(ValueError):
    """Invalid configuration value."""


class InvalidTransition(RuntimeError):
    """A session state machine received a trigger it has no edge for."""
