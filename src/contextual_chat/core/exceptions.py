"""
Custom exceptions for the contextual chat pipeline.

Each exception carries an ErrorType so callers can decide how to recover:
augmentation failures are handled locally, transport failures may trigger
the fallback chain, stream-protocol failures surface as error events.
"""

from enum import Enum
from typing import Optional


class ErrorType(Enum):
    AUGMENTATION_FAILED = "augmentation_failed"
    TRANSPORT_FAILED = "transport_failed"
    STREAM_PROTOCOL = "stream_protocol"
    CANCELLED = "cancelled"
    INVALID_CONFIGURATION = "invalid_configuration"


class ContextualChatError(Exception):
    """Base exception for the contextual chat pipeline."""
    error_type = ErrorType.TRANSPORT_FAILED

    def __init__(self, message: str, original_error: Optional[BaseException] = None):
        super().__init__(message)
        self.original_error = original_error


class AugmentationError(ContextualChatError):
    """Raised when scoring or prompt assembly cannot produce an augmentation."""
    error_type = ErrorType.AUGMENTATION_FAILED


class ChatTransportError(ContextualChatError):
    """Raised when the chat backend cannot be reached or answers with an error status."""
    error_type = ErrorType.TRANSPORT_FAILED

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: str = "",
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(message, original_error)
        self.status_code = status_code
        self.body = body

    @property
    def retryable(self) -> bool:
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


class StreamProtocolError(ContextualChatError):
    """Raised when a streamed answer ends without a usable result."""
    error_type = ErrorType.STREAM_PROTOCOL


class ConfigurationError(ContextualChatError):
    """Raised when the chat services cannot be wired from the given configuration."""
    error_type = ErrorType.INVALID_CONFIGURATION


class RequestCancelledError(ContextualChatError):
    """Raised when an in-flight request is aborted; a distinct outcome, not a failure."""
    error_type = ErrorType.CANCELLED
