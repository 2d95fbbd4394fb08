from __future__ import annotations

from enum import Enum
from typing import Optional


class HomeRunError(RuntimeError):
    pass


class ServerSetupError(HomeRunError):
    pass


class ErrorKind(Enum):
    INVALID_TARGET = "invalidTarget"
    TRANSPORT_FAILURE = "transportFailure"
    DECODE_FAILURE = "decodeFailure"
    SERVER_STATUS = "serverStatus"
    TIMEOUT = "timeout"
    UNCLASSIFIED = "unclassified"


class RequestError(HomeRunError):
    """A classified failure of one request attempt.

    ``retryable`` decides whether the engine tries again; ``user_message``
    is the text a presentation layer may show.
    """

    kind: ErrorKind = ErrorKind.UNCLASSIFIED
    retryable: bool = True

    def __init__(self, message: str = "", *, cause: Optional[BaseException] = None) -> None:
        super().__init__(message or self.default_message())
        self.cause = cause

    def default_message(self) -> str:
        return "Unknown error occurred"

    @property
    def user_message(self) -> str:
        return str(self)


class InvalidTargetError(RequestError):
    kind = ErrorKind.INVALID_TARGET
    retryable = False

    def default_message(self) -> str:
        return "Invalid server URL"


class TransportError(RequestError):
    kind = ErrorKind.TRANSPORT_FAILURE

    def default_message(self) -> str:
        return "Network error"

    @property
    def user_message(self) -> str:
        text = str(self)
        return text if text == self.default_message() else f"Network error: {text}"


class DecodeError(RequestError):
    # A schema mismatch does not change between attempts.
    kind = ErrorKind.DECODE_FAILURE
    retryable = False

    def default_message(self) -> str:
        return "Data parsing error"

    @property
    def user_message(self) -> str:
        text = str(self)
        return text if text == self.default_message() else f"Data parsing error: {text}"


class ServerStatusError(RequestError):
    kind = ErrorKind.SERVER_STATUS

    def __init__(self, status: int, message: str = "", *, cause: Optional[BaseException] = None) -> None:
        self.status = int(status)
        super().__init__(message, cause=cause)

    def default_message(self) -> str:
        return f"Server error: {self.status}"

    @property
    def not_found(self) -> bool:
        return self.status == 404


class RequestTimeoutError(RequestError):
    kind = ErrorKind.TIMEOUT

    def default_message(self) -> str:
        return "Connection timeout"


class UnclassifiedError(RequestError):
    kind = ErrorKind.UNCLASSIFIED
