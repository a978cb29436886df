from __future__ import annotations


class RiakError(Exception):
    """Base error for riakhttp."""


class ConfigurationError(RiakError):
    """Raised when cleaner settings are unusable."""


class TransportError(RiakError):
    """Raised when a request could not be sent or its response not read."""


class ConnectivityError(TransportError):
    """Raised when a connection to the store could not be acquired."""


class ProtocolError(RiakError):
    """Raised when the store sends something the client cannot decode."""


class MultipartError(ProtocolError):
    """Raised for a malformed ``multipart/mixed`` body."""


class EnvelopeDecodeError(ProtocolError):
    """Raised for a malformed JSON envelope in a streamed key listing."""


class StoreError(RiakError):
    """A semantic error reported by the store through its status code."""

    status_code = 0
    default_message = "Store error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class BadRequestError(StoreError):
    status_code = 400
    default_message = "Bad request"


class UnknownKeyError(StoreError):
    status_code = 404
    default_message = "Unknown key"


class UnacceptableError(StoreError):
    status_code = 406
    default_message = "That's unacceptable!"


class PreconditionFailedError(StoreError):
    status_code = 412
    default_message = "Precondition failed"


class ServiceUnavailableError(StoreError):
    status_code = 503
    default_message = "Service unavailable"


class UnhandledResponseError(RiakError):
    """Raised when no outcome handler matches a response status code."""

    def __init__(self, status_code: int, message: str = "No response handler for code") -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"{message} (status {status_code})")


class ChannelClosedError(RiakError):
    """Raised on a put to, or a second close of, a closed channel."""


class PipelineCancelled(RiakError):
    """Raised inside enumeration once a bulk delete has been cancelled."""
