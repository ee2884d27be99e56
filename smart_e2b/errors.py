import errno
from typing import Any


# JSON-RPC 2.0 error codes
class ErrorCodes:
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603
    SERVER_ERROR = -32000


class ToolError(Exception):
    """Structured failure surfaced to the client as a JSON-RPC error object."""

    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


def invalid_params(message: str) -> ToolError:
    return ToolError(ErrorCodes.INVALID_PARAMS, message)


def internal_error(exc: BaseException, default: str) -> ToolError:
    message = str(exc) if str(exc) else default
    return ToolError(ErrorCodes.INTERNAL_ERROR, message)


BROKEN_PIPE_MARKERS = ("Broken pipe", "write EPIPE")
CLOSED_STREAM_MARKER = "I/O operation on closed file"


def is_disconnect(error: Any) -> bool:
    """True when ``error`` means the protocol consumer closed its end.

    Recognized signals are a broken pipe (``BrokenPipeError`` or an OSError
    with errno EPIPE), a write to a stream that was already closed, or a
    message carrying the broken-pipe text.
    """
    if error is None:
        return False
    if isinstance(error, BrokenPipeError):
        return True
    if isinstance(error, OSError) and error.errno == errno.EPIPE:
        return True
    if isinstance(error, ValueError) and CLOSED_STREAM_MARKER in str(error):
        return True
    message = getattr(error, "message", None)
    if not isinstance(message, str):
        message = str(error)
    return any(marker in message for marker in BROKEN_PIPE_MARKERS)
