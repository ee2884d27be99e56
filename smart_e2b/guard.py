"""
Protocol channel guard.

stdout carries JSON-RPC frames and nothing else. Dependencies (the E2B
client, paramiko, user code run in-process by mistake) are free to print,
so once installed the guard replaces ``sys.stdout`` with a filter that
forwards a write to the real stdout only when it is a complete JSON value
and diverts everything else to stderr.

``sys.stderr`` is wrapped as well so a consumer that went away does not
turn a diagnostic line into an exception in the caller.
"""

import io
import json
import sys
from typing import Iterable, Optional, Union

from smart_e2b.config import DEFAULT_DEBUG_MARKERS, LOG_PREFIX
from smart_e2b.errors import is_disconnect

Payload = Union[str, bytes]

_BRACKET_PAIRS = {"{": "}", "[": "]"}


def looks_balanced(text: str) -> bool:
    if not text:
        return False
    closing = _BRACKET_PAIRS.get(text[0])
    return closing is not None and text.endswith(closing)


def _reject_constant(name: str):
    raise ValueError(f"{name} is not valid JSON")


class OutputGuard:
    """Owns the process stdout/stderr while installed.

    ``stdout`` and ``stderr`` are the real channels; when omitted they are
    whatever ``sys.stdout``/``sys.stderr`` are at install time.
    """

    def __init__(self, debug_markers: Iterable[str] = DEFAULT_DEBUG_MARKERS, stdout=None, stderr=None):
        self.debug_markers = tuple(debug_markers)
        self.installed = False
        self.stdout = stdout
        self.stderr = stderr
        self.original_stdout = None
        self.original_stderr = None
        self._replaced = None
        # A frame was terminated on the protocol channel; the newline print() writes next is its own.
        self._absorb_newline = False

    # ----- lifecycle -----

    def install(self) -> None:
        if self.installed:
            return
        self._replaced = (sys.stdout, sys.stderr)
        self.original_stdout = self.stdout if self.stdout is not None else sys.stdout
        self.original_stderr = self.stderr if self.stderr is not None else sys.stderr
        sys.stdout = FrameFilter(self)
        sys.stderr = DiagnosticStream(self)
        self.installed = True
        self.write_diagnostic(f"{LOG_PREFIX} stdout guard installed\n")

    def uninstall(self) -> None:
        if not self.installed:
            return
        sys.stdout, sys.stderr = self._replaced
        self._replaced = None
        self.original_stdout = None
        self.original_stderr = None
        self.installed = False
        self._absorb_newline = False
        self.write_diagnostic(f"{LOG_PREFIX} stdout guard removed\n")

    def is_installed(self) -> bool:
        return self.installed

    def set_debug_markers(self, markers: Iterable[str]) -> None:
        self.debug_markers = tuple(markers)

    # ----- classification -----

    def is_frame(self, text: str, check_markers: bool = True) -> bool:
        stripped = text.strip()
        if not stripped.startswith(("{", "[")):
            return False
        if check_markers and any(marker in stripped for marker in self.debug_markers):
            return False
        if not looks_balanced(stripped):
            return False
        try:
            json.loads(stripped, parse_constant=_reject_constant)
        except ValueError:
            return False
        return True

    def classify_bytes(self, payload: bytes) -> bool:
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError:
            return False
        return self.is_frame(text)

    # ----- routing -----

    def _owned_newline(self, payload: Payload) -> bool:
        absorb = self._absorb_newline
        self._absorb_newline = False
        return absorb and payload in ("\n", b"\n")

    def route(self, text: str) -> None:
        if self._owned_newline(text):
            return
        if self.is_frame(text):
            self._forward(text)
        else:
            self.write_diagnostic(text)

    def route_bytes(self, payload: bytes) -> None:
        if self._owned_newline(payload):
            return
        if self.classify_bytes(payload):
            self._forward(payload)
        else:
            self.write_diagnostic(payload)

    def emit_frame(self, text: str) -> bool:
        """Write a frame produced by the server itself.

        The structural check still applies; the debug-marker heuristic does
        not, since a response may legitimately quote any text.
        """
        self._absorb_newline = False
        if not self.is_frame(text, check_markers=False):
            self.write_diagnostic(text)
            return False
        self._forward(text)
        return True

    def _protocol_stream(self):
        if self.installed:
            return self.original_stdout
        return self.stdout if self.stdout is not None else sys.stdout

    def _diagnostic_stream(self):
        if self.installed:
            return self.original_stderr
        return self.stderr if self.stderr is not None else sys.stderr

    def _forward(self, payload: Payload) -> None:
        # Every frame ends its protocol line, whatever the writer does next.
        newline = "\n" if isinstance(payload, str) else b"\n"
        if not payload.endswith(newline):
            payload += newline
            self._absorb_newline = True
        try:
            _deliver(self._protocol_stream(), payload)
        except Exception as exc:
            if not is_disconnect(exc):
                raise
            self.write_diagnostic(f"{LOG_PREFIX} protocol channel closed while writing a frame (ignored)\n")

    def write_diagnostic(self, payload: Payload) -> None:
        try:
            _deliver(self._diagnostic_stream(), payload)
        except Exception as exc:
            if not is_disconnect(exc):
                raise
            # stderr reader is gone too; nothing left to tell

    def flush(self) -> None:
        for stream in (self._protocol_stream(), self._diagnostic_stream()):
            try:
                stream.flush()
            except Exception as exc:
                if not is_disconnect(exc):
                    raise


def _deliver(stream, payload: Payload) -> None:
    if isinstance(payload, str):
        stream.write(payload)
        stream.flush()
        return
    buffer = getattr(stream, "buffer", None)
    if buffer is None:
        stream.write(payload.decode("utf-8", errors="replace"))
        stream.flush()
        return
    stream.flush()
    buffer.write(payload)
    buffer.flush()


class _GuardedText(io.TextIOBase):
    def __init__(self, guard: OutputGuard, original):
        super().__init__()
        self._guard = guard
        self._original = original

    @property
    def encoding(self) -> str:
        return getattr(self._original, "encoding", None) or "utf-8"

    @property
    def errors(self) -> Optional[str]:
        return getattr(self._original, "errors", None)

    def writable(self) -> bool:
        return True

    def isatty(self) -> bool:
        return False

    def fileno(self) -> int:
        return self._original.fileno()

    def flush(self) -> None:
        self._guard.flush()

    def _check_text(self, text) -> None:
        if not isinstance(text, str):
            raise TypeError(f"write() argument must be str, not {type(text).__name__}")


class _GuardedBinary(io.BufferedIOBase):
    def __init__(self, guard: OutputGuard, sink):
        super().__init__()
        self._guard = guard
        self._sink = sink

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:
        payload = bytes(data)
        self._sink(payload)
        return len(payload)

    def flush(self) -> None:
        self._guard.flush()


class FrameFilter(_GuardedText):
    """Stand-in for ``sys.stdout`` while the guard is installed."""

    def __init__(self, guard: OutputGuard):
        super().__init__(guard, guard.original_stdout)
        self.buffer = _GuardedBinary(guard, guard.route_bytes)

    def write(self, text: str) -> int:
        self._check_text(text)
        self._guard.route(text)
        return len(text)


class DiagnosticStream(_GuardedText):
    """Stand-in for ``sys.stderr``; swallows a closed reader."""

    def __init__(self, guard: OutputGuard):
        super().__init__(guard, guard.original_stderr)
        self.buffer = _GuardedBinary(guard, guard.write_diagnostic)

    def write(self, text: str) -> int:
        self._check_text(text)
        self._guard.write_diagnostic(text)
        return len(text)


# Process-wide instance, installed once from main()
guard = OutputGuard()
