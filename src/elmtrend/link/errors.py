"""Exception hierarchy shared by the adapter link layer."""
from __future__ import annotations


class ElmError(Exception):
    """Base class for adapter and protocol failures."""


class TransportError(ElmError):
    """The byte channel failed to open, write, or stay connected.

    Fatal for the session: the owner disconnects and resets all state.
    """


class CommandTimeout(ElmError, TimeoutError):
    """No prompt-terminated frame arrived before the command deadline."""

    def __init__(self, payload: str, timeout_ms: float):
        super().__init__(f"Timeout waiting for response to '{payload}' ({timeout_ms:.0f} ms)")
        self.payload = payload
        self.timeout_ms = timeout_ms


class SessionClosed(ElmError):
    """The session was disconnected while the command was queued or in flight."""


class UnsupportedParameter(ElmError):
    """The ECU answered with an explicit no-data / unknown-command marker."""

    def __init__(self, request_code: str, response: str = ""):
        super().__init__(f"Parameter {request_code} not supported (response={response!r})")
        self.request_code = request_code
        self.response = response


class MalformedResponse(ElmError, ValueError):
    """The response could not be decoded into the expected byte layout."""

    def __init__(self, request_code: str, response: str = "", reason: str = ""):
        detail = f": {reason}" if reason else ""
        super().__init__(f"Malformed response for {request_code}{detail} (response={response!r})")
        self.request_code = request_code
        self.response = response
