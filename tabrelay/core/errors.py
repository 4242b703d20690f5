class RelayError(Exception):
    """Base class for errors raised by the relay. ``code`` is stable and sent to clients."""

    code = "relay_error"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def summary(self) -> str:
        return f"{self.code}: {self.message}"


class ConflictError(RelayError):
    """An active session already owns the requested capture target."""

    code = "conflict"
    status_code = 409


class SourceUnavailableError(RelayError):
    """The capture target cannot produce audio."""

    code = "source_unavailable"
    status_code = 422


class UpstreamError(RelayError):
    """The transcription service failed to open or errored mid-stream."""

    code = "upstream_error"
    status_code = 502


class TransportError(RelayError):
    """The client channel disconnected or a write to it failed."""

    code = "transport_error"
    status_code = 503


class SessionNotFoundError(RelayError):
    code = "not_found"
    status_code = 404


_BY_CODE = {
    cls.code: cls
    for cls in (ConflictError, SourceUnavailableError, UpstreamError, TransportError, SessionNotFoundError)
}


def error_from_code(code: str, message: str) -> RelayError:
    """Rebuild the exception a server reported in an error message."""
    cls = _BY_CODE.get(code, RelayError)
    return cls(message)
