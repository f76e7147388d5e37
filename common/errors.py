"""Error taxonomy shared by the store, the backend client, the relay and the API.

Every error raised across package boundaries derives from ``ProxyError`` so the
API layer can render it with a single handler.
"""
from typing import Optional


class ProxyError(Exception):
    """Base error.

    Attributes:
        code: machine readable code, e.g. ``"backend_unavailable"``.
        message: human readable message.
        http_status: status code used when the error reaches HTTP.
        extra: additional fields rendered next to the message.
    """

    code = "error"
    http_status = 500

    def __init__(self, message: str, code: Optional[str] = None, http_status: Optional[int] = None, **extra):
        self.message = message
        if code:
            self.code = code
        if http_status:
            self.http_status = http_status
        self.extra = extra
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, **self.extra}


class InvalidRequest(ProxyError):
    code = "invalid_request"
    http_status = 400


class PayloadTooLarge(InvalidRequest):
    code = "payload_too_large"
    http_status = 413


class Forbidden(ProxyError):
    code = "forbidden"
    http_status = 403


class NotFound(ProxyError):
    code = "not_found"
    http_status = 404


class StorageError(ProxyError):
    code = "storage_error"
    http_status = 500


class BackendError(ProxyError):
    """Anything that went wrong talking to the inference server."""

    code = "backend_error"
    http_status = 502


class BackendUnavailable(BackendError):
    code = "backend_unavailable"
    http_status = 502


class BackendRejected(BackendError):
    code = "backend_rejected"

    def __init__(self, status: int, body: str, message: Optional[str] = None):
        self.status = status
        self.body = body
        http_status = status if 400 <= status < 600 else 502
        message = message or f"Ollama API error: status {status}: {body}".strip()
        super().__init__(message, http_status=http_status, status=status)


class BackendProtocolError(BackendError):
    code = "backend_protocol_error"
    http_status = 502
