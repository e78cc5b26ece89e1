"""Error hierarchy for the retrieval engine and its tool surface."""

from typing import Any, Dict, Optional

# JSON-RPC 2.0 error codes
INVALID_PARAMS = -32602
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603


class ContextConnectorError(Exception):
    """Base class for all errors raised by this package."""

    code: int = INTERNAL_ERROR

    def __init__(self, message: str, data: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.data = data or {}

    def to_jsonrpc(self) -> Dict[str, Any]:
        error: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data:
            error["data"] = self.data
        return error


class InvalidRequestError(ContextConnectorError):
    """Request failed validation; raised before any backend is called."""

    code = INVALID_PARAMS


class ToolNotFoundError(ContextConnectorError):
    code = METHOD_NOT_FOUND


class BackendError(ContextConnectorError):
    """A retrieval backend call failed. Absorbed by the engine."""

    def __init__(
        self,
        message: str,
        backend: str = "unknown",
        data: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, data)
        self.backend = backend


class BackendUnavailableError(BackendError):
    """Transport failure: connection refused, DNS, driver unavailable."""


class BackendResponseError(BackendError):
    """Backend answered, but with a non-2xx status or an unusable body."""


def to_jsonrpc_error(exc: BaseException) -> Dict[str, Any]:
    """Map any exception to a JSON-RPC error object."""
    if isinstance(exc, ContextConnectorError):
        return exc.to_jsonrpc()
    return {"code": INTERNAL_ERROR, "message": "Internal error"}
