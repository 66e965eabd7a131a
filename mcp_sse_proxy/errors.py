"""
Proxy error taxonomy

Every failure the proxy reports to a caller is one of these. Each error knows
its HTTP status and JSON-RPC error code, and can render itself as a JSON-RPC
error envelope.
"""

from typing import Any, Dict, Optional

import httpx


class ProxyError(Exception):
    """Base class for errors reported back to the caller."""

    status_code = 500
    code = -32603
    error_type = "internal_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize proxy error.

        Args:
            message: Human-readable description
            details: Optional additional details
        """
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self, request_id: Any = None) -> Dict[str, Any]:
        """
        Render error as a JSON-RPC 2.0 error response.

        Args:
            request_id: ID of the caller's request, if known

        Returns:
            Error response dictionary
        """
        data: Dict[str, Any] = {"type": self.error_type}
        if self.details:
            data.update(self.details)
        return {
            "jsonrpc": "2.0",
            "id": request_id,
            "error": {
                "code": self.code,
                "message": self.message,
                "data": data,
            },
        }


class AuthError(ProxyError):
    """Caller credential missing or invalid."""

    status_code = 401
    code = -32001
    error_type = "unauthorized"


class ValidationError(ProxyError):
    """Malformed or missing call metadata."""

    status_code = 400
    code = -32600
    error_type = "invalid_request"


class ConnectError(ProxyError):
    """Handshake with the target failed or no session token was found."""

    status_code = 502
    code = -32002
    error_type = "connect_error"


class ProtocolError(ProxyError):
    """Target answered in a shape the proxy does not understand."""

    status_code = 502
    code = -32003
    error_type = "protocol_error"


class CallTimeoutError(ProxyError, TimeoutError):
    """No matching answer arrived before the call's deadline."""

    status_code = 504
    code = -32004
    error_type = "timeout"


class InternalError(ProxyError):
    """Any failure not covered by the other error kinds."""


def as_proxy_error(error: BaseException) -> ProxyError:
    """
    Wrap an arbitrary exception so it can be reported to the caller.

    ProxyError instances are returned unchanged. A transport failure on a
    target stream becomes a ConnectError; anything else becomes an
    InternalError carrying the original message.
    """
    if isinstance(error, ProxyError):
        return error
    if isinstance(error, httpx.TransportError):
        return ConnectError(f"Connection to target server failed: {error}")
    return InternalError(
        "Internal server error",
        {"reason": str(error) or error.__class__.__name__},
    )
