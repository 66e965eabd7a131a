"""
Authentication Middleware

This module provides:
1. Bearer token extraction from Authorization header
2. Verification of the caller's proxy API key
"""

import hmac
import logging
from typing import Optional

from mcp_sse_proxy.errors import AuthError

logger = logging.getLogger(__name__)


def extract_bearer_token(authorization_header: Optional[str]) -> Optional[str]:
    """
    Extract Bearer token from Authorization header.

    Expected format: "Authorization: Bearer <token>"

    Args:
        authorization_header: Authorization header value

    Returns:
        Token string, or None if invalid format
    """
    if not authorization_header:
        logger.debug("No Authorization header provided")
        return None

    parts = authorization_header.split()
    if len(parts) != 2:
        logger.warning(f"Invalid Authorization header format: {len(parts)} parts")
        return None

    scheme, token = parts
    if scheme.lower() != "bearer":
        logger.warning(f"Invalid Authorization scheme: {scheme}")
        return None

    return token


def verify_api_key(authorization_header: Optional[str], expected_key: str) -> None:
    """
    Verify the caller presented the proxy API key.

    Args:
        authorization_header: Authorization header value
        expected_key: Configured proxy API key

    Raises:
        AuthError: If the header is missing, malformed, or carries the wrong key
    """
    token = extract_bearer_token(authorization_header)
    if not token:
        raise AuthError("Missing or invalid Authorization header")

    if not hmac.compare_digest(token.encode(), expected_key.encode()):
        logger.warning("Rejected request with invalid API key")
        raise AuthError("Invalid API key")
