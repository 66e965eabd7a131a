"""Request middleware: logging setup and caller authentication"""

from mcp_sse_proxy.middleware.logging import SessionTokenFilter, setup_logging
from mcp_sse_proxy.middleware.auth import extract_bearer_token, verify_api_key

__all__ = ["SessionTokenFilter", "setup_logging", "extract_bearer_token", "verify_api_key"]
