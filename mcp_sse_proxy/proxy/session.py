"""
Session establishment

Opens the long-lived event stream to a legacy MCP target and reads it until
the target announces its session token. The token binds every later
submission to this stream.

Session token grammar, matched anywhere in the opening text of the stream:

    token-marker = "sessionId" ( "=" / ":" ) *WSP token
    token        = 1*( ALPHA / DIGIT / "." / "_" / "~" / "-" )

The marker is case-insensitive. A token is complete once a character outside
the token alphabet follows it, or the stream ends.
"""

import asyncio
import logging
import re
import time
from typing import AsyncIterator, Callable, Optional, Tuple
from urllib.parse import urlsplit

import httpx

from mcp_sse_proxy.errors import ConnectError, ValidationError
from mcp_sse_proxy.proxy.connection import PooledConnection
from mcp_sse_proxy.proxy.correlator import DEFAULT_RESPONSE_TIMEOUT, RequestCorrelator
from mcp_sse_proxy.proxy.sse import FRAME_DELIMITER

logger = logging.getLogger(__name__)

SESSION_TOKEN_PATTERN = re.compile(r"sessionId[=:]\s*([A-Za-z0-9._~\-]+)", re.IGNORECASE)

DEFAULT_MESSAGE_PATH = "/mcp/messages"

# Characters of a session token that may appear in logs
LOGGED_TOKEN_CHARS = 8


def find_session_token(text: str, final: bool = False) -> Optional[re.Match]:
    """
    Find the session token in stream text.

    Args:
        text: Text received so far
        final: True once the stream has ended, so a token running to the
            end of the text is complete

    Returns:
        Match whose group 1 is the token, or None
    """
    match = SESSION_TOKEN_PATTERN.search(text)
    if match is None:
        return None
    if match.end() == len(text) and not final:
        # More token characters may still be on the way
        return None
    return match


def mask_session_tokens(text: str) -> str:
    """Shorten every session token in text to its first few characters."""
    def _mask(match: re.Match) -> str:
        token = match.group(1)
        if len(token) <= LOGGED_TOKEN_CHARS:
            return match.group(0)
        prefix = match.group(0)[:match.start(1) - match.start(0)]
        return f"{prefix}{token[:LOGGED_TOKEN_CHARS]}..."

    return SESSION_TOKEN_PATTERN.sub(_mask, text)


def extract_session_token(text: str) -> Optional[str]:
    """Return the session token in a complete piece of text, if any."""
    match = find_session_token(text, final=True)
    return match.group(1) if match else None


def split_target(target: str) -> Tuple[str, str]:
    """
    Split a target address into base URL and stream path.

    Targets without a scheme are treated as plain http.

    Raises:
        ValidationError: If the address has no host

    Returns:
        Tuple of (base_url, stream_path)
    """
    if "://" not in target:
        target = f"http://{target}"
    parts = urlsplit(target)
    if not parts.netloc:
        raise ValidationError(f"Invalid target server address: {target}", {"target": target})
    base_url = f"{parts.scheme}://{parts.netloc}"
    return base_url, parts.path or "/"


class SessionEstablisher:
    """Performs the handshake that creates a pooled connection."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        message_path: str = DEFAULT_MESSAGE_PATH,
        handshake_timeout: float = 10.0,
        http_timeout: float = 30.0,
        response_timeout: float = DEFAULT_RESPONSE_TIMEOUT,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize session establisher.

        Args:
            client: Shared HTTP client; it must outlive the connections
            message_path: Submission path on the target
            handshake_timeout: Seconds to wait for the session token
            http_timeout: Connect/write timeout for the stream request
            response_timeout: Per-call timeout for the new connection's calls
            clock: Time source handed to new connections
        """
        self.client = client
        self.message_path = message_path
        self.handshake_timeout = handshake_timeout
        self.http_timeout = http_timeout
        self.response_timeout = response_timeout
        self.clock = clock

    async def establish(self, target: str, credential: Optional[str] = None) -> PooledConnection:
        """
        Open the event stream to a target and read its session token.

        Args:
            target: Target address (e.g. "http://localhost:8000/mcp")
            credential: Optional downstream credential, sent as a Bearer token

        Returns:
            New healthy PooledConnection owning the open stream

        Raises:
            ValidationError: If the target address is malformed
            ConnectError: If the handshake fails or no session token arrives
        """
        base_url, stream_path = split_target(target)
        stream_url = f"{base_url}{stream_path}"

        headers = {
            "Accept": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "ngrok-skip-browser-warning": "1",
        }
        if credential:
            headers["Authorization"] = f"Bearer {credential}"

        logger.info(f"Creating SSE connection to: {stream_url}")

        request = self.client.build_request(
            "GET",
            stream_url,
            headers=headers,
            # The stream stays open between events, so reads never time out
            timeout=httpx.Timeout(self.http_timeout, read=None)
        )
        try:
            response = await self.client.send(request, stream=True)
        except httpx.HTTPError as e:
            logger.error(f"Network error connecting to {stream_url}: {e}")
            raise ConnectError(
                f"Failed to connect to target server: {e}",
                {"target": target}
            ) from e

        if not response.is_success:
            await response.aclose()
            logger.error(f"SSE handshake with {stream_url} returned {response.status_code}")
            raise ConnectError(
                f"Failed to connect to target server: {response.status_code}",
                {"target": target, "status_code": response.status_code}
            )

        stream = response.aiter_text()
        try:
            session_id, remainder = await asyncio.wait_for(
                self._read_session_token(stream, target),
                timeout=self.handshake_timeout
            )
        except asyncio.TimeoutError:
            await response.aclose()
            raise ConnectError(
                f"Timed out after {self.handshake_timeout}s waiting for session ID from {stream_url}",
                {"target": target}
            )
        except httpx.HTTPError as e:
            await response.aclose()
            raise ConnectError(
                f"SSE stream from {stream_url} failed during handshake: {e}",
                {"target": target}
            ) from e
        except ConnectError:
            await response.aclose()
            raise

        post_url = f"{base_url}{self.message_path}?sessionId={session_id}"
        logger.info(f"Found session ID {session_id[:8]}... for {target}, post URL: {base_url}{self.message_path}")

        return PooledConnection(
            target=target,
            session_id=session_id,
            base_url=base_url,
            stream_path=stream_path,
            post_url=post_url,
            response=response,
            stream=stream,
            initial_text=remainder,
            correlator=RequestCorrelator(self.response_timeout),
            clock=self.clock
        )

    async def _read_session_token(self, stream: AsyncIterator[str], target: str) -> Tuple[str, str]:
        """
        Read the stream until the session token is complete.

        Returns:
            Tuple of (session_id, text received after the frame carrying it)
        """
        bootstrap = ""
        async for chunk in stream:
            bootstrap = (bootstrap + chunk).replace("\r\n", "\n")
            logger.debug(f"SSE bootstrap chunk from {target}: {len(chunk)} chars")
            match = find_session_token(bootstrap)
            if match:
                return match.group(1), self._remainder(bootstrap, match)

        match = find_session_token(bootstrap, final=True)
        if match:
            return match.group(1), ""

        logger.error(f"Failed to extract session ID from SSE response of {target}")
        logger.debug(f"Bootstrap data: {mask_session_tokens(bootstrap)!r}")
        raise ConnectError(
            "Failed to extract session ID from SSE response",
            {"target": target}
        )

    @staticmethod
    def _remainder(bootstrap: str, match: re.Match) -> str:
        end = bootstrap.find(FRAME_DELIMITER, match.end())
        if end == -1:
            return bootstrap[match.end():]
        return bootstrap[end + len(FRAME_DELIMITER):]
