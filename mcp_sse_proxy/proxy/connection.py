"""
Pooled connection to one legacy MCP target

Holds the session established by the handshake, the open event stream,
and the pending calls waiting for answers on that stream.
"""

import logging
import time
from typing import Any, AsyncIterator, Callable, Dict, Optional

import httpx

from mcp_sse_proxy.errors import ConnectError
from mcp_sse_proxy.proxy.correlator import RequestCorrelator

logger = logging.getLogger(__name__)


class PooledConnection:
    """
    One live logical session to a target.

    The health flag only ever goes from healthy to unhealthy; an unhealthy
    connection is replaced, never revived. The session id is fixed at
    construction.
    """

    def __init__(
        self,
        target: str,
        session_id: str,
        base_url: str,
        stream_path: str,
        post_url: str,
        response: Optional[httpx.Response] = None,
        stream: Optional[AsyncIterator[str]] = None,
        initial_text: str = "",
        correlator: Optional[RequestCorrelator] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize pooled connection.

        Args:
            target: Target identity (the address callers asked for)
            session_id: Session token from the handshake
            base_url: Target scheme and host
            stream_path: Path of the event stream
            post_url: Submission endpoint including the session token
            response: Open streaming handshake response
            stream: Decoded text iterator over the response body
            initial_text: Text read during the handshake after the session frame
            correlator: Pending-call map (a fresh one if omitted)
            clock: Time source for age and idle tracking
        """
        self.target = target
        self._session_id = session_id
        self.base_url = base_url
        self.stream_path = stream_path
        self.post_url = post_url
        self.response = response
        self.stream = stream
        self.initial_text = initial_text
        self.correlator = correlator or RequestCorrelator()
        self.demux = None
        self._clock = clock
        self.created_at = clock()
        self.last_used = self.created_at
        self._healthy = True
        self._closed = False

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def is_healthy(self) -> bool:
        return self._healthy

    @property
    def closed(self) -> bool:
        return self._closed

    def mark_unhealthy(self, reason: str = "") -> None:
        """Flag the connection for replacement on next use."""
        if self._healthy:
            logger.info(
                f"Connection to {self.target} (session {self._session_id[:8]}...) "
                f"marked unhealthy{': ' + reason if reason else ''}"
            )
        self._healthy = False

    def touch(self) -> None:
        """Record a use of the connection."""
        self.last_used = self._clock()

    def age(self) -> float:
        """Seconds since the connection was established."""
        return self._clock() - self.created_at

    def idle(self) -> float:
        """Seconds since the connection was last used."""
        return self._clock() - self.last_used

    async def close(self, reason: str = "closed", fail_pending: bool = True) -> None:
        """
        Close the event stream and fail whatever is still pending.

        Args:
            reason: Why the connection is being closed
            fail_pending: Fail pending calls with ConnectError instead of
                leaving them to their own timeout
        """
        if self._closed:
            return
        self._closed = True
        self.mark_unhealthy(reason)

        if self.demux is not None:
            await self.demux.stop()

        if fail_pending:
            failed = self.correlator.fail_all(ConnectError(
                f"Connection to {self.target} {reason}",
                {"target": self.target}
            ))
            if failed:
                logger.warning(f"Failed {failed} pending calls on {self.target}: {reason}")

        if self.response is not None:
            await self.response.aclose()

        logger.debug(f"Connection to {self.target} closed ({reason})")

    def stats(self) -> Dict[str, Any]:
        """Connection details for health reporting."""
        return {
            "target": self.target,
            "session_id": f"{self._session_id[:8]}...",
            "healthy": self._healthy,
            "age_seconds": round(self.age(), 3),
            "idle_seconds": round(self.idle(), 3),
            "pending_calls": len(self.correlator),
        }
