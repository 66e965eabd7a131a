"""
Connection registry

Pools one live connection per target:
1. Reuse a cached healthy connection and refresh its idle timer
2. Otherwise run the handshake and attach a frame demultiplexer
3. Replace connections whose stream has died
4. Sweep connections idle longer than the TTL

Pool key: the target address as given by the caller
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from cachetools import TTLCache

from mcp_sse_proxy.proxy.connection import PooledConnection
from mcp_sse_proxy.proxy.demux import FrameDemultiplexer
from mcp_sse_proxy.proxy.session import SessionEstablisher

logger = logging.getLogger(__name__)


class ConnectionCache(TTLCache):
    """
    TTLCache that reports connections it drops.

    Entries are re-inserted on every use, so the TTL measures idle time.
    """

    def __init__(
        self,
        maxsize: int,
        ttl: float,
        on_evict: Callable[[str, PooledConnection], None],
        timer: Callable[[], float] = time.monotonic
    ):
        super().__init__(maxsize=maxsize, ttl=ttl, timer=timer)
        self._on_evict = on_evict

    def expire(self, time=None) -> List[Tuple[str, PooledConnection]]:
        expired = super().expire(time)
        for target, connection in expired:
            self._on_evict(target, connection)
        return expired

    def popitem(self):
        target, connection = super().popitem()
        self._on_evict(target, connection)
        return target, connection


class ConnectionRegistry:
    """Pool of live connections keyed by target"""

    def __init__(
        self,
        establisher: SessionEstablisher,
        cache_ttl: float = 15 * 60,
        cleanup_interval: float = 5 * 60,
        max_connections: int = 1000,
        fail_pending_on_stream_end: bool = False,
        timer: Callable[[], float] = time.monotonic
    ):
        """
        Initialize connection registry.

        Args:
            establisher: Performs the handshake for new connections
            cache_ttl: Idle seconds after which a connection is swept
            cleanup_interval: Seconds between sweeps
            max_connections: Maximum number of pooled connections
            fail_pending_on_stream_end: Passed to each connection's demultiplexer
            timer: Time source for idle tracking
        """
        self.establisher = establisher
        self.cache_ttl = cache_ttl
        self.cleanup_interval = cleanup_interval
        self.max_connections = max_connections
        self.fail_pending_on_stream_end = fail_pending_on_stream_end
        self._connections = ConnectionCache(
            maxsize=max_connections,
            ttl=cache_ttl,
            on_evict=self._on_evict,
            timer=timer
        )
        self._locks: Dict[str, asyncio.Lock] = {}
        self._closing: Set[asyncio.Task] = set()
        self._sweep_task: Optional[asyncio.Task] = None
        logger.info(
            f"ConnectionRegistry initialized with TTL={cache_ttl}s, "
            f"cleanup interval={cleanup_interval}s"
        )

    async def get(self, target: str, credential: Optional[str] = None) -> PooledConnection:
        """
        Get the pooled connection for a target, creating it if needed.

        Args:
            target: Target address
            credential: Downstream credential used if a handshake is needed

        Returns:
            Healthy PooledConnection

        Raises:
            ConnectError: If a new connection cannot be established
        """
        cached = self._connections.get(target)
        if cached is not None and cached.is_healthy:
            self._touch(target, cached)
            logger.debug(f"Using cached connection for: {target}, sessionId: {cached.session_id[:8]}...")
            return cached

        # One handshake per target at a time; later callers reuse its result
        lock = self._locks.setdefault(target, asyncio.Lock())
        async with lock:
            cached = self._connections.get(target)
            if cached is not None and cached.is_healthy:
                self._touch(target, cached)
                return cached

            if cached is not None:
                logger.info(f"Replacing unhealthy connection for: {target}")
                del self._connections[target]
                # Calls still pending on it keep waiting on their own timeout
                await cached.close("replaced", fail_pending=False)

            logger.info(f"Creating new connection to: {target}")
            connection = await self.establisher.establish(target, credential)
            demux = FrameDemultiplexer(
                connection,
                connection.stream,
                initial_text=connection.initial_text,
                fail_pending_on_stream_end=self.fail_pending_on_stream_end
            )
            demux.start()
            self._connections[target] = connection
            logger.info(f"Cached connection for: {target}, sessionId: {connection.session_id[:8]}...")
            return connection

    def peek(self, target: str) -> Optional[PooledConnection]:
        """Return the cached connection for a target without touching it."""
        return self._connections.get(target)

    async def sweep(self) -> int:
        """
        Remove connections idle longer than the TTL and close them.

        Returns:
            Number of connections removed
        """
        expired = self._connections.expire()
        if self._closing:
            await asyncio.gather(*list(self._closing), return_exceptions=True)
        for target in list(self._locks):
            if target not in self._connections and not self._locks[target].locked():
                del self._locks[target]
        if expired:
            logger.info(f"Cleaned up {len(expired)} expired connections")
        return len(expired)

    def start(self) -> None:
        """Start the periodic sweep."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="connection-sweep")

    async def close(self) -> None:
        """Stop the sweep and close every pooled connection."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        self._connections.expire()
        connections = list(self._connections.items())
        for target, connection in connections:
            del self._connections[target]
            await connection.close("proxy shutting down")
        if self._closing:
            await asyncio.gather(*list(self._closing), return_exceptions=True)
        logger.info(f"Closed {len(connections)} pooled connections")

    def stats(self) -> Dict[str, Any]:
        """Pool statistics for health reporting"""
        pool = [connection.stats() for connection in self._connections.values()]
        return {
            "connections": len(pool),
            "max_connections": self.max_connections,
            "ttl_seconds": self.cache_ttl,
            "pool": pool,
        }

    def __len__(self) -> int:
        return len(list(self._connections.keys()))

    def __contains__(self, target: object) -> bool:
        return target in self._connections

    def _touch(self, target: str, connection: PooledConnection) -> None:
        connection.touch()
        # Re-inserting restarts the entry's TTL
        self._connections[target] = connection

    def _on_evict(self, target: str, connection: PooledConnection) -> None:
        logger.info(f"Evicting connection: {target}")
        task = asyncio.get_running_loop().create_task(connection.close("evicted"))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Connection sweep failed: {e}", exc_info=True)
