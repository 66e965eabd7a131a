"""
Request correlation

Tracks calls whose answer will arrive later on a connection's event stream.
Each pending call is keyed by its correlation id and completes exactly once:
matched by an incoming message, failed explicitly, discarded, or timed out.

All methods must be called from the event loop that owns the connection.
Dispatch calls are the only callers of register(); on the read side only
the connection's demultiplexer task resolves or fails entries.
"""

import asyncio
import itertools
import logging
import random
from abc import ABC, abstractmethod
from typing import Any, Container, Dict, List, Optional

from mcp_sse_proxy.errors import CallTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_RESPONSE_TIMEOUT = 30.0


class IdGenerator(ABC):
    """Produces correlation ids for outbound requests."""

    @abstractmethod
    def next_id(self, in_use: Container[str]) -> str:
        """
        Return an id that is not in `in_use`.

        Args:
            in_use: Ids currently pending on the connection
        """
        pass


class RandomIdGenerator(IdGenerator):
    """Random numeric string ids, redrawn on collision with a pending id."""

    def __init__(self, upper: int = 1_000_000, rng: Optional[random.Random] = None, max_attempts: int = 100):
        self.upper = upper
        self.max_attempts = max_attempts
        self._rng = rng or random.Random()

    def next_id(self, in_use: Container[str]) -> str:
        for _ in range(self.max_attempts):
            candidate = str(self._rng.randrange(self.upper))
            if candidate not in in_use:
                return candidate
        raise RuntimeError(
            f"Could not draw a free correlation id after {self.max_attempts} attempts"
        )


class SequentialIdGenerator(IdGenerator):
    """Monotonic counter ids."""

    def __init__(self, start: int = 1):
        self._counter = itertools.count(start)

    def next_id(self, in_use: Container[str]) -> str:
        candidate = str(next(self._counter))
        while candidate in in_use:
            candidate = str(next(self._counter))
        return candidate


def create_id_generator(strategy: str = "random") -> IdGenerator:
    """Build the id generator named by `strategy` ("random" or "sequential")."""
    if strategy == "random":
        return RandomIdGenerator()
    if strategy == "sequential":
        return SequentialIdGenerator()
    raise ValueError(f"Unknown correlation id strategy: {strategy}")


class PendingCall:
    """One in-flight call waiting for its answer."""

    def __init__(
        self,
        correlation_id: str,
        future: asyncio.Future,
        deadline: float,
        timer: asyncio.TimerHandle,
        method: Optional[str] = None
    ):
        self.correlation_id = correlation_id
        self.future = future
        self.deadline = deadline
        self.timer = timer
        self.method = method


class RequestCorrelator:
    """
    Pending-call map for one connection.

    Usage:
        future = correlator.register("42", method="tools/list")
        ... transmit request ...
        answer = await future
    """

    def __init__(self, default_timeout: float = DEFAULT_RESPONSE_TIMEOUT):
        """
        Initialize correlator.

        Args:
            default_timeout: Seconds a call waits before failing with CallTimeoutError
        """
        self.default_timeout = default_timeout
        self._pending: Dict[str, PendingCall] = {}

    def register(
        self,
        correlation_id: str,
        timeout: Optional[float] = None,
        method: Optional[str] = None
    ) -> asyncio.Future:
        """
        Register a call before its request is transmitted.

        Args:
            correlation_id: Id carried by the request and its answer
            timeout: Seconds to wait (defaults to default_timeout)
            method: Request method, used in log and error messages

        Returns:
            Future completed with the answer message, or with an exception

        Raises:
            ValueError: If the id is already pending
        """
        if correlation_id in self._pending:
            raise ValueError(f"Correlation id {correlation_id} is already pending")

        if timeout is None:
            timeout = self.default_timeout

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        timer = loop.call_later(timeout, self._expire, correlation_id)
        call = PendingCall(correlation_id, future, loop.time() + timeout, timer, method)
        self._pending[correlation_id] = call

        # A waiter that gets cancelled takes its entry with it
        future.add_done_callback(lambda f: self._forget(call))

        logger.debug(f"Registered pending call {correlation_id} ({method}), timeout={timeout}s")
        return future

    def resolve(self, correlation_id: str, message: Dict[str, Any]) -> bool:
        """
        Complete a pending call with its answer.

        Returns:
            True if a call was waiting, False otherwise
        """
        call = self._take(correlation_id)
        if call is None:
            return False
        if not call.future.done():
            call.future.set_result(message)
        logger.debug(f"Resolved pending call {correlation_id}")
        return True

    def fail(self, correlation_id: str, error: BaseException) -> bool:
        """
        Fail a pending call.

        Returns:
            True if a call was waiting, False otherwise
        """
        call = self._take(correlation_id)
        if call is None:
            return False
        if not call.future.done():
            call.future.set_exception(error)
        logger.debug(f"Failed pending call {correlation_id}: {error}")
        return True

    def discard(self, correlation_id: str) -> bool:
        """
        Drop a pending call nobody will wait for.

        Returns:
            True if a call was removed, False otherwise
        """
        call = self._take(correlation_id)
        if call is None:
            return False
        call.future.cancel()
        logger.debug(f"Discarded pending call {correlation_id}")
        return True

    def fail_all(self, error: BaseException) -> int:
        """
        Fail every pending call with the same error.

        Returns:
            Number of calls failed
        """
        failed = 0
        for correlation_id in list(self._pending):
            if self.fail(correlation_id, error):
                failed += 1
        return failed

    def pending_ids(self) -> List[str]:
        """Ids of calls currently waiting."""
        return list(self._pending)

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, correlation_id: object) -> bool:
        return correlation_id in self._pending

    def _take(self, correlation_id: str) -> Optional[PendingCall]:
        call = self._pending.pop(correlation_id, None)
        if call is not None:
            call.timer.cancel()
        return call

    def _expire(self, correlation_id: str) -> None:
        call = self._take(correlation_id)
        if call is None:
            return
        label = call.method or correlation_id
        logger.warning(f"Timed out waiting for response to {label} (id: {correlation_id})")
        if not call.future.done():
            call.future.set_exception(CallTimeoutError(
                f"SSE response timeout for {label}",
                {"correlation_id": correlation_id}
            ))

    def _forget(self, call: PendingCall) -> None:
        # Only remove the entry if it still belongs to this call
        if self._pending.get(call.correlation_id) is call:
            self._take(call.correlation_id)
