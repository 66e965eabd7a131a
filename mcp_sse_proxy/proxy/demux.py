"""
Frame demultiplexer

Runs one background task per pooled connection. The task reads the
connection's event stream for as long as it lives, splits it into frames,
and hands each decoded message to the pending call with the same id.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, Optional

from mcp_sse_proxy.errors import ConnectError, ProtocolError
from mcp_sse_proxy.proxy.connection import PooledConnection
from mcp_sse_proxy.proxy.sse import FrameBuffer, parse_sse_frame

logger = logging.getLogger(__name__)


class FrameDemultiplexer:
    """
    Routes messages from a connection's event stream to pending calls.

    This task is the only reader of the stream, and the only code that
    marks the connection unhealthy or completes pending calls from the
    read side.
    """

    def __init__(
        self,
        connection: PooledConnection,
        stream: AsyncIterator[str],
        initial_text: str = "",
        fail_pending_on_stream_end: bool = False
    ):
        """
        Initialize demultiplexer.

        Args:
            connection: Connection whose calls this task resolves
            stream: Decoded text chunks of the event stream
            initial_text: Text read during the handshake that belongs to later frames
            fail_pending_on_stream_end: Fail pending calls when the stream ends cleanly
        """
        self.connection = connection
        self._stream = stream
        self._frames = FrameBuffer(initial_text)
        self.fail_pending_on_stream_end = fail_pending_on_stream_end
        self._task: Optional[asyncio.Task] = None
        connection.demux = self

    def start(self) -> asyncio.Task:
        """Start the reader task (once)."""
        if self._task is None:
            self._task = asyncio.create_task(
                self._run(),
                name=f"sse-demux:{self.connection.target}"
            )
        return self._task

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def stop(self) -> None:
        """Cancel the reader task and wait for it to finish."""
        if self._task is None or self._task.done():
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    def handle_frame(self, frame: str) -> Optional[Dict[str, Any]]:
        """
        Decode one frame and route its message.

        Parse failures are logged and skipped; they never stop the reader.

        Returns:
            The decoded message, or None if the frame could not be parsed
        """
        if not frame.strip():
            return None

        try:
            message = parse_sse_frame(frame)
        except ProtocolError as e:
            logger.warning(f"Skipping unparseable SSE frame from {self.connection.target}: {e}")
            return None

        message_id = message.get("id") if isinstance(message, dict) else None
        if message_id is None:
            logger.debug(f"SSE message without id from {self.connection.target}, ignoring")
            return message

        correlation_id = str(message_id)
        if self.connection.correlator.resolve(correlation_id, message):
            logger.debug(f"Matched response for id: {correlation_id}")
        else:
            logger.debug(f"No pending call for response id: {correlation_id}")
        return message

    async def _run(self) -> None:
        target = self.connection.target
        logger.debug(f"SSE listener started for {target}")
        try:
            for frame in self._frames.drain():
                self.handle_frame(frame)
            async for chunk in self._stream:
                for frame in self._frames.feed(chunk):
                    self.handle_frame(frame)
        except asyncio.CancelledError:
            self.connection.mark_unhealthy("listener cancelled")
            raise
        except Exception as e:
            logger.error(f"SSE listener error for {target}: {e!r}", exc_info=True)
            self.connection.mark_unhealthy(f"stream error: {e!r}")
            failed = self.connection.correlator.fail_all(e)
            logger.info(f"Rejected {failed} pending requests on {target}")
            return

        logger.info(f"SSE stream ended for {target}")
        self.connection.mark_unhealthy("stream ended")
        if self.fail_pending_on_stream_end:
            failed = self.connection.correlator.fail_all(ConnectError(
                f"SSE stream to {target} ended",
                {"target": target}
            ))
            if failed:
                logger.info(f"Rejected {failed} pending requests on {target}")
