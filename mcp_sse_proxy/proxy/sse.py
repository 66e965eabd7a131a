"""
Server-Sent Events frame codec

A frame is one or more lines followed by a blank line. Only `data:` lines
carry payload; `event:`, `id:`, `retry:` and comment lines are ignored.
The payload of a frame is one JSON-RPC message, either in the last data
fragment or spread across all of them.
"""

import json
import logging
from typing import Any, Dict, List

from mcp_sse_proxy.errors import ProtocolError

logger = logging.getLogger(__name__)

FRAME_DELIMITER = "\n\n"


def data_fragments(frame: str) -> List[str]:
    """Collect the non-empty `data:` fragments of a frame, in order."""
    fragments = []
    for line in frame.replace("\r\n", "\n").split("\n"):
        if not line.startswith("data:"):
            continue
        fragment = line[5:].strip()
        if fragment:
            fragments.append(fragment)
    return fragments


def parse_sse_frame(frame: str) -> Dict[str, Any]:
    """
    Parse one SSE frame into a JSON-RPC message.

    The last data fragment is tried first. If it is not valid JSON on its
    own, the concatenation of all fragments is tried, which recovers a
    message that the target split over several data lines.

    Args:
        frame: Frame text (with or without the trailing blank line)

    Returns:
        Parsed message

    Raises:
        ProtocolError: If the frame has no data or its data is not JSON
    """
    fragments = data_fragments(frame)
    if not fragments:
        raise ProtocolError("No data in SSE frame")

    # Nesting too deep for the decoder raises RecursionError rather than a decode error
    try:
        return json.loads(fragments[-1])
    except (ValueError, RecursionError):
        logger.debug("Last data fragment is not JSON, joining all fragments")

    joined = "".join(fragments)
    try:
        return json.loads(joined)
    except (ValueError, RecursionError) as e:
        raise ProtocolError(
            f"Failed to parse SSE frame as JSON: {e}",
            {"fragments": len(fragments)}
        ) from e


class FrameBuffer:
    """
    Accumulates decoded stream text and yields complete frames.

    Text that does not yet end in a blank line stays buffered until the
    rest of the frame arrives.
    """

    def __init__(self, initial: str = ""):
        self._buffer = ""
        if initial:
            self._buffer = initial.replace("\r\n", "\n")

    def feed(self, text: str) -> List[str]:
        """
        Append text and return every frame completed by it.

        Args:
            text: Newly decoded stream text

        Returns:
            Complete frames, oldest first, without their delimiter
        """
        # Normalize after joining so a CRLF split across chunks is caught
        self._buffer = (self._buffer + text).replace("\r\n", "\n")
        return self.drain()

    def drain(self) -> List[str]:
        """Remove and return the complete frames currently buffered."""
        frames = []
        while True:
            end = self._buffer.find(FRAME_DELIMITER)
            if end == -1:
                break
            frames.append(self._buffer[:end])
            self._buffer = self._buffer[end + len(FRAME_DELIMITER):]
        return frames

    @property
    def pending(self) -> str:
        """Buffered text that is not yet a complete frame."""
        return self._buffer
