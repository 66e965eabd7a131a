"""
MCP Dispatch Gateway

Handles the complete call flow toward a legacy SSE target:
1. Get (or establish) the pooled connection for the target
2. Register the call under a fresh correlation id
3. Submit the JSON-RPC request to the session's message endpoint
4. Return a synchronous answer, or wait for it on the event stream
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from mcp_sse_proxy.errors import ConnectError, ProtocolError, ValidationError
from mcp_sse_proxy.proxy.correlator import (
    DEFAULT_RESPONSE_TIMEOUT,
    IdGenerator,
    RandomIdGenerator,
    RequestCorrelator,
)
from mcp_sse_proxy.proxy.registry import ConnectionRegistry
from mcp_sse_proxy.proxy.session import split_target
from mcp_sse_proxy.proxy.sse import parse_sse_frame

logger = logging.getLogger(__name__)

# Returned by _read_submission_response when the answer comes on the stream
AWAIT_STREAM = object()


class DispatchGateway:
    """
    Forwards calls to legacy MCP targets over pooled SSE sessions.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        client: httpx.AsyncClient,
        id_generator: Optional[IdGenerator] = None,
        response_timeout: float = DEFAULT_RESPONSE_TIMEOUT,
        http_timeout: float = 30.0
    ):
        """
        Initialize dispatch gateway.

        Args:
            registry: Connection pool
            client: Shared HTTP client for submissions
            id_generator: Correlation id policy (random numeric ids by default)
            response_timeout: Seconds to wait for an answer on the stream
            http_timeout: Timeout for the submission request itself
        """
        self.registry = registry
        self.client = client
        self.id_generator = id_generator or RandomIdGenerator()
        self.response_timeout = response_timeout
        self.http_timeout = http_timeout

    async def dispatch(
        self,
        target: str,
        method: str,
        params: Optional[Any] = None,
        credential: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Forward one JSON-RPC call to a target and return its answer.

        Args:
            target: Target address (e.g. "http://localhost:8000/mcp")
            method: MCP method (e.g. "tools/list", "tools/call")
            params: Method parameters
            credential: Optional downstream credential, sent as a Bearer token

        Returns:
            The target's JSON-RPC response message

        Raises:
            ValidationError: If target or method is missing, or the target is malformed
            ConnectError: If the session or the submission cannot be established
            ProtocolError: If the target answers in an unexpected shape
            CallTimeoutError: If the answer does not arrive in time
        """
        if not isinstance(target, str) or not target.strip():
            raise ValidationError("Missing target server")
        split_target(target)
        if not isinstance(method, str) or not method:
            raise ValidationError("Invalid Request: missing method")

        connection = await self.registry.get(target, credential)
        correlator = connection.correlator
        request_id = self.id_generator.next_id(correlator)

        request: Dict[str, Any] = {
            "jsonrpc": "2.0",
            "method": method,
            "id": request_id,
        }
        if params is not None:
            request["params"] = params

        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
        }
        if credential:
            headers["Authorization"] = f"Bearer {credential}"

        # Register before sending so an immediate answer on the stream is not lost
        answer_future = correlator.register(request_id, timeout=self.response_timeout, method=method)

        logger.info(f"Sending request {method} (id: {request_id}) to {target}")
        try:
            response = await self.client.post(
                connection.post_url,
                json=request,
                headers=headers,
                timeout=self.http_timeout
            )
            answer = self._read_submission_response(response, method)
        except httpx.HTTPError as e:
            self._release(correlator, request_id, answer_future)
            logger.error(f"Network error submitting {method} to {target}: {e}")
            raise ConnectError(
                f"Could not submit {method} to target server: {e}",
                {"target": target}
            ) from e
        except BaseException:
            self._release(correlator, request_id, answer_future)
            raise

        if answer is not AWAIT_STREAM:
            self._release(correlator, request_id, answer_future)
            return answer

        logger.debug(f"Waiting for SSE response for request {request_id}")
        return await answer_future

    @staticmethod
    def _release(correlator: RequestCorrelator, request_id: str, answer_future: asyncio.Future) -> None:
        """Drop a call that will not be answered from the stream."""
        if correlator.discard(request_id):
            return
        # Already failed by the stream reader; mark its error as retrieved
        if answer_future.done() and not answer_future.cancelled():
            answer_future.exception()

    def _read_submission_response(self, response: httpx.Response, method: str) -> Any:
        """
        Interpret the target's reply to a submission.

        Returns:
            The answer message, or AWAIT_STREAM if the answer will arrive on
            the event stream

        Raises:
            ProtocolError: If the status or content type is not understood
        """
        content_type = response.headers.get("content-type", "")
        logger.debug(f"Response status: {response.status_code}, content type: {content_type}")

        if not response.is_success:
            raise ProtocolError(
                f"Target server error: {response.status_code}",
                {"status_code": response.status_code}
            )

        if "application/json" in content_type:
            try:
                return response.json()
            except ValueError as e:
                raise ProtocolError(f"Invalid JSON in response to {method}: {e}") from e

        if "text/event-stream" in content_type:
            return parse_sse_frame(response.text)

        if response.status_code == 202 and not content_type:
            return AWAIT_STREAM

        raise ProtocolError(
            f"Unexpected content-type: {content_type or '<none>'}",
            {"status_code": response.status_code}
        )
