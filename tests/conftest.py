"""
Pytest configuration and fixtures
"""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio

from mcp_sse_proxy.proxy import (
    ConnectionRegistry,
    DispatchGateway,
    SequentialIdGenerator,
    SessionEstablisher,
)


class FakeClock:
    """Manually advanced time source"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTarget:
    """
    In-process legacy MCP server.

    GET opens an SSE stream that announces a session id and then emits
    whatever the test (or a submission) pushes onto it. POST answers
    according to `post_mode`:

    - "accepted": 202 with no body, answer pushed onto the session's stream
    - "silent": 202 with no body, no answer
    - "json": answer as an application/json body
    - "sse": answer as a single text/event-stream frame
    - "text": a text/plain body the proxy does not understand
    - "error": HTTP 500
    - "unreachable": the submission fails at the transport level
    """

    def __init__(self, post_mode: str = "accepted", handshake_status: int = 200):
        self.post_mode = post_mode
        self.handshake_status = handshake_status
        # Opening chunks of each stream; None ends the stream
        self.greeting: Optional[List[Optional[str]]] = None
        self.responder: Callable[[Dict[str, Any]], Dict[str, Any]] = self.default_answer
        self.handshakes: List[httpx.Request] = []
        self.posts: List[Dict[str, Any]] = []
        self.post_requests: List[httpx.Request] = []
        self.streams: Dict[str, asyncio.Queue] = {}

    @staticmethod
    def default_answer(body: Dict[str, Any]) -> Dict[str, Any]:
        return {"jsonrpc": "2.0", "id": body["id"], "result": {"echo": body["method"]}}

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return self._handshake(request)
        return self._submit(request)

    @property
    def session_ids(self) -> List[str]:
        return list(self.streams)

    def push(self, text: str, session_id: Optional[str] = None) -> None:
        """Emit raw text on a session's stream (latest session by default)."""
        self._queue(session_id).put_nowait(text)

    def end_stream(self, session_id: Optional[str] = None) -> None:
        self._queue(session_id).put_nowait(None)

    def break_stream(self, error: BaseException, session_id: Optional[str] = None) -> None:
        self._queue(session_id).put_nowait(error)

    def _queue(self, session_id: Optional[str]) -> asyncio.Queue:
        if session_id is None:
            session_id = self.session_ids[-1]
        return self.streams[session_id]

    def _handshake(self, request: httpx.Request) -> httpx.Response:
        self.handshakes.append(request)
        if self.handshake_status != 200:
            return httpx.Response(self.handshake_status, text="unavailable")

        session_id = f"session-{len(self.handshakes)}"
        queue: asyncio.Queue = asyncio.Queue()
        chunks = self.greeting or [f"event: endpoint\ndata: /mcp/messages?sessionId={session_id}\n\n"]
        for chunk in chunks:
            queue.put_nowait(chunk)
        self.streams[session_id] = queue
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=self._stream(queue)
        )

    @staticmethod
    async def _stream(queue: asyncio.Queue):
        while True:
            item = await queue.get()
            if item is None:
                return
            if isinstance(item, BaseException):
                raise item
            yield item.encode()

    def _submit(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.posts.append(body)
        self.post_requests.append(request)
        session_id = request.url.params.get("sessionId")

        if self.post_mode == "accepted":
            answer = self.responder(body)
            self.push(f"event: message\ndata: {json.dumps(answer)}\n\n", session_id)
            return httpx.Response(202)
        if self.post_mode == "silent":
            return httpx.Response(202)
        if self.post_mode == "json":
            return httpx.Response(200, json=self.responder(body))
        if self.post_mode == "sse":
            return httpx.Response(
                200,
                headers={"content-type": "text/event-stream"},
                text=f"event: message\ndata: {json.dumps(self.responder(body))}\n\n"
            )
        if self.post_mode == "text":
            return httpx.Response(200, text="hello")
        if self.post_mode == "unreachable":
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(500, text="boom")


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the event loop until predicate() is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def fake_target():
    """Legacy SSE target"""
    return FakeTarget()


@pytest.fixture
def clock():
    """Controllable time source"""
    return FakeClock()


@pytest_asyncio.fixture
async def http_client(fake_target):
    """HTTP client wired to the fake target"""
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_target.handler)) as client:
        yield client


@pytest_asyncio.fixture
async def registry(http_client, clock):
    """Connection registry with a fake clock and short timeouts"""
    establisher = SessionEstablisher(
        http_client,
        handshake_timeout=2.0,
        response_timeout=1.0,
        clock=clock
    )
    registry = ConnectionRegistry(
        establisher,
        cache_ttl=60,
        cleanup_interval=30,
        timer=clock
    )
    yield registry
    await registry.close()


@pytest.fixture
def gateway(registry, http_client):
    """Dispatch gateway with predictable correlation ids"""
    return DispatchGateway(
        registry,
        http_client,
        id_generator=SequentialIdGenerator(),
        response_timeout=1.0
    )


@pytest.fixture
def target():
    """Address of the fake legacy target"""
    return "http://legacy.example.com/mcp"


@pytest.fixture
def eventually():
    """Helper that waits for a condition on the event loop"""
    return wait_until
