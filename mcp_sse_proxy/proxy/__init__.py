"""
MCP SSE Proxy Module

Pools SSE sessions to legacy MCP targets and correlates their asynchronous
answers with synchronous calls.
"""

from mcp_sse_proxy.proxy.connection import PooledConnection
from mcp_sse_proxy.proxy.correlator import (
    IdGenerator,
    PendingCall,
    RandomIdGenerator,
    RequestCorrelator,
    SequentialIdGenerator,
    create_id_generator,
)
from mcp_sse_proxy.proxy.demux import FrameDemultiplexer
from mcp_sse_proxy.proxy.gateway import DispatchGateway
from mcp_sse_proxy.proxy.registry import ConnectionRegistry
from mcp_sse_proxy.proxy.session import SessionEstablisher, extract_session_token

__all__ = [
    "PooledConnection",
    "IdGenerator",
    "PendingCall",
    "RandomIdGenerator",
    "RequestCorrelator",
    "SequentialIdGenerator",
    "create_id_generator",
    "FrameDemultiplexer",
    "DispatchGateway",
    "ConnectionRegistry",
    "SessionEstablisher",
    "extract_session_token",
]
