"""
MCP SSE Proxy

Lets synchronous JSON-RPC callers talk to legacy MCP servers that only answer
over a long-lived Server-Sent Events stream.
"""

__version__ = "1.0.0"
