"""
MCP SSE Proxy - Main entry point

Exposes legacy SSE-only MCP servers as plain request/response endpoints.

Routes:
- GET  /health  pool status
- POST /mcp     forward a JSON-RPC call to the server named by X-Target-Server
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
import uvicorn
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from mcp_sse_proxy.config import ProxyConfig, load_config
from mcp_sse_proxy.errors import ProxyError, ValidationError, as_proxy_error
from mcp_sse_proxy.middleware import setup_logging, verify_api_key
from mcp_sse_proxy.proxy import (
    ConnectionRegistry,
    DispatchGateway,
    SessionEstablisher,
    create_id_generator,
)

logger = logging.getLogger(__name__)


def error_response(error: ProxyError, request_id: Any = None) -> JSONResponse:
    """Render a proxy error as a JSON-RPC error response."""
    return JSONResponse(error.to_response(request_id), status_code=error.status_code)


def create_app(
    config: Optional[ProxyConfig] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> Starlette:
    """
    Build the proxy application.

    Args:
        config: Proxy configuration (loaded from environment if omitted)
        transport: Optional HTTP transport for outbound calls to targets

    Returns:
        Starlette application
    """
    if config is None:
        config = load_config()
    conn_config = config.connection

    @asynccontextmanager
    async def lifespan(app: Starlette):
        client = httpx.AsyncClient(
            transport=transport,
            timeout=conn_config.http_timeout_seconds
        )
        establisher = SessionEstablisher(
            client,
            message_path=conn_config.message_path,
            handshake_timeout=conn_config.handshake_timeout_seconds,
            http_timeout=conn_config.http_timeout_seconds,
            response_timeout=conn_config.response_timeout_seconds
        )
        registry = ConnectionRegistry(
            establisher,
            cache_ttl=conn_config.cache_ttl_seconds,
            cleanup_interval=conn_config.cleanup_interval_seconds,
            max_connections=conn_config.max_connections,
            fail_pending_on_stream_end=conn_config.fail_pending_on_stream_end
        )
        gateway = DispatchGateway(
            registry,
            client,
            id_generator=create_id_generator(conn_config.id_strategy),
            response_timeout=conn_config.response_timeout_seconds,
            http_timeout=conn_config.http_timeout_seconds
        )
        registry.start()
        app.state.registry = registry
        app.state.gateway = gateway
        logger.info(
            f"{config.name} ready: cache TTL={conn_config.cache_ttl_seconds}s, "
            f"cleanup interval={conn_config.cleanup_interval_seconds}s"
        )
        try:
            yield
        finally:
            logger.info(f"Shutting down, active connections: {len(registry)}")
            await registry.close()
            await client.aclose()

    async def health(request: Request):
        """Pool status for monitoring."""
        stats = request.app.state.registry.stats()
        return JSONResponse({
            "status": "healthy",
            "connections": stats["connections"],
            "pool": stats["pool"],
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    async def mcp_endpoint(request: Request):
        """
        Forward a JSON-RPC call to a legacy SSE target.

        Headers:
        - Authorization: Bearer <proxy API key>
        - X-Target-Server: target address (required)
        - X-Target-Api-Key: credential forwarded to the target (optional)
        """
        request_id = None
        try:
            verify_api_key(request.headers.get("authorization"), config.proxy.api_key)

            target = request.headers.get("x-target-server")
            if not target:
                logger.warning("Missing X-Target-Server header")
                raise ValidationError("Missing X-Target-Server header")

            try:
                body = json.loads(await request.body())
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise ValidationError(f"Parse error: {e}")
            if not isinstance(body, dict):
                raise ValidationError("Invalid Request: must be a JSON object")

            request_id = body.get("id")
            method = body.get("method")
            logger.info(f"Handling request: {method} to {target}")

            answer = await request.app.state.gateway.dispatch(
                target,
                method,
                body.get("params"),
                credential=request.headers.get("x-target-api-key")
            )
            return JSONResponse(answer)

        except ProxyError as e:
            logger.warning(f"Request failed ({e.error_type}): {e.message}")
            return error_response(e, request_id)

        except Exception as e:
            logger.error(f"Error handling request: {e}", exc_info=True)
            return error_response(as_proxy_error(e), request_id)

    routes = [
        Route("/health", health, methods=["GET"]),
        Route("/mcp", mcp_endpoint, methods=["POST"]),
    ]
    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Content-Type", "Authorization", "X-Target-Server", "X-Target-Api-Key"],
        )
    ]
    return Starlette(routes=routes, middleware=middleware, lifespan=lifespan)


def run(config: Optional[ProxyConfig] = None) -> None:
    """Start the proxy with uvicorn."""
    if config is None:
        config = load_config()
    setup_logging(config.proxy.log_level)

    logger.info(f"Starting {config.name} v{config.version}")
    logger.info(f"Health check: http://localhost:{config.proxy.port}/health")
    logger.info(f"MCP endpoint: http://localhost:{config.proxy.port}/mcp")

    uvicorn.run(
        create_app(config),
        host=config.proxy.host,
        port=config.proxy.port,
        log_level=config.proxy.log_level.lower()
    )


if __name__ == "__main__":
    # For local development: python -m mcp_sse_proxy.main
    run()
