"""
Configuration management for the MCP SSE proxy
"""

import os
from typing import Literal, Optional
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml
from dotenv import load_dotenv

# Load .env file at module import time
load_dotenv()


class ConnectionConfig(BaseModel):
    """Connection pool and call tunables

    cache_ttl_seconds: idle time after which a pooled connection is swept
    cleanup_interval_seconds: how often the sweep runs
    response_timeout_seconds: how long a call waits for its answer frame
    handshake_timeout_seconds: how long to read the stream for a session token
    http_timeout_seconds: connect/write timeout for outbound HTTP
    max_connections: ceiling on pooled connections
    message_path: submission path appended to the target's base address
    fail_pending_on_stream_end: fail pending calls when a stream ends cleanly
    id_strategy: correlation id generator ("random" or "sequential")
    """
    cache_ttl_seconds: float = 15 * 60
    cleanup_interval_seconds: float = 5 * 60
    response_timeout_seconds: float = 30.0
    handshake_timeout_seconds: float = 10.0
    http_timeout_seconds: float = 30.0
    max_connections: int = 1000
    message_path: str = "/mcp/messages"
    fail_pending_on_stream_end: bool = False
    id_strategy: Literal["random", "sequential"] = "random"


class ProxySettings(BaseSettings):
    """
    Proxy settings from environment variables.

    - MCP_PROXY_API_KEY: key callers must present as a Bearer token
    - HOST, PORT: listen address
    - LOG_LEVEL: root log level
    """
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    api_key: str = Field(alias="MCP_PROXY_API_KEY", default="default-key")
    host: str = Field(alias="HOST", default="0.0.0.0")
    port: int = Field(alias="PORT", default=10000)
    log_level: str = Field(alias="LOG_LEVEL", default="INFO")


class ProxyConfig(BaseModel):
    """Complete proxy configuration"""
    name: str = "MCP SSE Proxy"
    version: str = "1.0.0"

    proxy: ProxySettings
    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)

    @classmethod
    def from_yaml(cls, config_path: str, env_settings: Optional[ProxySettings] = None) -> "ProxyConfig":
        """Load configuration from YAML file and environment"""
        with open(config_path, "r") as f:
            yaml_config = yaml.safe_load(f) or {}

        if env_settings is None:
            env_settings = ProxySettings()

        connection = ConnectionConfig(**(yaml_config.get("connection") or {}))

        return cls(
            proxy=env_settings,
            connection=connection
        )


def load_config() -> ProxyConfig:
    """Load configuration from environment and YAML"""
    config_path = os.getenv("CONFIG_PATH", "config/config.yaml")

    env_settings = ProxySettings()

    if os.path.exists(config_path):
        return ProxyConfig.from_yaml(config_path, env_settings)
    # Env-only config with default connection tunables
    return ProxyConfig(proxy=env_settings)
