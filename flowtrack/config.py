from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel


class BroadcastConfig(BaseModel):
    """Settings for live observer fan-out."""

    partition: str = "default"
    send_timeout: float = 5.0
    idle_timeout: float = 300.0
    prune_interval: float = 60.0


class RetryDefaults(BaseModel):
    """Fallback retry policy for tracked steps."""

    max_retries: int = 3
    base_delay_ms: int = 1000
    backoff: Literal["exponential", "linear"] = "exponential"


class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8787


class FlowtrackConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    broadcast: BroadcastConfig = BroadcastConfig()
    retry: RetryDefaults = RetryDefaults()
    server: ServerConfig = ServerConfig()
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> FlowtrackConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to FLOWTRACK_CONFIG env
            variable or 'flowtrack.yaml' in the current directory.
    """

    config_path = path or os.getenv("FLOWTRACK_CONFIG", "flowtrack.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = FlowtrackConfig(**data)
    else:
        config = FlowtrackConfig()

    env_db_url = os.getenv("FLOWTRACK_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
