from __future__ import annotations

import threading

from fastapi import Request

from src.api.errors import APIError
from src.config.load_config import AppConfig, ConfigError, load_app_config
from src.providers.cloud_agent import CloudAgentClient


_CONFIG_INIT_LOCK = threading.Lock()


def get_app_config(request: Request) -> AppConfig:
    """FastAPI dependency: the board/agent config, loaded once per process and cached in `app.state`."""
    cached = getattr(request.app.state, "app_config", None)
    if isinstance(cached, AppConfig):
        return cached

    with _CONFIG_INIT_LOCK:
        cached2 = getattr(request.app.state, "app_config", None)
        if isinstance(cached2, AppConfig):
            return cached2
        try:
            cfg = load_app_config()
        except ConfigError as e:
            raise APIError(status_code=500, code="internal", message=f"Invalid configuration: {e}") from e
        request.app.state.app_config = cfg
        return cfg


def get_agent_client(request: Request) -> CloudAgentClient:
    """FastAPI dependency: agent service client. The API key is read per request so rotation needs no restart."""
    override = getattr(request.app.state, "agent_client", None)
    if override is not None:
        return override
    return CloudAgentClient(get_app_config(request).service)
