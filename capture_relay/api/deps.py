"""
Shared route dependencies
"""

from fastapi import Request

from capture_relay.core.config import ApplicationConfig
from capture_relay.engine.relay import RelayEngine


def get_relay(request: Request) -> RelayEngine:
    """The engine built by the application lifespan"""
    return request.app.state.relay


def get_config(request: Request) -> ApplicationConfig:
    return request.app.state.config


def get_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "")
