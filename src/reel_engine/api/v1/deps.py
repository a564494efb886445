"""Request dependencies."""

from typing import Optional

from fastapi import Header, Request

from reel_engine.core.container import Services


def get_services(request: Request) -> Services:
    """Services built by the application lifespan."""
    return request.app.state.services


def get_user_id(x_user_id: Optional[str] = Header(None)) -> Optional[str]:
    """Caller identity forwarded by the gateway, used for subject ownership checks."""
    return x_user_id
