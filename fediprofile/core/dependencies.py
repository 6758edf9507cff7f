"""FastAPI dependencies for objects created at startup (see main.startup_event)"""

from typing import Tuple

from fastapi import Request

from fediprofile.core.database import TenantResolver
from fediprofile.core.oauth import AppRegistrationCache

DEFAULT_PORTS = {"http": 80, "https": 443}


def get_resolver(request: Request) -> TenantResolver:
    return request.app.state.resolver


def get_dispatcher(request: Request):
    return request.app.state.dispatcher


def get_app_registrations(request: Request) -> AppRegistrationCache:
    return request.app.state.app_registrations


def request_origin(request: Request) -> Tuple[str, str]:
    """(scheme, host[:port]) of the inbound request"""
    url = request.url
    host = (url.hostname or "").lower()
    if url.port and url.port != DEFAULT_PORTS.get(url.scheme):
        host = f"{host}:{url.port}"
    return url.scheme, host
