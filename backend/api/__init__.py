# api/__init__.py
from api.server import create_app, build_gateway, close_gateway

__all__ = [
    "create_app",
    "build_gateway",
    "close_gateway",
]
