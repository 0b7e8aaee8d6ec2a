# api/__init__.py
from api.server import create_app, build_engine

__all__ = [
    "create_app",
    "build_engine",
]
