"""Keeps VPN access server accounts in step with the user directory."""

from __future__ import annotations

from typing import Any

from .config import SyncSettings, load_settings
from .directory import Directory, resolve_database_path


def create_app(*args: Any, **kwargs: Any):
    """Factory function that returns the ASGI application with its scheduler lifespan."""

    from .application import create_application as _create_application

    return _create_application(*args, **kwargs)


def build_service(*args: Any, **kwargs: Any):
    """Factory function for the synchronisation facade without the HTTP layer."""

    from .application import build_service as _build_service

    return _build_service(*args, **kwargs)


__all__ = [
    "Directory",
    "SyncSettings",
    "load_settings",
    "resolve_database_path",
    "create_app",
    "build_service",
]
