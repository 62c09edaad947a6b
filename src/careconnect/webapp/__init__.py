"""CareConnect web service package.

``app`` is built on first access so that importing the package for
``create_app`` or the persistence models does not open the configured
database. ``uvicorn careconnect.webapp:app`` resolves it normally.
"""
from __future__ import annotations

from typing import Any, List

from fastapi import FastAPI

from . import persistence
from .application import create_app, current_caller, default_service
from .persistence import SqlRecordStore, build_engine, create_db_and_tables

_APP: FastAPI | None = None

__all__: List[str] = [
    "app",
    "create_app",
    "current_caller",
    "default_service",
    "SqlRecordStore",
    "build_engine",
    "create_db_and_tables",
]
__all__.extend(name for name in persistence.__all__ if name not in __all__)


def __getattr__(name: str) -> Any:
    global _APP
    if name == "app":
        if _APP is None:
            _APP = create_app()
        return _APP
    if hasattr(persistence, name):
        return getattr(persistence, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def __dir__() -> List[str]:
    return sorted(set(globals()) | set(__all__))
