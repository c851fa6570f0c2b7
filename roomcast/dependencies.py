"""FastAPI dependencies for the process-wide components.

The registry and dispatcher are created once in the app lifespan and kept on
app.state; routes receive them through these dependencies so tests can
override them.
"""

from fastapi import Request

from roomcast.sse.registry import ConnectionRegistry
from roomcast.sync.dispatcher import SyncDispatcher


def get_registry(request: Request) -> ConnectionRegistry:
    return request.app.state.registry


def get_dispatcher(request: Request) -> SyncDispatcher:
    return request.app.state.dispatcher


def get_session_factory():
    """Session factory for handlers that must not hold a session for the whole response."""
    from roomcast.database import AsyncSessionLocal

    return AsyncSessionLocal
