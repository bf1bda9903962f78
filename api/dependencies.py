"""Shared FastAPI dependencies."""

from fastapi import Request

from sync_engine.runtime import SyncRuntime


def get_sync_runtime(request: Request) -> SyncRuntime:
    """Runtime wired by the application lifespan."""
    return request.app.state.runtime
