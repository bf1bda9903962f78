"""API Routes Package."""

from api.routes import health, queue, logs, connections, events, metrics

__all__ = [
    "health",
    "queue",
    "logs",
    "connections",
    "events",
    "metrics",
]
