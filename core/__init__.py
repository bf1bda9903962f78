"""Core module - settings, operation log, observability and secret handling.

Shared by the connectors, the sync engine, the queue and the operator API.
Nothing in here knows about a specific ERP or billing platform payload.
"""

__version__ = "1.0.0"
