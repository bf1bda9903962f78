"""Core audit module - operation log of synchronizer outcomes."""

from core.audit.operation_log import (
    OperationLog,
    OperationLogEntry,
    OperationStatus,
    init_operation_log_db,
)

__all__ = [
    "OperationLog",
    "OperationLogEntry",
    "OperationStatus",
    "init_operation_log_db",
]
