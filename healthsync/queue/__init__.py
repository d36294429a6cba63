"""
Offline operation queue and server replay.
"""

from .offline_queue import (
    DrainReport,
    OfflineOperationQueue,
    OperationKind,
    OperationStatus,
    QueuedOperation,
)
from .replay import ENDPOINTS, HttpOperationReplayer

__all__ = [
    "ENDPOINTS",
    "DrainReport",
    "HttpOperationReplayer",
    "OfflineOperationQueue",
    "OperationKind",
    "OperationStatus",
    "QueuedOperation",
]
