"""
Event bus and error log.
"""

from .bus import Event, EventBus, EventPriority, EventTypes
from .error_log import ErrorLog, ErrorLogEntry

__all__ = [
    "ErrorLog",
    "ErrorLogEntry",
    "Event",
    "EventBus",
    "EventPriority",
    "EventTypes",
]
