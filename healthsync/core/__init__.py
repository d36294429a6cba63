"""
Core primitives: durable store, network client, host capabilities.
"""

from .environment import Environment, detect_environment
from .network import AiohttpNetworkClient, NetworkClient, Request, Response, service_for
from .store import (
    DurableStore,
    InMemoryStore,
    JsonFileStore,
    Regions,
    ResilientStore,
    SqliteStore,
)

__all__ = [
    "AiohttpNetworkClient",
    "DurableStore",
    "Environment",
    "InMemoryStore",
    "JsonFileStore",
    "NetworkClient",
    "Regions",
    "Request",
    "ResilientStore",
    "Response",
    "SqliteStore",
    "detect_environment",
    "service_for",
]
