"""
healthsync package.

Resilience and offline-continuity layer for the health tracker client:
- Resilience (circuit breakers, retries, fallback content)
- Cache (request classification and caching strategies)
- Queue (durable offline write queue with ordered replay)
- Events (typed event bus and bounded error log)
"""

__version__ = "0.1.0"
