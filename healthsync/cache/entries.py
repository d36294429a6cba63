"""
Cache data model: resource classes, regions, entries, classification rules.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from healthsync.core.network import Request, Response

DAY_MS = 24 * 60 * 60 * 1000
IMAGE_SIZE_LIMIT = 1024 * 1024


class ResourceClass(str, Enum):
    """How a request is treated by the strategy engine."""

    CRITICAL = "critical"
    STATIC = "static"
    API = "api"
    NAVIGATION = "navigation"
    IMAGE = "image"
    OTHER = "other"


class CacheRegion(str, Enum):
    """Named partitions inside the ``cacheEntries`` store region."""

    STATIC = "static"
    DYNAMIC = "dynamic"
    IMAGE = "image"
    PERFORMANCE = "performance"


class TTLCategory:
    IMAGE = "image"
    API_JSON = "api/json"
    API_OTHER = "api/other"
    STATIC = "static"
    OTHER = "other"


DEFAULT_TTL_BY_CATEGORY: dict[str, float] = {
    TTLCategory.IMAGE: 7 * DAY_MS,
    TTLCategory.API_JSON: 1 * DAY_MS,
    TTLCategory.API_OTHER: 7 * DAY_MS,
    TTLCategory.STATIC: 7 * DAY_MS,
    TTLCategory.OTHER: 1 * DAY_MS,
}


def normalize_url(url: str) -> str:
    """
    Request identity used as cache key.

    Lowercases scheme and host, sorts query parameters, drops the fragment.
    Path-only URLs stay path-only.
    """
    parts = urlsplit(url)
    query = urlencode(sorted(parse_qsl(parts.query, keep_blank_values=True)))
    return urlunsplit(
        (parts.scheme.lower(), parts.netloc.lower(), parts.path or "/", query, "")
    )


def entry_key(region: CacheRegion | str, url: str) -> str:
    region_name = region.value if isinstance(region, CacheRegion) else region
    return f"{region_name}:{normalize_url(url)}"


@dataclass
class CacheRules:
    """
    Explicit classification rules.

    Matching order: image, critical, static, api, navigation, other.
    """

    critical_paths: tuple[str, ...] = (
        "/",
        "/index.html",
        "/styles/main.css",
        "/js/app.js",
        "/js/database.js",
        "/manifest.json",
    )
    static_assets: tuple[str, ...] = (
        "/styles/main.css",
        "/styles/components.css",
        "/js/app.js",
        "/js/database.js",
        "/js/error-handler.js",
        "/js/auth.js",
        "/js/performance-monitor.js",
        "/js/asset-optimizer.js",
        "/js/module-loader.js",
        "/manifest.json",
        "/icons/icon-192x192.png",
        "/icons/icon-512x512.png",
    )
    performance_critical: tuple[str, ...] = (
        "/js/performance-monitor.js",
        "/js/asset-optimizer.js",
        "/js/module-loader.js",
    )
    api_path_markers: tuple[str, ...] = ("/api/",)
    api_host_markers: tuple[str, ...] = ("gemini", "googleapis")
    image_extensions: tuple[str, ...] = (
        ".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg", ".ico", ".avif",
    )
    image_size_limit: int = IMAGE_SIZE_LIMIT
    app_shell: str = "/index.html"
    image_placeholder: str = "/icons/placeholder.png"

    def precache_urls(self) -> list[str]:
        """Everything populated at install time."""
        urls = ["/", "/index.html", *self.static_assets]
        return list(dict.fromkeys([*urls, *self.performance_critical]))

    def classify(self, request: Request) -> ResourceClass:
        path = request.path
        hint = (request.resource_hint or "").lower()

        if hint == "image" or path.lower().endswith(self.image_extensions):
            return ResourceClass.IMAGE
        if path in self.critical_paths:
            return ResourceClass.CRITICAL
        if path in self.static_assets or path in self.performance_critical:
            return ResourceClass.STATIC
        if any(m in path for m in self.api_path_markers) or any(
            m in request.host for m in self.api_host_markers
        ):
            return ResourceClass.API
        if hint in ("navigate", "navigation", "document"):
            return ResourceClass.NAVIGATION
        return ResourceClass.OTHER


@dataclass
class CacheEntry:
    """A cached response with its freshness metadata."""

    key: str
    body: Any
    status: int
    headers: dict[str, str]
    cached_at: float
    ttl_ms: float
    region: CacheRegion
    strategy_tag: str
    url: str = ""

    def age(self, now: float) -> float:
        return max(0.0, now - self.cached_at)

    def is_expired(self, now: float) -> bool:
        return self.cached_at + self.ttl_ms < now

    def to_response(self, now: float, extra_headers: dict[str, str] | None = None) -> Response:
        headers = {
            **self.headers,
            "x-served-from-cache": "true",
            "x-cache-age": str(int(self.age(now))),
            **(extra_headers or {}),
        }
        return Response(status=self.status, body=self.body, headers=headers, from_cache=True)

    def to_dict(self) -> dict[str, Any]:
        if isinstance(self.body, bytes):
            body, encoding = base64.b64encode(self.body).decode("ascii"), "base64"
        else:
            body, encoding = self.body, "plain"
        return {
            "key": self.key,
            "url": self.url,
            "body": body,
            "body_encoding": encoding,
            "status": self.status,
            "headers": self.headers,
            "cached_at": self.cached_at,
            "ttl_ms": self.ttl_ms,
            "region": self.region.value,
            "strategy_tag": self.strategy_tag,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CacheEntry:
        body = data.get("body")
        if data.get("body_encoding") == "base64":
            body = base64.b64decode(body)
        return cls(
            key=data["key"],
            url=data.get("url", ""),
            body=body,
            status=data.get("status", 200),
            headers=data.get("headers", {}),
            cached_at=data["cached_at"],
            ttl_ms=data["ttl_ms"],
            region=CacheRegion(data.get("region", CacheRegion.DYNAMIC.value)),
            strategy_tag=data.get("strategy_tag", ""),
        )


@dataclass
class CacheStats:
    """Counters for monitoring."""

    hits: int = 0
    misses: int = 0
    expirations: int = 0
    revalidations: int = 0
    revalidation_failures: int = 0
    stores: int = 0
    fallbacks: int = 0
    by_class: dict[str, int] = field(default_factory=dict)

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def count_class(self, resource_class: ResourceClass) -> None:
        self.by_class[resource_class.value] = self.by_class.get(resource_class.value, 0) + 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hit_rate, 4),
            "expirations": self.expirations,
            "revalidations": self.revalidations,
            "revalidation_failures": self.revalidation_failures,
            "stores": self.stores,
            "fallbacks": self.fallbacks,
            "by_class": dict(self.by_class),
        }
