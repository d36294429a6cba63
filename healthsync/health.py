"""
Engine health reporting.

Aggregates the state of the durable store, the circuits, the offline queue
and the data volume into one report. The overall status is the worst
component status.

Example:
    report = await engine.health_check()
    print(f"Overall status: {report.status.value}")
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class HealthStatus(Enum):
    """Health status levels."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"

    def __lt__(self, other):
        """Allow comparison for determining worst status."""
        order = {
            HealthStatus.HEALTHY: 3,
            HealthStatus.DEGRADED: 2,
            HealthStatus.UNHEALTHY: 1,
            HealthStatus.UNKNOWN: 0,
        }
        return order[self] < order[other]


@dataclass
class HealthCheck:
    """Result of one component check."""

    name: str
    status: HealthStatus
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def is_healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "details": self.details,
        }


@dataclass
class HealthReport:
    """Aggregated engine health."""

    checks: list[HealthCheck]
    checked_at: datetime = field(default_factory=datetime.now)

    @property
    def status(self) -> HealthStatus:
        if not self.checks:
            return HealthStatus.UNKNOWN
        return min(check.status for check in self.checks)

    def get(self, name: str) -> HealthCheck | None:
        return next((c for c in self.checks if c.name == name), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "checked_at": self.checked_at.isoformat(),
            "checks": [c.to_dict() for c in self.checks],
        }


def disk_check(
    percent_used: float | None,
    free_bytes: int | None,
    warning_percent: float = 80.0,
    critical_percent: float = 90.0,
) -> HealthCheck:
    """Classify data-volume usage against warning/critical thresholds."""
    if percent_used is None:
        return HealthCheck(
            name="disk",
            status=HealthStatus.UNKNOWN,
            message="No persistent data volume",
        )

    free_gb = (free_bytes or 0) / (1024**3)
    details = {"percent_used": round(percent_used, 1), "free_gb": round(free_gb, 2)}
    if percent_used >= critical_percent:
        status, message = HealthStatus.UNHEALTHY, f"Disk critically full ({percent_used:.1f}%)"
    elif percent_used >= warning_percent:
        status, message = HealthStatus.DEGRADED, f"Disk usage high ({percent_used:.1f}%)"
    else:
        status, message = HealthStatus.HEALTHY, f"Disk OK ({free_gb:.1f}GB free)"
    return HealthCheck(name="disk", status=status, message=message, details=details)
