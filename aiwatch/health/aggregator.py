"""Dependency health rollup.

Database and cache probes run in parallel worker threads, each bounded by its
own timeout. A slow or failing dependency is reported as unhealthy without
delaying or hiding the result of the others.
"""

from __future__ import annotations

import asyncio
import os
import platform
import sys
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

import psutil
from loguru import logger

HealthStatus = Literal["healthy", "unhealthy"]

MEMORY_UNHEALTHY_PERCENT = 90.0

BYTES_PER_MB = 1024 * 1024


@dataclass(frozen=True)
class DependencyHealth:
    status: HealthStatus
    response_time_ms: float | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.status == "healthy":
            return {"status": self.status, "response_time_ms": self.response_time_ms}
        return {"status": self.status, "error": self.error}


@dataclass(frozen=True)
class MemoryUsage:
    used_mb: float
    total_mb: float
    percentage: float


@dataclass(frozen=True)
class HealthSnapshot:
    """Point-in-time health report. Built fresh on every request."""

    status: HealthStatus
    timestamp: datetime
    uptime: float  # seconds
    version: str
    database: DependencyHealth
    redis: DependencyHealth
    memory: MemoryUsage | None
    cpu_usage: float | None
    instance: str
    details: dict[str, Any] | None = field(default=None)

    @property
    def is_healthy(self) -> bool:
        return self.status == "healthy"

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
            "uptime": self.uptime,
            "version": self.version,
            "services": {
                "database": self.database.to_dict(),
                "redis": self.redis.to_dict(),
                "memory": asdict(self.memory) if self.memory else {"error": "unavailable"},
                "cpu": {"usage": self.cpu_usage},
            },
            "instance": self.instance,
        }
        if self.details is not None:
            body["details"] = self.details
        return body


class HealthAggregator:
    """Runs dependency probes and rolls them into health, readiness and liveness."""

    def __init__(
        self,
        database_probe: Callable[[], Any],
        cache_probe: Callable[[], Any],
        timeout_seconds: float = 5.0,
        version: str = "1.0.0",
        instance_id: str = "unknown",
        environment: str = "development",
        memory_limit_mb: float | None = None,
        details_provider: Callable[[], dict[str, Any]] | None = None,
        started_at: float | None = None,
    ) -> None:
        self.database_probe = database_probe
        self.cache_probe = cache_probe
        self.timeout_seconds = timeout_seconds
        self.version = version
        self.instance_id = instance_id
        self.environment = environment
        self.memory_limit_mb = memory_limit_mb
        self.details_provider = details_provider
        self.started_at = started_at if started_at is not None else time.time()
        self._process = psutil.Process()

    def uptime(self) -> float:
        return time.time() - self.started_at

    async def _run_probe(self, name: str, probe: Callable[[], Any]) -> DependencyHealth:
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(asyncio.to_thread(probe), timeout=self.timeout_seconds)
        except TimeoutError:
            logger.warning(f"[HEALTH] {name} check timed out after {self.timeout_seconds}s")
            return DependencyHealth(status="unhealthy", error=f"Timed out after {self.timeout_seconds}s")
        except Exception as e:
            logger.warning(f"[HEALTH] {name} check failed: {e}")
            return DependencyHealth(status="unhealthy", error=str(e) or type(e).__name__)

        # Probes may signal failure by returning False instead of raising
        if result is False:
            return DependencyHealth(status="unhealthy", error=f"{name} did not respond")
        elapsed_ms = (time.perf_counter() - started) * 1000
        return DependencyHealth(status="healthy", response_time_ms=round(elapsed_ms, 2))

    async def check_dependencies(self) -> tuple[DependencyHealth, DependencyHealth]:
        database, cache = await asyncio.gather(
            self._run_probe("database", self.database_probe),
            self._run_probe("redis", self.cache_probe),
        )
        return database, cache

    def memory_usage(self) -> MemoryUsage | None:
        """Process RSS against the configured limit (or total system memory)."""
        try:
            rss = self._process.memory_info().rss
            total = self.memory_limit_mb * BYTES_PER_MB if self.memory_limit_mb else psutil.virtual_memory().total
        except Exception as e:
            logger.warning(f"[HEALTH] Failed to read memory usage: {e}")
            return None
        return MemoryUsage(
            used_mb=round(rss / BYTES_PER_MB, 2),
            total_mb=round(total / BYTES_PER_MB, 2),
            percentage=round(rss / total * 100, 2),
        )

    def cpu_usage(self) -> float | None:
        try:
            return self._process.cpu_percent(interval=None)
        except Exception as e:
            logger.warning(f"[HEALTH] Failed to read CPU usage: {e}")
            return None

    def _details(self) -> dict[str, Any]:
        details: dict[str, Any] = {
            "process": {
                "pid": os.getpid(),
                "python_version": sys.version.split()[0],
                "platform": platform.platform(),
                "threads": self._process.num_threads(),
            },
            "environment": {
                "environment": self.environment,
                "instance": self.instance_id,
            },
        }
        if self.details_provider is not None:
            try:
                details["connections"] = self.details_provider()
            except Exception as e:
                logger.warning(f"[HEALTH] Failed to collect connection details: {e}")
                details["connections"] = {"error": str(e)}
        return details

    async def snapshot(self, detailed: bool = False) -> HealthSnapshot:
        """Full health report.

        Healthy iff both dependency probes succeed and memory usage is below
        90% of the limit. An unreadable memory figure does not flip status.
        """
        database, cache = await self.check_dependencies()
        memory = self.memory_usage()

        healthy = database.status == "healthy" and cache.status == "healthy"
        if memory is not None and memory.percentage >= MEMORY_UNHEALTHY_PERCENT:
            logger.warning(f"[HEALTH] Memory usage at {memory.percentage}% of limit")
            healthy = False

        return HealthSnapshot(
            status="healthy" if healthy else "unhealthy",
            timestamp=datetime.now(timezone.utc),
            uptime=self.uptime(),
            version=self.version,
            database=database,
            redis=cache,
            memory=memory,
            cpu_usage=self.cpu_usage(),
            instance=self.instance_id,
            details=self._details() if detailed else None,
        )

    async def readiness(self) -> bool:
        """Ready iff every dependency probe is healthy."""
        database, cache = await self.check_dependencies()
        return database.status == "healthy" and cache.status == "healthy"

    def liveness(self) -> dict[str, Any]:
        """Process is up. Never touches dependencies."""
        return {
            "status": "alive",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime": self.uptime(),
        }
