"""AI request monitoring data contracts (single source of truth)."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any, Literal


class ServiceType(StrEnum):
    """AI-backed product surfaces that are tracked separately."""

    GUIDANCE = "guidance"
    MEDIATION = "mediation"
    CULTURAL_ADAPTATION = "cultural-adaptation"
    TRANSLATION = "translation"


class RequestStatus(StrEnum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self is not RequestStatus.PENDING


AlertSeverity = Literal["warning", "critical"]
Timeframe = Literal["1h", "24h", "7d", "30d"]

TIMEFRAME_WINDOWS: dict[str, timedelta] = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}


@dataclass(frozen=True)
class TokenUsage:
    prompt: int
    completion: int
    total: int

    @classmethod
    def from_counts(cls, prompt: int, completion: int) -> TokenUsage:
        return cls(prompt=prompt, completion=completion, total=prompt + completion)

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class RequestMetric:
    """One tracked AI request.

    Pending records live in the tracker's active set. Terminal records are
    new frozen instances built by the tracker's single transition function.
    """

    request_id: str
    service_type: ServiceType
    jurisdiction: str
    start_time: datetime
    status: RequestStatus = RequestStatus.PENDING
    end_time: datetime | None = None
    duration: float | None = None  # seconds
    accuracy: float | None = None
    confidence: float | None = None
    token_usage: TokenUsage | None = None
    error_details: str | None = None
    metadata: dict[str, Any] | None = None

    @property
    def duration_ms(self) -> int | None:
        if self.duration is None:
            return None
        return round(self.duration * 1000)


@dataclass
class RollingAggregate:
    """Cache-resident running statistics for one service type."""

    total_requests: int = 0
    successful_requests: int = 0
    average_response_time: float = 0.0  # seconds
    average_accuracy: float = 0.0
    last_updated: float = 0.0  # unix timestamp

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RollingAggregate:
        return cls(
            total_requests=int(data.get("total_requests", 0)),
            successful_requests=int(data.get("successful_requests", 0)),
            average_response_time=float(data.get("average_response_time", 0.0)),
            average_accuracy=float(data.get("average_accuracy", 0.0)),
            last_updated=float(data.get("last_updated", 0.0)),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class AlertRecord:
    alert_type: str
    severity: AlertSeverity
    details: dict[str, Any]
    created_at: datetime


@dataclass(frozen=True)
class PerformanceSummary:
    """Durable-store rollup for a time window."""

    total_requests: int
    successful_requests: int
    failed_requests: int
    timeout_requests: int
    success_rate: float  # percent
    average_duration_ms: float
    p95_duration_ms: float
    average_accuracy: float
    average_confidence: float
    total_tokens: int
    timeframe: str
    service_type: str | None = None
    jurisdiction: str | None = None
    generated_at: datetime | None = field(default=None, compare=False)
