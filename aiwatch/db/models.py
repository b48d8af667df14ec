from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models."""


class AIRequestLog(Base):
    """Terminal record of one AI request, written once on completion.

    Schema:
    - request_id: Caller-supplied request ID (unique)
    - service_type: guidance, mediation, cultural-adaptation or translation
    - start_time / end_time: UTC wall clock of the tracked call
    - duration_ms: Wall-clock duration in milliseconds
    - status: success, error or timeout (pending rows are never written)
    - accuracy / confidence: Optional scores in [0, 1]
    - token_usage: {"prompt": int, "completion": int, "total": int}
    - error_details: Error message for failed or timed-out calls
    - metadata: Caller-supplied context (column name "metadata")

    Rows are immutable: inserted once, never updated.
    """

    __tablename__ = "ai_request_logs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    request_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    service_type: Mapped[str] = mapped_column(String(50), nullable=False)
    jurisdiction: Mapped[str | None] = mapped_column(String(100), nullable=True)
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    accuracy: Mapped[float | None] = mapped_column(Float, nullable=True)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    token_usage: Mapped[dict | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    error_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    request_metadata: Mapped[dict | None] = mapped_column("metadata", JSON(none_as_null=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index("idx_ai_request_logs_service_type", "service_type"),
        Index("idx_ai_request_logs_created_at", "created_at"),
        Index("idx_ai_request_logs_status", "status"),
        Index("idx_ai_request_logs_jurisdiction", "jurisdiction"),
    )


class AIPerformanceAlert(Base):
    """Threshold alert raised for a completed AI request.

    Write-once. The acknowledged columns are owned by the admin surface
    and are never touched by the monitor.
    """

    __tablename__ = "ai_performance_alerts"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    alert_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    details: Mapped[dict] = mapped_column(JSON, nullable=False)
    acknowledged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    acknowledged_by: Mapped[str | None] = mapped_column(String, nullable=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc), index=True)
