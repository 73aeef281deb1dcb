from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, CheckConstraint, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ga4_relay.db.base_class import Base, BigIntId, utcnow


class MonitorStatus(str, Enum):
    ALLOWED = "allowed"
    DENIED = "denied"
    BOT_DETECTED = "bot_detected"
    ERROR = "error"


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_QUEUE_STATUSES = (QueueStatus.COMPLETED.value, QueueStatus.FAILED.value)
TRANSMISSION_METHODS = ("cloudflare", "ga4_direct")


class GA4Event(Base):
    __tablename__ = "ga4_events"
    __table_args__ = (
        CheckConstraint(
            "monitor_status in ('allowed','denied','bot_detected','error')",
            name="ck_ga4_events_monitor_status",
        ),
        CheckConstraint(
            "queue_status is null or queue_status in ('pending','processing','completed','failed')",
            name="ck_ga4_events_queue_status",
        ),
        # queued iff admitted
        CheckConstraint(
            "(monitor_status = 'allowed' and queue_status is not null) "
            "or (monitor_status <> 'allowed' and queue_status is null)",
            name="ck_ga4_events_queue_admitted",
        ),
        Index("ix_ga4_events_queue_created", "queue_status", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    event_name: Mapped[str] = mapped_column(String(255), default="", nullable=False, index=True)
    monitor_status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    queue_status: Mapped[str | None] = mapped_column(String(20), nullable=True)

    original_payload: Mapped[str | None] = mapped_column(Text, nullable=True)
    original_headers: Mapped[str | None] = mapped_column(Text, nullable=True)
    final_payload: Mapped[str | None] = mapped_column(Text, nullable=True)
    final_headers: Mapped[str | None] = mapped_column(Text, nullable=True)
    transmission_method: Mapped[str | None] = mapped_column(String(20), nullable=True)
    was_originally_encrypted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    final_payload_encrypted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True, index=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    url: Mapped[str | None] = mapped_column(Text, nullable=True)
    referrer: Mapped[str | None] = mapped_column(Text, nullable=True)
    consent_given: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    batch_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<GA4Event id={self.id} name={self.event_name!r} monitor={self.monitor_status} queue={self.queue_status}>"


class JobLease(Base):
    """Named lease that keeps two batch runs from working the queue at once."""

    __tablename__ = "ga4_job_leases"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)
    holder: Mapped[str] = mapped_column(String(100), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
