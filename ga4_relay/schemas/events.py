from datetime import datetime

from pydantic import BaseModel, ConfigDict


# --- Строки очереди для админки ---
class EventSummary(BaseModel):
    """Row as shown in the admin listing. Payloads stay out, they may be encrypted."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    event_name: str
    monitor_status: str
    queue_status: str | None = None
    transmission_method: str | None = None
    was_originally_encrypted: bool = False
    final_payload_encrypted: bool = False
    retry_count: int = 0
    error_message: str | None = None
    reason: str | None = None
    ip_address: str | None = None
    url: str | None = None
    consent_given: bool | None = None
    batch_size: int | None = None
    processing_time_ms: int | None = None
    created_at: datetime
    processed_at: datetime | None = None


class EventPage(BaseModel):
    items: list[EventSummary]
    total: int
    limit: int
    offset: int


class ReprocessRequest(BaseModel):
    # None: all failed rows
    ids: list[int] | None = None


class CleanupRequest(BaseModel):
    completed_days: int | None = None
    unqueued_days: int | None = None
    max_completed_rows: int | None = None
