"""
Webhook activity log model.

Append-only audit trail: one row per delivery attempt, never updated.
"""
import enum
from datetime import datetime
from sqlalchemy import Boolean, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from hookrelay.models.base import Base, UTCDateTime, UUIDPrimaryKeyMixin, utcnow


class AttemptOutcome(str, enum.Enum):
    """Classified result of a single delivery attempt."""
    SUCCESS = "success"
    HTTP_ERROR = "http_error"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"


class ActivityLogEntry(UUIDPrimaryKeyMixin, Base):
    """Record of one delivery attempt for a retry task."""
    __tablename__ = "webhook_activity_log"
    __table_args__ = (
        Index("ix_webhook_activity_log_task_attempt", "task_id", "attempt_number"),
        Index("ix_webhook_activity_log_user_triggered", "user_id", "triggered_at"),
    )

    task_id: Mapped[str] = mapped_column(String(36), nullable=False)
    webhook_config_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    clinic_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    webhook_name: Mapped[str] = mapped_column(String(255), nullable=False)
    trigger_type: Mapped[str] = mapped_column(String(100), nullable=False)
    webhook_url: Mapped[str] = mapped_column(Text, nullable=False)
    request_payload: Mapped[str] = mapped_column(Text, nullable=False)

    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    abandoned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    response_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    triggered_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    def __repr__(self):
        return (
            f"<ActivityLogEntry(task_id={self.task_id}, attempt={self.attempt_number}, "
            f"outcome={self.outcome}, abandoned={self.abandoned})>"
        )
