"""
Retry task model.

One row per outstanding (or finished) webhook delivery obligation.
Only the retry scheduler mutates a task after it has been enqueued.
"""
import enum
from datetime import datetime
from sqlalchemy import CheckConstraint, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from hookrelay.models.base import Base, TimestampMixin, UTCDateTime, UUIDPrimaryKeyMixin


class TaskStatus(str, enum.Enum):
    """Retry task status enum."""
    PENDING = "pending"
    CLAIMED = "claimed"
    SUCCEEDED = "succeeded"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.SUCCEEDED, TaskStatus.ABANDONED)


class RetryTask(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """
    Pending or historical delivery of a single webhook event.

    webhook_url, request_payload, webhook_name, trigger_type and max_retries
    are fixed at enqueue time. request_payload holds the serialized body so
    every attempt sends the same bytes.
    """
    __tablename__ = "webhook_retry_queue"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'claimed', 'succeeded', 'abandoned')",
            name="ck_webhook_retry_queue_status",
        ),
        CheckConstraint("max_retries >= 1", name="ck_webhook_retry_queue_max_retries_positive"),
        CheckConstraint(
            "retry_count >= 0 AND retry_count <= max_retries",
            name="ck_webhook_retry_queue_retry_count_bounded",
        ),
        Index("ix_webhook_retry_queue_status_next_attempt", "status", "next_attempt_at"),
        Index("ix_webhook_retry_queue_user_created", "user_id", "created_at"),
    )

    webhook_config_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    webhook_name: Mapped[str] = mapped_column(String(255), nullable=False)
    trigger_type: Mapped[str] = mapped_column(String(100), nullable=False)
    webhook_url: Mapped[str] = mapped_column(Text, nullable=False)
    request_payload: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=TaskStatus.PENDING.value,
        server_default=TaskStatus.PENDING.value,
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3, server_default="3")
    next_attempt_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Claim bookkeeping: claim_version is bumped by every claim and fences outcome updates
    claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    claim_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    # Owner context, passed through for log correlation only
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    clinic_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    @property
    def task_status(self) -> TaskStatus:
        return TaskStatus(self.status)

    def log_context(self) -> dict:
        return {
            "task_id": self.id,
            "webhook_name": self.webhook_name,
            "trigger_type": self.trigger_type,
            "user_id": self.user_id,
            "clinic_id": self.clinic_id,
        }

    def __repr__(self):
        return (
            f"<RetryTask(id={self.id}, webhook={self.webhook_name}, status={self.status}, "
            f"retry_count={self.retry_count}/{self.max_retries})>"
        )
