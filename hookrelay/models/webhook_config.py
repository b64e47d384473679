"""
Webhook destination configuration.

Owned by the surrounding application; the retry engine only records
when a destination last received a successful delivery.
"""
from datetime import datetime
from sqlalchemy import Boolean, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from hookrelay.models.base import Base, TimestampMixin, UTCDateTime, UUIDPrimaryKeyMixin


class WebhookConfig(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Configured webhook destination."""
    __tablename__ = "webhook_configs"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    clinic_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    last_triggered_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self):
        return f"<WebhookConfig(id={self.id}, name={self.name})>"
