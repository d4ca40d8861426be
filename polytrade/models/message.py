"""
Message outbox model.

Tracks every outbound WhatsApp notification, one row per deal and recipient role.
"""
import uuid
import enum
from datetime import datetime
from sqlalchemy import String, Text, Integer, DateTime, JSON, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from polytrade.models.base import Base, TimestampMixin


class RecipientRole(str, enum.Enum):
    """Internal stakeholder categories that receive deal notifications."""
    ACCOUNTS = "accounts"
    LOGISTICS = "logistics"
    BOSS1 = "boss1"
    BOSSOG = "bossog"


class MessageStatus(str, enum.Enum):
    """Outbox message status enum."""
    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


SUCCESS_STATUSES = (MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.READ)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class MessageOutbox(Base, TimestampMixin):
    """
    Outbound message with delivery bookkeeping.

    Status moves pending -> sending -> sent | failed, and failed messages
    either get a next_retry_at or end up in dead_letter.
    """
    __tablename__ = "message_outbox"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )
    deal_id: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    platform: Mapped[str] = mapped_column(String(20), nullable=False, default="whatsapp")
    recipient_phone: Mapped[str] = mapped_column(String(20), nullable=False)
    recipient_role: Mapped[RecipientRole] = mapped_column(
        SQLEnum(RecipientRole, native_enum=False, values_callable=_enum_values),
        nullable=False
    )
    message_text: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[MessageStatus] = mapped_column(
        SQLEnum(MessageStatus, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=MessageStatus.PENDING,
        index=True
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)

    error_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_details: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    external_message_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    wait_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    def __repr__(self):
        return f"<MessageOutbox(id={self.id}, deal_id={self.deal_id}, role={self.recipient_role}, status={self.status})>"
