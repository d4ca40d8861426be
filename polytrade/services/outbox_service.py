"""
Message outbox service.

Persists one row per deal and recipient role and moves it through
pending -> sending -> sent | failed | dead_letter as delivery attempts
complete.
"""
import asyncio
from datetime import datetime, timedelta

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from polytrade.config import Settings
from polytrade.models.base import utc_now
from polytrade.models.message import MessageOutbox, MessageStatus, RecipientRole, SUCCESS_STATUSES
from polytrade.services.messaging_errors import (
    MessagingError,
    RateLimitError,
    ServiceUnavailableError,
    classify_error,
)
from polytrade.services.whatsapp_service import SendMessageResult, WhatsAppService

logger = structlog.get_logger()


class OutboxService:
    """Service for tracking outbound WhatsApp messages."""

    def __init__(self, db: AsyncSession, config: Settings):
        self.db = db
        self.config = config

    async def create_for_deal(
        self,
        deal_id: str,
        messages: dict[RecipientRole, str],
        recipients: dict[str, str],
    ) -> list[MessageOutbox]:
        """
        Insert a pending row for each role that has a configured phone.

        Args:
            deal_id: Deal the messages belong to
            messages: Rendered text keyed by role
            recipients: Phone numbers keyed by role value

        Returns:
            The new rows, in role order
        """
        rows = []
        for role, text in messages.items():
            phone = recipients.get(role.value)
            if not phone:
                continue
            rows.append(
                MessageOutbox(
                    deal_id=deal_id,
                    recipient_phone=phone,
                    recipient_role=role,
                    message_text=text,
                    status=MessageStatus.PENDING,
                    attempts=0,
                    max_attempts=self.config.max_attempts,
                )
            )

        self.db.add_all(rows)
        await self.db.commit()
        return rows

    async def mark_sending(self, message: MessageOutbox) -> MessageOutbox:
        """Claim a message for a delivery attempt."""
        message.status = MessageStatus.SENDING
        message.attempts += 1
        await self.db.commit()
        return message

    async def record_result(self, message: MessageOutbox, result: SendMessageResult) -> MessageOutbox:
        """
        Apply the outcome of one delivery attempt.

        Retryable failures with attempts left are scheduled for retry;
        everything else that failed is dead-lettered.
        """
        now = utc_now()
        message.response_time_ms = result.response_time_ms
        message.wait_time_ms = result.wait_time_ms

        if result.success:
            message.status = MessageStatus.SENT
            message.sent_at = now
            message.external_message_id = result.external_message_id
            message.next_retry_at = None
            await self.db.commit()
            return message

        error = result.error or classify_error(RuntimeError("Delivery failed without an error"))
        message.error_type = error.type.value
        message.error_message = error.message
        message.error_details = error.to_dict()

        if not error.retryable or message.attempts >= message.max_attempts:
            message.status = MessageStatus.DEAD_LETTER
            message.next_retry_at = None
            logger.warning(
                "outbox_message_dead_lettered",
                message_id=message.id,
                deal_id=message.deal_id,
                role=message.recipient_role.value,
                attempts=message.attempts,
                error_type=error.type.value,
            )
        else:
            message.status = MessageStatus.FAILED
            message.next_retry_at = self.next_retry_time(message.attempts, error, now)
            logger.info(
                "outbox_message_retry_scheduled",
                message_id=message.id,
                deal_id=message.deal_id,
                role=message.recipient_role.value,
                attempts=message.attempts,
                next_retry_at=message.next_retry_at.isoformat(),
            )

        await self.db.commit()
        return message

    def next_retry_time(self, attempt: int, error: MessagingError, now: datetime) -> datetime:
        """When a failed attempt should be retried."""
        if isinstance(error, RateLimitError) and error.retry_after is not None:
            return now + timedelta(seconds=error.retry_after)

        if isinstance(error, ServiceUnavailableError) and error.next_attempt_at is not None:
            return max(now, error.next_attempt_at)

        delays = self.config.retry_delays_ms
        delay_ms = delays[min(max(attempt, 1), len(delays)) - 1]
        return now + timedelta(milliseconds=delay_ms)

    async def get_messages_pending_retry(self, now: datetime | None = None) -> list[MessageOutbox]:
        """Failed messages with attempts left whose retry time has come."""
        now = now or utc_now()
        stmt = (
            select(MessageOutbox)
            .where(
                MessageOutbox.status == MessageStatus.FAILED,
                MessageOutbox.attempts < MessageOutbox.max_attempts,
                MessageOutbox.next_retry_at <= now,
            )
            .order_by(MessageOutbox.next_retry_at.asc())
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def retry_due_messages(self, service: WhatsAppService, now: datetime | None = None) -> dict:
        """
        Re-send every message that is due for retry.

        Sends run concurrently; the session is only touched before and after.
        """
        due = await self.get_messages_pending_retry(now)
        if not due:
            return {"processed": 0, "sent": 0, "failed": 0, "dead_letter": 0}

        for message in due:
            await self.mark_sending(message)

        outcomes = await asyncio.gather(
            *(
                service.send_message(
                    message.recipient_phone,
                    message.message_text,
                    message.deal_id,
                    message.recipient_role,
                )
                for message in due
            ),
            return_exceptions=True,
        )

        for message, outcome in zip(due, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                outcome = SendMessageResult(
                    success=False,
                    recipient=message.recipient_phone,
                    role=message.recipient_role,
                    error=classify_error(outcome, message.deal_id, message.recipient_phone),
                )
            await self.record_result(message, outcome)

        summary = {
            "processed": len(due),
            "sent": sum(1 for m in due if m.status == MessageStatus.SENT),
            "failed": sum(1 for m in due if m.status == MessageStatus.FAILED),
            "dead_letter": sum(1 for m in due if m.status == MessageStatus.DEAD_LETTER),
        }
        logger.info("outbox_retry_completed", **summary)
        return summary

    async def get_statistics(self, hours_back: int = 24) -> dict:
        """Delivery statistics for messages created in the last `hours_back` hours."""
        since = utc_now() - timedelta(hours=hours_back)
        window = MessageOutbox.created_at >= since

        status_rows = await self.db.execute(
            select(MessageOutbox.status, func.count()).where(window).group_by(MessageOutbox.status)
        )
        by_status = {status: count for status, count in status_rows.all()}

        total = sum(by_status.values())
        successful = sum(by_status.get(status, 0) for status in SUCCESS_STATUSES)
        pending = by_status.get(MessageStatus.PENDING, 0) + by_status.get(MessageStatus.SENDING, 0)

        timing = await self.db.execute(
            select(func.avg(MessageOutbox.response_time_ms), func.sum(MessageOutbox.wait_time_ms)).where(window)
        )
        avg_response, total_wait = timing.one()

        error_rows = await self.db.execute(
            select(MessageOutbox.error_type, func.count())
            .where(window, MessageOutbox.error_type.is_not(None))
            .group_by(MessageOutbox.error_type)
        )

        return {
            "hours_back": hours_back,
            "total_messages": total,
            "successful_messages": successful,
            "failed_messages": by_status.get(MessageStatus.FAILED, 0),
            "pending_messages": pending,
            "dead_letter_messages": by_status.get(MessageStatus.DEAD_LETTER, 0),
            "success_rate": round(successful / total * 100, 2) if total else 0.0,
            "avg_response_time_ms": round(float(avg_response), 2) if avg_response is not None else None,
            "total_wait_time_ms": int(total_wait or 0),
            "error_breakdown": {error_type: count for error_type, count in error_rows.all()},
        }

    async def get_last_successful_message(self) -> MessageOutbox | None:
        stmt = (
            select(MessageOutbox)
            .where(MessageOutbox.status.in_(SUCCESS_STATUSES), MessageOutbox.sent_at.is_not(None))
            .order_by(MessageOutbox.sent_at.desc())
            .limit(1)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_messages_for_deal(self, deal_id: str) -> list[MessageOutbox]:
        """All outbox rows for a deal, oldest first."""
        stmt = (
            select(MessageOutbox)
            .where(MessageOutbox.deal_id == deal_id)
            .order_by(MessageOutbox.created_at.asc())
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
