"""
Deal service.

Registers deals and fans out WhatsApp notifications to the configured
recipients. Notification problems never fail deal registration.
"""
import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import date

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from polytrade.config import Settings
from polytrade.models.deal import Deal, MaterialSource
from polytrade.routes.metrics import track_deal_created
from polytrade.schemas.deal import DealCreateRequest, DealData
from polytrade.sentry_config import capture_exception
from polytrade.services import message_templates
from polytrade.services.outbox_service import OutboxService
from polytrade.services.whatsapp_service import BulkSendResult, WhatsAppService

logger = structlog.get_logger()

DEAL_ID_ALPHABET = string.ascii_uppercase + string.digits
PURCHASE_FIELDS = ("purchase_party", "quantity_purchased", "purchase_rate")


@dataclass
class NotificationSummary:
    """What happened to a deal's WhatsApp notifications."""
    enabled: bool
    success: bool = False
    success_count: int = 0
    failure_count: int = 0
    errors: list[dict] = field(default_factory=list)

    @classmethod
    def disabled(cls) -> "NotificationSummary":
        return cls(enabled=False)

    @classmethod
    def from_bulk(cls, bulk: BulkSendResult) -> "NotificationSummary":
        return cls(
            enabled=True,
            success=bulk.success_count > 0,
            success_count=bulk.success_count,
            failure_count=bulk.failure_count,
            errors=[
                {
                    "recipient": result.recipient or "unknown",
                    "role": result.role.value if result.role else "unknown",
                    "error": result.error.message if result.error else "Unknown error",
                    "error_type": result.error.type.value if result.error else None,
                }
                for result in bulk.results
                if not result.success
            ],
        )

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "success": self.success,
            "successCount": self.success_count,
            "failureCount": self.failure_count,
            "errors": [
                {
                    "recipient": error["recipient"],
                    "role": error["role"],
                    "error": error["error"],
                    "errorType": error["error_type"],
                }
                for error in self.errors
            ],
        }


@dataclass
class CreateDealResult:
    deal_id: str
    deal: DealData
    metrics: dict
    notification_result: NotificationSummary


class DealService:
    """Service for registering deals."""

    def __init__(self, db: AsyncSession, whatsapp_service: WhatsAppService, config: Settings):
        self.db = db
        self.whatsapp_service = whatsapp_service
        self.config = config
        self.outbox = OutboxService(db, config)

    @staticmethod
    def generate_deal_id() -> str:
        """DEAL-<epoch ms>-<6 uppercase alphanumerics>"""
        suffix = "".join(secrets.choice(DEAL_ID_ALPHABET) for _ in range(6))
        return f"DEAL-{int(time.time() * 1000)}-{suffix}"

    @staticmethod
    def build_deal(request: DealCreateRequest, deal_id: str) -> DealData:
        """
        Turn a registration request into a deal record.

        The date defaults to today and purchase fields are dropped for
        inventory deals.
        """
        data = request.model_dump()
        data["id"] = deal_id
        if data.get("deal_date") is None:
            data["deal_date"] = date.today()

        if data.get("material_source") != MaterialSource.NEW_MATERIAL:
            for name in PURCHASE_FIELDS:
                data[name] = None

        # Blank comments are stored as missing
        for name in ("sale_comments", "warehouse_location", "purchase_comments", "final_comments"):
            if not data.get(name):
                data[name] = None

        return DealData(**data)

    def validate_deal_data(self, request: DealCreateRequest) -> list[str]:
        """Problems with a request, without registering it."""
        return message_templates.validate_deal_for_messaging(self.build_deal(request, "DEAL-VALIDATION"))

    @staticmethod
    def calculate_deal_metrics(deal: DealData) -> dict:
        return message_templates.calculate_deal_metrics(deal)

    async def create_deal(self, request: DealCreateRequest) -> CreateDealResult:
        """
        Validate, persist and notify.

        Raises:
            DealValidationError: if required fields are missing or invalid
        """
        deal_id = self.generate_deal_id()
        deal = self.build_deal(request, deal_id)
        message_templates.ensure_valid_deal(deal)

        self.db.add(Deal(**deal.model_dump()))
        await self.db.commit()

        track_deal_created(deal.material_source.value)
        logger.info(
            "deal_created",
            deal_id=deal_id,
            customer=deal.sale_party,
            material_source=deal.material_source.value,
        )

        notification_result = await self._notify(deal)

        return CreateDealResult(
            deal_id=deal_id,
            deal=deal,
            metrics=self.calculate_deal_metrics(deal),
            notification_result=notification_result,
        )

    async def _notify(self, deal: DealData) -> NotificationSummary:
        if not self.config.FEATURE_WHATSAPP_MESSAGING:
            logger.info("deal_notifications_skipped", deal_id=deal.id, reason="messaging disabled")
            return NotificationSummary.disabled()

        try:
            messages = message_templates.generate_all_messages(deal)
            rows = await self.outbox.create_for_deal(deal.id, messages, self.config.whatsapp_recipients)
            for row in rows:
                await self.outbox.mark_sending(row)

            bulk = await self.whatsapp_service.send_deal_notifications(deal)

            for row in rows:
                result = bulk.result_for(row.recipient_role)
                if result is not None:
                    await self.outbox.record_result(row, result)

            return NotificationSummary.from_bulk(bulk)
        except Exception as e:
            logger.error("deal_notifications_failed", deal_id=deal.id, error=str(e), exc_info=True)
            capture_exception(e, deal_id=deal.id)
            await self.db.rollback()

            return NotificationSummary(
                enabled=True,
                success=False,
                success_count=0,
                failure_count=len(self.config.whatsapp_recipients),
                errors=[{
                    "recipient": "all",
                    "role": "all",
                    "error": str(e) or "Unknown WhatsApp error",
                    "error_type": "UNKNOWN_ERROR",
                }],
            )

    async def get_deal(self, deal_id: str) -> Deal | None:
        """Get deal by ID."""
        stmt = select(Deal).where(Deal.id == deal_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()
