"""
Service dependencies for FastAPI routes.

Long-lived objects are built once in the app lifespan and kept on
app.state; request-scoped services are assembled here around them.
"""
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from polytrade.config import Settings
from polytrade.database import get_db
from polytrade.services.deal_service import DealService
from polytrade.services.outbox_service import OutboxService
from polytrade.services.whatsapp_service import WhatsAppService


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_whatsapp_service(request: Request) -> WhatsAppService:
    return request.app.state.whatsapp_service


async def get_deal_service(
    db: AsyncSession = Depends(get_db),
    whatsapp_service: WhatsAppService = Depends(get_whatsapp_service),
    config: Settings = Depends(get_settings),
) -> DealService:
    return DealService(db, whatsapp_service, config)


async def get_outbox_service(
    db: AsyncSession = Depends(get_db),
    config: Settings = Depends(get_settings),
) -> OutboxService:
    return OutboxService(db, config)
