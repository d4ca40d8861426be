"""
Deal API routes.

Provides deal registration (with WhatsApp notifications) and lookup.
"""
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic.alias_generators import to_camel

from polytrade.dependencies.services import get_deal_service, get_outbox_service
from polytrade.models.message import MessageOutbox
from polytrade.schemas.deal import DealCreateRequest, DealData, DealValidationError
from polytrade.services.deal_service import DealService
from polytrade.services.outbox_service import OutboxService


router = APIRouter(prefix="/api/deals", tags=["deals"])


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _camel_keys(data: dict) -> dict:
    return {to_camel(key): value for key, value in data.items()}


def serialize_message(message: MessageOutbox) -> dict:
    """Outbox row as returned by the API."""
    return {
        "id": message.id,
        "role": message.recipient_role.value,
        "recipient": message.recipient_phone,
        "status": message.status.value,
        "attempts": message.attempts,
        "maxAttempts": message.max_attempts,
        "errorType": message.error_type,
        "errorMessage": message.error_message,
        "externalMessageId": message.external_message_id,
        "responseTimeMs": message.response_time_ms,
        "waitTimeMs": message.wait_time_ms,
        "createdAt": message.created_at.isoformat() if message.created_at else None,
        "sentAt": message.sent_at.isoformat() if message.sent_at else None,
        "nextRetryAt": message.next_retry_at.isoformat() if message.next_retry_at else None,
    }


@router.post("", response_model=dict)
async def create_deal(
    request: DealCreateRequest,
    deal_service: DealService = Depends(get_deal_service),
):
    """Register a deal and notify the configured recipients."""
    try:
        result = await deal_service.create_deal(request)
    except DealValidationError as e:
        return JSONResponse(
            status_code=400,
            content={
                "error": "Validation failed",
                "validationErrors": e.errors,
                "fields": e.fields,
            },
        )

    return {
        "success": True,
        "data": {
            "dealId": result.deal_id,
            "deal": result.deal.model_dump(mode="json", by_alias=True),
            "metrics": _camel_keys(result.metrics),
            "whatsapp": result.notification_result.to_dict(),
        },
        "timestamp": _timestamp(),
    }


@router.get("", response_model=dict)
async def describe_deal_endpoint():
    """Describe the deal registration endpoint."""
    return {
        "endpoint": "/api/deals",
        "method": "POST",
        "description": "Create a new deal with integrated WhatsApp notifications",
        "requiredFields": [
            "saleParty",
            "quantitySold",
            "saleRate",
            "deliveryTerms",
            "productCode",
            "materialSource",
        ],
        "conditionalFields": {
            'materialSource === "new-material"': [
                "purchaseParty",
                "quantityPurchased",
                "purchaseRate",
            ]
        },
        "optionalFields": [
            "date",
            "saleComments",
            "warehouseLocation",
            "purchaseComments",
            "finalComments",
        ],
        "example": {
            "saleParty": "Customer Company Ltd",
            "quantitySold": 1000,
            "saleRate": 85,
            "deliveryTerms": "delivered",
            "productCode": "PP-001",
            "materialSource": "new-material",
            "purchaseParty": "Supplier Industries",
            "quantityPurchased": 1000,
            "purchaseRate": 80,
            "saleComments": "Urgent delivery required",
            "finalComments": "First time customer",
        },
    }


@router.get("/{deal_id}", response_model=dict)
async def get_deal(
    deal_id: str,
    deal_service: DealService = Depends(get_deal_service),
    outbox_service: OutboxService = Depends(get_outbox_service),
):
    """Get a deal with the delivery state of its notifications."""
    deal = await deal_service.get_deal(deal_id)

    if not deal:
        raise HTTPException(
            status_code=404,
            detail="Deal not found"
        )

    messages = await outbox_service.get_messages_for_deal(deal_id)

    return {
        "deal": DealData.from_model(deal).model_dump(mode="json", by_alias=True),
        "metrics": _camel_keys(deal_service.calculate_deal_metrics(DealData.from_model(deal))),
        "messages": [serialize_message(message) for message in messages],
    }
