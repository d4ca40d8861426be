"""
Messaging API routes.

Message previews, test sends, service status, configuration checks,
outbox statistics and the retry trigger.
"""
import time
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from polytrade.config import Settings, validate_whatsapp_config
from polytrade.dependencies.services import get_outbox_service, get_settings, get_whatsapp_service
from polytrade.models.message import RecipientRole
from polytrade.schemas.deal import DealData
from polytrade.services.message_templates import generate_message, validate_deal_for_messaging
from polytrade.services.messaging_errors import ErrorType
from polytrade.services.outbox_service import OutboxService
from polytrade.services.whatsapp_service import WhatsAppService


router = APIRouter(prefix="/api/messaging", tags=["messaging"])

AVAILABLE_ROLES = [role.value for role in RecipientRole]

PREVIEW_DEFAULTS = {
    "id": "PREVIEW-001",
    "saleParty": "Sample Customer Ltd",
    "quantitySold": 1000,
    "saleRate": 85,
    "deliveryTerms": "delivered",
    "productCode": "PP-001",
    "product": "Polypropylene",
    "grade": "H110MA",
    "company": "Sample Industries",
    "materialSource": "new-material",
    "purchaseParty": "Sample Supplier",
    "quantityPurchased": 1000,
    "purchaseRate": 80,
}


class PreviewRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    deal_data: Optional[dict] = Field(default=None, alias="dealData")
    role: Optional[str] = None


class SendTestMessageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    recipient: Optional[str] = None
    message: Optional[str] = None
    deal_id: Optional[str] = Field(default=None, alias="dealId")


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_preview_deal(deal_data: dict) -> DealData:
    """Fill in sample values for anything the caller left out."""
    merged = dict(PREVIEW_DEFAULTS)
    merged.update({key: value for key, value in deal_data.items() if value not in (None, "")})
    merged.setdefault("date", datetime.now(timezone.utc).date())
    return DealData.model_validate(merged)


@router.post("/preview", response_model=dict)
async def preview_messages(body: PreviewRequest):
    """Render message previews for one role or for every role."""
    if not body.deal_data:
        return JSONResponse(status_code=400, content={"error": "Deal data is required"})

    try:
        deal = build_preview_deal(body.deal_data)
    except ValidationError as e:
        return JSONResponse(
            status_code=400,
            content={
                "error": "Invalid deal data",
                "validationErrors": [
                    f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()
                ],
            },
        )

    deal_json = deal.model_dump(mode="json", by_alias=True)

    if body.role:
        if body.role not in AVAILABLE_ROLES:
            return JSONResponse(
                status_code=400,
                content={"error": f"Invalid role. Must be one of: {', '.join(AVAILABLE_ROLES)}"},
            )

        try:
            message = generate_message(body.role, deal)
        except ValueError as e:
            return JSONResponse(
                status_code=400,
                content={"error": f"Failed to generate message for role {body.role}: {e}"},
            )

        return {
            "role": body.role,
            "message": message,
            "messageLength": len(message),
            "dealData": deal_json,
            "timestamp": _timestamp(),
        }

    messages = {}
    errors = []
    for role in RecipientRole:
        try:
            message = generate_message(role, deal)
        except ValueError as e:
            errors.append(f"{role.value}: {e}")
            continue
        messages[role.value] = {
            "message": message,
            "messageLength": len(message),
            "preview": message[:100] + ("..." if len(message) > 100 else ""),
        }

    validation_errors = validate_deal_for_messaging(deal)
    lengths = [entry["messageLength"] for entry in messages.values()]

    return {
        "dealData": deal_json,
        "messages": messages,
        "validation": {
            "valid": not validation_errors,
            "errors": validation_errors,
        },
        "errors": errors,
        "statistics": {
            "totalRoles": len(AVAILABLE_ROLES),
            "successfulMessages": len(messages),
            "failedMessages": len(errors),
            "averageMessageLength": sum(lengths) / len(lengths) if lengths else 0,
        },
        "timestamp": _timestamp(),
    }


@router.post("/test", response_model=dict)
async def send_test_message(
    body: SendTestMessageRequest,
    whatsapp_service: WhatsAppService = Depends(get_whatsapp_service),
):
    """Send a single ad-hoc message, for checking a deployment end to end."""
    if not whatsapp_service.enabled:
        return JSONResponse(status_code=503, content={"error": "WhatsApp messaging is disabled"})

    if not body.recipient or not body.message:
        return JSONResponse(status_code=400, content={"error": "Recipient and message are required"})

    result = await whatsapp_service.send_message(body.recipient, body.message, body.deal_id or "test")

    if result.success:
        return {
            "success": True,
            "messageId": result.message_id,
            "externalMessageId": result.external_message_id,
            "recipient": result.recipient,
            "timestamp": _timestamp(),
        }

    status_code = 400 if result.error.type == ErrorType.VALIDATION_ERROR else 502
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": result.error.message,
            "errorType": result.error.type.value,
            "recipient": result.recipient,
        },
    )


@router.get("/status", response_model=dict)
async def messaging_status(
    request: Request,
    whatsapp_service: WhatsAppService = Depends(get_whatsapp_service),
    outbox_service: OutboxService = Depends(get_outbox_service),
):
    """Health of the WhatsApp integration: connectivity, rate limiting and breaker."""
    if not whatsapp_service.enabled:
        return {
            "service": "whatsapp",
            "status": "disabled",
            "timestamp": _timestamp(),
            "message": "WhatsApp messaging is disabled (FEATURE_WHATSAPP_MESSAGING=false)",
        }

    metrics = whatsapp_service.get_metrics()
    rate_limiter = metrics["rate_limiter"]
    breaker = metrics["circuit_breaker"]
    connectivity = await whatsapp_service.test_connection()

    status = "healthy"
    issues = []

    if not connectivity["success"]:
        status = "down"
        issues.append("API connectivity failed")

    if rate_limiter["utilization"] > 90:
        status = "degraded" if status == "healthy" else status
        issues.append("High rate limit utilization")

    if breaker["state"] != "CLOSED":
        status = "degraded" if status == "healthy" else status
        issues.append(f"Circuit breaker is {breaker['state']}")

    if rate_limiter["utilization"] > 90:
        rate_status = "limited"
    elif rate_limiter["utilization"] > 70:
        rate_status = "warning"
    else:
        rate_status = "ok"

    last_success = await outbox_service.get_last_successful_message()
    started_at = request.app.state.started_at

    content = {
        "service": "whatsapp",
        "status": status,
        "timestamp": _timestamp(),
        "lastSuccessfulMessage": last_success.sent_at.isoformat() if last_success else None,
        "issues": issues,
        "connectivity": {
            "success": connectivity["success"],
            "responseTime": connectivity["response_time_ms"],
            "error": connectivity["error"],
        },
        "rateLimiting": {
            "status": rate_status,
            "utilization": rate_limiter["utilization"],
            "requestsInWindow": rate_limiter["requests_in_window"],
            "maxRequests": rate_limiter["max_requests"],
        },
        "circuitBreaker": {
            "state": breaker["state"],
            "failures": breaker["failures"],
            "threshold": breaker["threshold"],
            "nextAttemptTime": breaker["next_attempt_time"],
        },
        "features": {
            "messagingEnabled": metrics["config"]["messaging_enabled"],
            "rateLimitEnabled": metrics["config"]["rate_limit_enabled"],
            "retryEnabled": metrics["config"]["retry_enabled"],
        },
        "uptime": {
            "startedAt": request.app.state.started_at_iso,
            "uptimeSeconds": round(time.monotonic() - started_at, 1),
        },
    }

    return JSONResponse(status_code=503 if status == "down" else 200, content=content)


@router.get("/validate-config", response_model=dict)
async def validate_config(
    config: Settings = Depends(get_settings),
    whatsapp_service: WhatsAppService = Depends(get_whatsapp_service),
):
    """Validate WhatsApp configuration and, when it looks usable, API connectivity."""
    validation = validate_whatsapp_config(config)

    connectivity = None
    if validation["token_valid"] and validation["phone_number_id_valid"]:
        connectivity = await whatsapp_service.test_connection()

    healthy = (
        validation["token_valid"]
        and validation["phone_number_id_valid"]
        and all(result["valid"] for result in validation["recipients"].values())
        and connectivity is not None
        and connectivity["success"]
    )

    content = {
        "healthy": healthy,
        "timestamp": _timestamp(),
        "configuration": {
            "tokenValid": validation["token_valid"],
            "phoneNumberIdValid": validation["phone_number_id_valid"],
            "recipients": validation["recipients"],
            "errors": validation["errors"],
            "suggestions": validation["suggestions"],
        },
        "connectivity": connectivity,
        "metrics": whatsapp_service.get_metrics(),
        "features": {
            "messagingEnabled": config.FEATURE_WHATSAPP_MESSAGING,
            "rateLimitEnabled": config.WHATSAPP_RATE_LIMIT_ENABLED,
            "retryEnabled": config.WHATSAPP_RETRY_ENABLED,
        },
        "environment": {
            "hasApiToken": bool(config.WHATSAPP_API_TOKEN),
            "hasPhoneNumberId": bool(config.WHATSAPP_PHONE_NUMBER_ID),
            "hasRecipients": {
                role: bool(getattr(config, f"WHATSAPP_PHONE_{role.upper()}"))
                for role in AVAILABLE_ROLES
            },
        },
    }

    return JSONResponse(status_code=200 if healthy else 422, content=content)


@router.get("/statistics", response_model=dict)
async def message_statistics(
    hours_back: int = Query(default=24, ge=1, le=24 * 30),
    outbox_service: OutboxService = Depends(get_outbox_service),
):
    """Outbox delivery statistics for the trailing window."""
    return await outbox_service.get_statistics(hours_back)


@router.post("/retry", response_model=dict)
async def retry_failed_messages(
    whatsapp_service: WhatsAppService = Depends(get_whatsapp_service),
    outbox_service: OutboxService = Depends(get_outbox_service),
):
    """Re-send outbox messages whose retry time has come."""
    if not whatsapp_service.enabled:
        return JSONResponse(status_code=503, content={"error": "WhatsApp messaging is disabled"})

    summary = await outbox_service.retry_due_messages(whatsapp_service)
    return {"success": True, **summary, "timestamp": _timestamp()}
