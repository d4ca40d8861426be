"""
WhatsApp Service

Sends deal notifications through the Meta WhatsApp Business Cloud API,
guarded by the local rate limiter and circuit breaker.
"""
import asyncio
import re
import time
import uuid
from dataclasses import dataclass, field

import httpx
import structlog

from polytrade.config import Settings
from polytrade.logging_config import get_logger
from polytrade.models.message import RecipientRole
from polytrade.routes.metrics import track_message_failed, track_message_sent
from polytrade.schemas.deal import DealData
from polytrade.sentry_config import capture_exception
from polytrade.services.circuit_breaker import CircuitBreaker
from polytrade.services.message_templates import generate_message
from polytrade.services.messaging_errors import (
    ErrorType,
    MessageValidationError,
    MessagingError,
    classify_error,
    error_from_response,
)
from polytrade.services.rate_limiter import RateLimiter

logger = structlog.get_logger()

MAX_MESSAGE_LENGTH = 4096
PHONE_PATTERN = re.compile(r"\+[0-9]{10,15}")


@dataclass
class SendMessageResult:
    """Outcome of one send to one recipient."""
    success: bool
    recipient: str
    role: RecipientRole | None = None
    message_id: str | None = None
    external_message_id: str | None = None
    error: MessagingError | None = None
    response_time_ms: int = 0
    wait_time_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "recipient": self.recipient,
            "role": self.role.value if self.role else None,
            "message_id": self.message_id,
            "external_message_id": self.external_message_id,
            "error": self.error.to_dict() if self.error else None,
            "response_time_ms": self.response_time_ms,
            "wait_time_ms": self.wait_time_ms,
        }


@dataclass
class BulkSendResult:
    """Aggregate outcome of notifying every configured recipient of a deal."""
    deal_id: str | None
    results: list[SendMessageResult] = field(default_factory=list)

    @property
    def total_attempted(self) -> int:
        return len(self.results)

    @property
    def success_count(self) -> int:
        return sum(1 for result in self.results if result.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for result in self.results if not result.success)

    @property
    def errors(self) -> list[MessagingError]:
        return [result.error for result in self.results if result.error is not None]

    def result_for(self, role: RecipientRole) -> SendMessageResult | None:
        for result in self.results:
            if result.role == role:
                return result
        return None


def validate_message_inputs(phone_number: str, message: str) -> None:
    """Fail fast before any network attempt."""
    if not phone_number or not isinstance(phone_number, str):
        raise MessageValidationError("Phone number is required")

    if not phone_number.startswith("+"):
        raise MessageValidationError("Phone number must start with country code (+)", recipient=phone_number)

    if not PHONE_PATTERN.fullmatch(phone_number):
        raise MessageValidationError(
            "Phone number must be 10-15 digits after country code",
            recipient=phone_number,
        )

    if not message or not isinstance(message, str):
        raise MessageValidationError("Message text is required", recipient=phone_number)

    if len(message) > MAX_MESSAGE_LENGTH:
        raise MessageValidationError(
            f"Message text too long (max {MAX_MESSAGE_LENGTH} characters)",
            recipient=phone_number,
        )


class WhatsAppService:
    """
    Outbound WhatsApp delivery.

    The HTTP client, rate limiter and circuit breaker are created once at
    startup and passed in, so every send in the process shares them.
    """

    def __init__(
        self,
        config: Settings,
        client: httpx.AsyncClient,
        rate_limiter: RateLimiter,
        circuit_breaker: CircuitBreaker,
    ):
        self.config = config
        self.client = client
        self.rate_limiter = rate_limiter
        self.circuit_breaker = circuit_breaker

    @classmethod
    def from_settings(cls, config: Settings, client: httpx.AsyncClient | None = None) -> "WhatsAppService":
        """Build the service and its guards from configuration."""
        if client is None:
            client = httpx.AsyncClient(timeout=config.WHATSAPP_HTTP_TIMEOUT_SECONDS)

        rate_limiter = RateLimiter(
            max_requests=config.WHATSAPP_RATE_LIMIT_MAX_REQUESTS,
            window=config.WHATSAPP_RATE_LIMIT_WINDOW_SECONDS,
            jitter=config.WHATSAPP_RATE_LIMIT_JITTER,
        )
        circuit_breaker = CircuitBreaker(
            failure_threshold=config.WHATSAPP_CIRCUIT_BREAKER_THRESHOLD,
            timeout=config.WHATSAPP_CIRCUIT_BREAKER_TIMEOUT_SECONDS,
            counter_reset_after=config.WHATSAPP_CIRCUIT_BREAKER_COUNTER_RESET,
        )
        return cls(config, client, rate_limiter, circuit_breaker)

    @property
    def messages_url(self) -> str:
        return f"{self.config.WHATSAPP_API_URL.rstrip('/')}/{self.config.WHATSAPP_PHONE_NUMBER_ID}/messages"

    @property
    def enabled(self) -> bool:
        return self.config.FEATURE_WHATSAPP_MESSAGING

    async def send_message(
        self,
        phone_number: str,
        message: str,
        deal_id: str | None = None,
        role: RecipientRole | None = None,
    ) -> SendMessageResult:
        """
        Send a single text message.

        Never raises for delivery problems: failures come back as a result
        carrying a classified MessagingError.
        """
        start_time = time.monotonic()
        wait_time = 0.0
        log = get_logger(deal_id=deal_id, recipient=phone_number, role=role.value if role else None)

        try:
            if not self.enabled:
                raise MessageValidationError("WhatsApp messaging is disabled", deal_id, phone_number)

            validate_message_inputs(phone_number, message)

            if self.config.WHATSAPP_RATE_LIMIT_ENABLED:
                wait_time = await self.rate_limiter.wait_if_needed()

            data = await self.circuit_breaker.execute(
                lambda: self._make_api_call(phone_number, message)
            )
        except Exception as e:
            elapsed = time.monotonic() - start_time
            error = classify_error(e, deal_id, phone_number)

            log.error(
                "whatsapp_message_failed",
                error=error.message,
                error_type=error.type.value,
                response_time_ms=int(elapsed * 1000),
            )
            track_message_failed(role.value if role else "adhoc", error.type.value, elapsed)
            if error.type == ErrorType.UNKNOWN_ERROR:
                capture_exception(e, deal_id=deal_id, role=role.value if role else None)

            return SendMessageResult(
                success=False,
                recipient=phone_number,
                role=role,
                error=error,
                response_time_ms=int(elapsed * 1000),
                wait_time_ms=int(wait_time * 1000),
            )

        elapsed = time.monotonic() - start_time
        messages = data.get("messages") or [{}]
        external_message_id = messages[0].get("id")

        log.info(
            "whatsapp_message_sent",
            external_message_id=external_message_id,
            response_time_ms=int(elapsed * 1000),
            wait_time_ms=int(wait_time * 1000),
        )
        track_message_sent(role.value if role else "adhoc", elapsed)

        return SendMessageResult(
            success=True,
            recipient=phone_number,
            role=role,
            message_id=f"whatsapp-{uuid.uuid4()}",
            external_message_id=external_message_id,
            response_time_ms=int(elapsed * 1000),
            wait_time_ms=int(wait_time * 1000),
        )

    async def send_deal_notifications(self, deal: DealData) -> BulkSendResult:
        """
        Notify every configured recipient of a deal, in parallel.

        All sends are awaited to completion; one failing recipient never
        cancels the others.
        """
        recipients = [
            (RecipientRole(role), phone)
            for role, phone in self.config.whatsapp_recipients.items()
        ]

        logger.info(
            "deal_notifications_started",
            deal_id=deal.id,
            customer=deal.sale_party,
            recipients=[role.value for role, _ in recipients],
        )

        outcomes = await asyncio.gather(
            *(self._send_to_role(role, phone, deal) for role, phone in recipients),
            return_exceptions=True,
        )

        bulk = BulkSendResult(deal_id=deal.id)
        for (role, phone), outcome in zip(recipients, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                outcome = SendMessageResult(
                    success=False,
                    recipient=phone,
                    role=role,
                    error=classify_error(outcome, deal.id, phone),
                )
            bulk.results.append(outcome)

        logger.info(
            "deal_notifications_completed",
            deal_id=deal.id,
            total=bulk.total_attempted,
            success=bulk.success_count,
            failed=bulk.failure_count,
        )
        return bulk

    async def _send_to_role(self, role: RecipientRole, phone_number: str, deal: DealData) -> SendMessageResult:
        try:
            message = generate_message(role, deal)
        except ValueError as e:
            return SendMessageResult(
                success=False,
                recipient=phone_number,
                role=role,
                error=MessageValidationError(str(e), deal.id, phone_number),
            )
        return await self.send_message(phone_number, message, deal.id, role)

    async def _make_api_call(self, phone_number: str, message: str) -> dict:
        payload = {
            "messaging_product": "whatsapp",
            "to": phone_number,
            "type": "text",
            "text": {"body": message},
        }

        response = await self.client.post(
            self.messages_url,
            json=payload,
            headers={"Authorization": f"Bearer {self.config.WHATSAPP_API_TOKEN}"},
        )

        if not response.is_success:
            raise error_from_response(response)

        return response.json()

    async def test_connection(self) -> dict:
        """Check that the API answers for the configured phone number ID."""
        start_time = time.monotonic()
        url = f"{self.config.WHATSAPP_API_URL.rstrip('/')}/{self.config.WHATSAPP_PHONE_NUMBER_ID}"

        try:
            response = await self.client.get(
                url,
                headers={"Authorization": f"Bearer {self.config.WHATSAPP_API_TOKEN}"},
            )
            response_time_ms = int((time.monotonic() - start_time) * 1000)
            if not response.is_success:
                return {
                    "success": False,
                    "error": f"HTTP {response.status_code}: {response.reason_phrase}",
                    "response_time_ms": response_time_ms,
                }
            return {"success": True, "error": None, "response_time_ms": response_time_ms}
        except httpx.HTTPError as e:
            return {
                "success": False,
                "error": str(e) or e.__class__.__name__,
                "response_time_ms": int((time.monotonic() - start_time) * 1000),
            }

    def get_metrics(self) -> dict:
        return {
            "rate_limiter": self.rate_limiter.get_metrics(),
            "circuit_breaker": self.circuit_breaker.get_metrics(),
            "config": {
                "messaging_enabled": self.config.FEATURE_WHATSAPP_MESSAGING,
                "rate_limit_enabled": self.config.WHATSAPP_RATE_LIMIT_ENABLED,
                "retry_enabled": self.config.WHATSAPP_RETRY_ENABLED,
            },
        }

    async def aclose(self) -> None:
        await self.client.aclose()
