"""
Shared fixtures: settings, an in-memory database and a fake WhatsApp API.
"""
import json
from datetime import date

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from polytrade.config import Settings
from polytrade.models.base import Base
from polytrade.models.deal import DeliveryTerms, MaterialSource
from polytrade.models.message import MessageOutbox  # noqa: F401
from polytrade.schemas.deal import DealData
from polytrade.services.circuit_breaker import CircuitBreaker
from polytrade.services.rate_limiter import RateLimiter
from polytrade.services.whatsapp_service import WhatsAppService

PHONE_NUMBER_ID = "123456789012345"

RECIPIENTS = {
    "accounts": "+919800000001",
    "logistics": "+919800000002",
    "boss1": "+919800000003",
    "bossog": "+919800000004",
}


def make_settings(**overrides) -> Settings:
    values = {
        "_env_file": None,
        "DATABASE_URL": "sqlite+aiosqlite://",
        "FEATURE_WHATSAPP_MESSAGING": True,
        "WHATSAPP_API_TOKEN": "EAAtesttoken1234567890",
        "WHATSAPP_API_URL": "https://graph.facebook.com/v17.0",
        "WHATSAPP_PHONE_NUMBER_ID": PHONE_NUMBER_ID,
        "WHATSAPP_PHONE_ACCOUNTS": RECIPIENTS["accounts"],
        "WHATSAPP_PHONE_LOGISTICS": RECIPIENTS["logistics"],
        "WHATSAPP_PHONE_BOSS1": RECIPIENTS["boss1"],
        "WHATSAPP_PHONE_BOSSOG": RECIPIENTS["bossog"],
        "WHATSAPP_RATE_LIMIT_JITTER": False,
    }
    values.update(overrides)
    return Settings(**values)


def make_deal(**overrides) -> DealData:
    values = {
        "id": "DEAL-1728460800000-ABC123",
        "deal_date": date(2024, 10, 9),
        "sale_party": "Acme Plastics",
        "quantity_sold": 1000,
        "sale_rate": 85,
        "delivery_terms": DeliveryTerms.DELIVERED,
        "product_code": "PP-001",
        "product": "Polypropylene",
        "grade": "H110MA",
        "company": "Reliance",
        "material_source": MaterialSource.NEW_MATERIAL,
        "purchase_party": "Supplier Industries",
        "quantity_purchased": 1000,
        "purchase_rate": 80,
    }
    values.update(overrides)
    return DealData(**values)


class FakeWhatsAppAPI:
    """
    httpx.MockTransport handler standing in for the Cloud API.

    Every POST succeeds unless a failure was registered for its recipient.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.failures: dict[str, tuple[int, dict] | Exception] = {}
        self.connection_status = 200

    def fail(self, phone: str, status_code: int, headers: dict | None = None):
        self.failures[phone] = (status_code, headers or {})

    def raise_for(self, phone: str, exc: Exception):
        self.failures[phone] = exc

    def fail_all(self, status_code: int):
        for phone in RECIPIENTS.values():
            self.fail(phone, status_code)

    @property
    def sent(self) -> list[dict]:
        return [json.loads(request.content) for request in self.requests if request.method == "POST"]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if request.method == "GET":
            return httpx.Response(self.connection_status, json={"id": PHONE_NUMBER_ID})

        body = json.loads(request.content)
        failure = self.failures.get(body["to"])
        if isinstance(failure, Exception):
            raise failure
        if failure is not None:
            status_code, headers = failure
            return httpx.Response(status_code, headers=headers, text="simulated failure")

        return httpx.Response(
            200,
            json={
                "messaging_product": "whatsapp",
                "contacts": [{"input": body["to"], "wa_id": body["to"].lstrip("+")}],
                "messages": [{"id": f"wamid.{len(self.requests)}"}],
            },
        )


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def deal() -> DealData:
    return make_deal()


@pytest.fixture
def whatsapp_api() -> FakeWhatsAppAPI:
    return FakeWhatsAppAPI()


def build_whatsapp_service(config: Settings, api: FakeWhatsAppAPI) -> WhatsAppService:
    client = httpx.AsyncClient(transport=httpx.MockTransport(api))
    return WhatsAppService(
        config,
        client,
        RateLimiter(max_requests=config.WHATSAPP_RATE_LIMIT_MAX_REQUESTS, jitter=False),
        CircuitBreaker(failure_threshold=config.WHATSAPP_CIRCUIT_BREAKER_THRESHOLD),
    )


@pytest.fixture
async def whatsapp_service(settings, whatsapp_api):
    service = build_whatsapp_service(settings, whatsapp_api)
    yield service
    await service.aclose()


@pytest.fixture
async def db_session():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session

    await engine.dispose()
