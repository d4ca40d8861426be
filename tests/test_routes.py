"""
HTTP route tests through FastAPI's TestClient.

Each client gets its own SQLite file and a mocked WhatsApp API.
"""
import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from conftest import RECIPIENTS, make_settings
from polytrade.database import get_db
from polytrade.main import create_app
from polytrade.models.base import Base

DEAL_BODY = {
    "date": "2024-10-09",
    "saleParty": "Acme Plastics",
    "quantitySold": 1000,
    "saleRate": 85,
    "deliveryTerms": "delivered",
    "productCode": "PP-001",
    "product": "Polypropylene",
    "grade": "H110MA",
    "company": "Reliance",
    "materialSource": "new-material",
    "purchaseParty": "Supplier Industries",
    "quantityPurchased": 1000,
    "purchaseRate": 80,
}


@pytest.fixture
def make_client(tmp_path, whatsapp_api):
    clients = []

    def _make_client(**overrides) -> TestClient:
        path = tmp_path / f"routes-{len(clients)}.db"
        sync_engine = create_engine(f"sqlite:///{path}")
        Base.metadata.create_all(sync_engine)
        sync_engine.dispose()

        engine = create_async_engine(f"sqlite+aiosqlite:///{path}", poolclass=NullPool)
        session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

        async def override_get_db():
            async with session_factory() as session:
                yield session

        app = create_app(
            make_settings(**overrides),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(whatsapp_api)),
        )
        app.dependency_overrides[get_db] = override_get_db

        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _make_client

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client):
    return make_client()


def test_root_and_health(client):
    assert client.get("/").json() == {"name": "Polytrade", "version": "1.0.0", "status": "running"}

    health = client.get("/health").json()
    assert health["status"] == "healthy"
    assert health["circuit_breaker"] == "CLOSED"


def test_create_deal(client, whatsapp_api):
    response = client.post("/api/deals", json=DEAL_BODY)

    assert response.status_code == 200
    body = response.json()
    assert body["success"]

    data = body["data"]
    assert data["dealId"].startswith("DEAL-")
    assert data["deal"]["saleParty"] == "Acme Plastics"
    assert data["deal"]["date"] == "2024-10-09"
    assert data["metrics"] == {
        "saleAmount": 85000.0,
        "purchaseAmount": 80000.0,
        "grossProfit": 5000.0,
        "profitMargin": 5.88,
    }
    assert data["whatsapp"] == {
        "enabled": True,
        "success": True,
        "successCount": 4,
        "failureCount": 0,
        "errors": [],
    }
    assert len(whatsapp_api.sent) == 4


def test_create_deal_accepts_numeric_strings(client):
    response = client.post("/api/deals", json={**DEAL_BODY, "quantitySold": "1000", "saleRate": "85"})

    assert response.status_code == 200
    assert response.json()["data"]["metrics"]["saleAmount"] == 85000.0


def test_create_deal_validation_errors(client, whatsapp_api):
    body = {key: value for key, value in DEAL_BODY.items() if key != "purchaseRate"}

    response = client.post("/api/deals", json=body)

    assert response.status_code == 400
    payload = response.json()
    assert payload["error"] == "Validation failed"
    assert payload["fields"] == ["purchaseRate"]
    assert payload["validationErrors"][0].startswith("purchaseRate:")
    assert whatsapp_api.requests == []


def test_create_deal_with_failed_notifications_still_succeeds(client, whatsapp_api):
    whatsapp_api.fail(RECIPIENTS["bossog"], 500)

    response = client.post("/api/deals", json=DEAL_BODY)

    assert response.status_code == 200
    whatsapp = response.json()["data"]["whatsapp"]
    assert whatsapp["successCount"] == 3
    assert whatsapp["failureCount"] == 1
    assert whatsapp["errors"][0]["role"] == "bossog"
    assert whatsapp["errors"][0]["errorType"] == "NETWORK_ERROR"


def test_describe_deal_endpoint(client):
    body = client.get("/api/deals").json()

    assert body["endpoint"] == "/api/deals"
    assert "purchaseRate" in body["conditionalFields"]['materialSource === "new-material"']


def test_get_deal_with_outbox(client, whatsapp_api):
    whatsapp_api.fail(RECIPIENTS["accounts"], 401)
    deal_id = client.post("/api/deals", json=DEAL_BODY).json()["data"]["dealId"]

    response = client.get(f"/api/deals/{deal_id}")

    assert response.status_code == 200
    body = response.json()
    assert body["deal"]["id"] == deal_id
    statuses = {message["role"]: message["status"] for message in body["messages"]}
    assert statuses == {
        "accounts": "dead_letter",
        "logistics": "sent",
        "boss1": "sent",
        "bossog": "sent",
    }


def test_get_unknown_deal(client):
    response = client.get("/api/deals/DEAL-0-NOPE00")

    assert response.status_code == 404
    assert response.json()["detail"] == "Deal not found"


def test_preview_single_role(client):
    response = client.post("/api/messaging/preview", json={"dealData": {"saleParty": "Acme"}, "role": "accounts"})

    assert response.status_code == 200
    body = response.json()
    assert body["role"] == "accounts"
    assert "Customer: Acme" in body["message"]
    assert body["messageLength"] == len(body["message"])
    assert body["dealData"]["id"] == "PREVIEW-001"


def test_preview_all_roles(client):
    body = client.post("/api/messaging/preview", json={"dealData": {"id": "DEAL-42"}}).json()

    assert set(body["messages"]) == {"accounts", "logistics", "boss1", "bossog"}
    assert body["validation"] == {"valid": True, "errors": []}
    assert body["statistics"]["successfulMessages"] == 4
    assert body["statistics"]["failedMessages"] == 0


def test_preview_rejects_bad_input(client):
    assert client.post("/api/messaging/preview", json={}).status_code == 400
    assert client.post("/api/messaging/preview", json={"dealData": {"id": "X"}, "role": "ceo"}).status_code == 400
    bad_terms = client.post("/api/messaging/preview", json={"dealData": {"deliveryTerms": "by-air"}})
    assert bad_terms.status_code == 400


def test_send_test_message(client, whatsapp_api):
    response = client.post("/api/messaging/test", json={"recipient": "+919800000009", "message": "ping"})

    assert response.status_code == 200
    assert response.json()["success"]
    assert whatsapp_api.sent[0]["to"] == "+919800000009"


def test_send_test_message_validation(client, whatsapp_api):
    assert client.post("/api/messaging/test", json={"recipient": "+919800000009"}).status_code == 400

    response = client.post("/api/messaging/test", json={"recipient": "919800000009", "message": "ping"})
    assert response.status_code == 400
    assert response.json()["errorType"] == "VALIDATION_ERROR"
    assert whatsapp_api.requests == []


def test_send_test_message_when_disabled(make_client):
    client = make_client(FEATURE_WHATSAPP_MESSAGING=False)

    response = client.post("/api/messaging/test", json={"recipient": "+919800000009", "message": "ping"})

    assert response.status_code == 503


def test_status_healthy(client):
    client.post("/api/deals", json=DEAL_BODY)

    response = client.get("/api/messaging/status")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["issues"] == []
    assert body["connectivity"]["success"]
    assert body["rateLimiting"]["requestsInWindow"] == 4
    assert body["circuitBreaker"]["state"] == "CLOSED"
    assert body["lastSuccessfulMessage"] is not None


def test_status_down_when_api_unreachable(client, whatsapp_api):
    whatsapp_api.connection_status = 500

    response = client.get("/api/messaging/status")

    assert response.status_code == 503
    assert response.json()["status"] == "down"


def test_status_when_disabled(make_client):
    client = make_client(FEATURE_WHATSAPP_MESSAGING=False)

    body = client.get("/api/messaging/status").json()

    assert body["status"] == "disabled"


def test_validate_config_healthy(client):
    response = client.get("/api/messaging/validate-config")

    assert response.status_code == 200
    body = response.json()
    assert body["healthy"]
    assert body["configuration"]["tokenValid"]
    assert body["connectivity"]["success"]


def test_validate_config_invalid_token(make_client, whatsapp_api):
    client = make_client(WHATSAPP_API_TOKEN="bad")

    response = client.get("/api/messaging/validate-config")

    assert response.status_code == 422
    body = response.json()
    assert not body["healthy"]
    assert body["connectivity"] is None
    assert whatsapp_api.requests == []


def test_statistics(client, whatsapp_api):
    whatsapp_api.fail(RECIPIENTS["boss1"], 401)
    client.post("/api/deals", json=DEAL_BODY)

    stats = client.get("/api/messaging/statistics", params={"hours_back": 1}).json()

    assert stats["total_messages"] == 4
    assert stats["successful_messages"] == 3
    assert stats["dead_letter_messages"] == 1
    assert stats["success_rate"] == 75.0
    assert stats["error_breakdown"] == {"AUTH_ERROR": 1}


def test_retry_with_nothing_due(client):
    response = client.post("/api/messaging/retry")

    assert response.status_code == 200
    assert response.json()["processed"] == 0


def test_metrics_endpoint(client):
    client.post("/api/deals", json=DEAL_BODY)

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "whatsapp_messages_total" in response.text
    assert "deals_created_total" in response.text
    assert "http_requests_total" in response.text
