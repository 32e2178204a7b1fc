import asyncio
import json
from datetime import datetime, timezone

import httpx
import pytest
from fastapi.testclient import TestClient

from app.api.v1.chat import get_chat_service
from app.api.v1.statements import get_finance_store
from app.main import app
from app.services.ai.common.gateway import InferenceGateway, RetryPolicy
from app.services.ai.common.providers.mock import MockProvider
from app.services.anomaly import AnomalyDetector
from app.services.chat_service import ChatService
from app.services.conversation.locks import UserLockRegistry
from app.services.conversation.pending_store import InMemoryPendingStore
from app.services.finance_store import InMemoryFinanceStore
from tests.conftest import build_auth_header

COFFEE_REPLY = json.dumps(
    {"type": "expense", "hasData": True, "data": {"name": "coffee", "amount": 150, "category": "food"}}
)


@pytest.fixture
def store():
    return InMemoryFinanceStore()


@pytest.fixture
def client(jwt_env, store):
    service = ChatService(
        store,
        InMemoryPendingStore(),
        gateway_factory=lambda _uid: InferenceGateway(
            policy=RetryPolicy(max_attempts=1),
            provider_factory=lambda _name: MockProvider(COFFEE_REPLY),
        ),
        detector=AnomalyDetector(timezone_name="UTC"),
        locks=UserLockRegistry(),
        clock=lambda: datetime(2026, 10, 5, 12, 0, tzinfo=timezone.utc),
    )
    app.dependency_overrides[get_chat_service] = lambda: service
    app.dependency_overrides[get_finance_store] = lambda: store
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_chat_requires_bearer_token(client):
    resp = client.post("/api/v1/chat", json={"message": "hi"})

    assert resp.status_code == 401


def test_chat_rejects_token_signed_with_another_secret(client):
    resp = client.post("/api/v1/chat", json={"message": "hi"}, headers=build_auth_header(secret="wrong-secret"))

    assert resp.status_code == 401


def test_missing_jwt_secret_is_a_hidden_server_error(client, monkeypatch):
    from app.core.config import get_settings

    monkeypatch.delenv("AUTH_JWT_SECRET", raising=False)
    monkeypatch.delenv("JWT_SECRET", raising=False)
    get_settings.cache_clear()

    resp = client.post("/api/v1/chat", json={"message": "hi"}, headers=build_auth_header())

    assert resp.status_code == 500
    assert resp.json() == {"detail": "Internal server error"}


def test_greeting(client):
    resp = client.post("/api/v1/chat", json={"message": "  hi  "}, headers=build_auth_header())

    assert resp.status_code == 200
    body = resp.json()
    assert body["action"] == "greeting"
    assert body["data"] is None


def test_voice_message_saves_expense_with_voice_provenance(client, store):
    resp = client.post(
        "/api/v1/chat",
        json={"message": "I spent 150 on coffee", "source": "voice"},
        headers=build_auth_header("user-9"),
    )

    assert resp.status_code == 200
    assert resp.json()["action"] == "expense_saved"
    [saved] = store.list_expenses("user-9")
    assert saved.provenance == "voice"


def test_empty_message_is_rejected(client):
    resp = client.post("/api/v1/chat", json={"message": ""}, headers=build_auth_header())

    assert resp.status_code == 422


def test_reset_state(client):
    resp = client.delete("/api/v1/chat/state", headers=build_auth_header())

    assert resp.status_code == 200
    assert resp.json() == {"cleared": False}


def test_history_lists_turns_for_the_caller_only(client):
    headers = build_auth_header("user-1")
    client.post("/api/v1/chat", json={"message": "hello"}, headers=headers)
    client.post("/api/v1/chat", json={"message": "hey"}, headers=build_auth_header("user-2"))

    resp = client.get("/api/v1/chat/history", params={"limit": 5}, headers=headers)

    assert resp.status_code == 200
    items = resp.json()["items"]
    assert [item["user_text"] for item in items] == ["hello"]
    assert items[0]["intent"] == "greeting"


def test_history_limit_is_bounded(client):
    resp = client.get("/api/v1/chat/history", params={"limit": 500}, headers=build_auth_header())

    assert resp.status_code == 422


def test_receipt_payload_is_validated(client):
    resp = client.post("/api/v1/chat/receipt", json={"image_base64": "abc"}, headers=build_auth_header())

    assert resp.status_code == 422


def test_statement_import(client, store):
    content = (
        "Date,Merchant,Amount,Status,Bank\n"
        "01/09/2026,Swiggy,-450.00,SUCCESS,HDFC\n"
        "03/09/2026,Salary ACME,50000,SUCCESS,HDFC\n"
        "05/09/2026,Amazon,-1299.50,FAILED,HDFC\n"
    ).encode()

    resp = client.post(
        "/api/v1/statements/import",
        files={"file": ("september.csv", content, "text/csv")},
        headers=build_auth_header("user-3"),
    )

    assert resp.status_code == 200
    summary = resp.json()["summary"]
    assert summary["imported_count"] == 2
    assert summary["skipped_count"] == 1
    assert summary["totals"]["per_category"] == {"food": "450.00"}
    assert "Bank Statement Import Complete" in resp.json()["report"]
    assert len(store.list_expenses("user-3")) == 1


def test_statement_import_rejects_empty_upload(client):
    resp = client.post(
        "/api/v1/statements/import",
        files={"file": ("empty.csv", b"", "text/csv")},
        headers=build_auth_header(),
    )

    assert resp.status_code == 400
    assert resp.json() == {"detail": "Empty file"}


@pytest.mark.asyncio
async def test_concurrent_messages_from_one_user_are_all_saved(jwt_env, store):
    service = ChatService(
        store,
        InMemoryPendingStore(),
        gateway_factory=lambda _uid: InferenceGateway(
            policy=RetryPolicy(max_attempts=1),
            provider_factory=lambda _name: MockProvider(COFFEE_REPLY),
        ),
        detector=AnomalyDetector(timezone_name="UTC"),
        locks=UserLockRegistry(),
    )
    app.dependency_overrides[get_chat_service] = lambda: service
    headers = build_auth_header("user-7")
    try:
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
            responses = await asyncio.gather(
                *(client.post("/api/v1/chat", json={"message": "coffee 150"}, headers=headers) for _ in range(3))
            )
    finally:
        app.dependency_overrides.clear()

    assert [r.status_code for r in responses] == [200, 200, 200]
    assert len(store.list_expenses("user-7")) == 3
    assert len(store.recent_turns("user-7", 10)) == 3


def test_db_dependency_follows_database_url(monkeypatch):
    from sqlalchemy import text

    from app.core.config import get_settings
    from app.core.dependencies import get_db, session_factory

    monkeypatch.delenv("DATABASE_URL", raising=False)
    get_settings.cache_clear()
    session_factory.cache_clear()
    with pytest.raises(RuntimeError):
        next(get_db())

    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    get_settings.cache_clear()
    session_factory.cache_clear()
    try:
        sessions = get_db()
        db = next(sessions)
        assert db.execute(text("SELECT 1")).scalar() == 1
        sessions.close()
    finally:
        session_factory.cache_clear()


def test_audience_is_checked_when_configured(client, monkeypatch):
    from app.core.config import get_settings

    monkeypatch.setenv("AUTH_JWT_AUDIENCE", "finance-app")
    get_settings.cache_clear()

    rejected = client.post("/api/v1/chat", json={"message": "hi"}, headers=build_auth_header())
    accepted = client.post("/api/v1/chat", json={"message": "hi"}, headers=build_auth_header(audience="finance-app"))

    assert rejected.status_code == 401
    assert accepted.status_code == 200
