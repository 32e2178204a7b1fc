from datetime import datetime, timedelta, timezone

import jwt
import pytest

from app.core.config import get_settings
from app.services.conversation.pending_store import memory_pending_store

TEST_JWT_SECRET = "test-secret-for-finance-assistant-suite"


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    # Tests patch env vars and clear the settings cache; don't leak a cached
    # Settings (or the process-wide pending store built from it) across tests.
    get_settings.cache_clear()
    memory_pending_store.cache_clear()
    yield
    get_settings.cache_clear()
    memory_pending_store.cache_clear()


def build_auth_header(sub: str = "user-1", *, secret: str = TEST_JWT_SECRET, audience: str | None = None) -> dict:
    """Mint a real HS256 bearer token for *sub*."""
    payload = {
        "sub": sub,
        "email": f"{sub}@example.com",
        "iat": int(datetime.now(timezone.utc).timestamp()),
        "exp": int((datetime.now(timezone.utc) + timedelta(hours=1)).timestamp()),
    }
    if audience:
        payload["aud"] = audience
    token = jwt.encode(payload, secret, algorithm="HS256")
    if isinstance(token, bytes):
        token = token.decode("utf-8")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def jwt_env(monkeypatch):
    monkeypatch.setenv("AUTH_JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.delenv("AUTH_JWT_AUDIENCE", raising=False)
    get_settings.cache_clear()
    yield TEST_JWT_SECRET
