"""Scope enforcement regression tests."""
import pytest

from p2pescrow.security import ApiScope, resolve_actor
from p2pescrow.schemas.trade import ActorIn

from .conftest import ADMIN_ID, BUYER_ID


@pytest.mark.anyio
async def test_bot_key_cannot_manage_rooms(client, auth_headers):
    response = await client.get("/rooms", headers=auth_headers)
    assert response.status_code == 403
    payload = response.json()
    assert payload["error"]["code"] == "INSUFFICIENT_SCOPE"


@pytest.mark.anyio
async def test_unknown_key_rejected(client):
    response = await client.get("/trades/P2PMMX1", headers={"Authorization": "Bearer not-a-key"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "UNAUTHORIZED"


@pytest.mark.anyio
async def test_admin_key_passes_bot_routes(client, admin_headers):
    response = await client.get("/trades/P2PMMX1", headers=admin_headers)
    assert response.status_code == 404


@pytest.mark.anyio
async def test_missing_admin_key_closes_admin_scope(monkeypatch, client):
    from p2pescrow.config import get_settings

    monkeypatch.setattr(get_settings(), "ADMIN_API_KEY", None)
    response = await client.get("/rooms", headers={"X-API-Key": "test-admin-key"})
    assert response.status_code == 401


def test_resolve_actor_admin_sources(monkeypatch):
    assert resolve_actor(ActorIn(user_id=ADMIN_ID), ApiScope.bot).is_admin is True
    assert resolve_actor(ActorIn(user_id=BUYER_ID), ApiScope.admin).is_admin is True
    assert resolve_actor(ActorIn(user_id=BUYER_ID, username="buyer_bob"), ApiScope.bot).is_admin is False

    from p2pescrow.config import get_settings

    monkeypatch.setattr(get_settings(), "ADMIN_USERNAMES", ["buyer_bob"])
    assert resolve_actor(ActorIn(user_id=BUYER_ID, username="@Buyer_Bob"), ApiScope.bot).is_admin is True
