import pytest

from p2pescrow.config import get_settings
from p2pescrow.services import collaborators
from p2pescrow.services.collaborators import (
    InMemoryVault,
    bind_deposit_source,
    bind_transfer_client,
    get_deposit_source,
    get_transfer_client,
)
from p2pescrow.utils.errors import ConfigurationError


@pytest.fixture
def unbound():
    bind_transfer_client(None)
    bind_deposit_source(None)
    yield
    bind_transfer_client(None)
    bind_deposit_source(None)


def test_production_without_bound_client_fails_closed(monkeypatch, unbound):
    monkeypatch.setattr(get_settings(), "app_env", "prod")

    with pytest.raises(ConfigurationError) as excinfo:
        get_transfer_client()
    assert excinfo.value.details == {"env": "prod"}
    with pytest.raises(ConfigurationError):
        get_deposit_source()


def test_bound_client_is_used_in_production(monkeypatch, unbound):
    monkeypatch.setattr(get_settings(), "app_env", "prod")
    signer = InMemoryVault()
    scanner = InMemoryVault()

    bind_transfer_client(signer)
    bind_deposit_source(scanner)

    assert get_transfer_client() is signer
    assert get_deposit_source() is scanner


def test_development_falls_back_to_one_in_memory_vault(monkeypatch, unbound):
    monkeypatch.setattr(get_settings(), "app_env", "local")
    monkeypatch.setattr(collaborators, "_dev_vault", None)

    client = get_transfer_client()
    assert isinstance(client, InMemoryVault)
    assert get_deposit_source() is client


@pytest.mark.anyio("asyncio")
async def test_unconfigured_production_route_returns_error_envelope(monkeypatch, client, auth_headers, unbound):
    from p2pescrow.main import app

    app.dependency_overrides.pop(get_deposit_source)
    monkeypatch.setattr(get_settings(), "app_env", "prod")

    response = await client.post(
        "/trades/P2PMMX1/deposits/check", headers=auth_headers, json={"actor": {"user_id": 101}}
    )

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "CONFIGURATION_ERROR"
