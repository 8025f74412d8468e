import asyncio
import json
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from mcph_Server_API.app.core.AuthNZ.client_registry import ClientRegistry
from mcph_Server_API.app.core.AuthNZ.exceptions import (
    AccessDeniedError,
    InvalidClientError,
    InvalidClientMetadataError,
    InvalidGrantError,
    InvalidRequestError,
    UnsupportedGrantTypeError,
    UpstreamProviderError,
)
from mcph_Server_API.app.core.AuthNZ.oauth_broker import OAuthBroker, build_oauth_broker
from mcph_Server_API.app.core.AuthNZ.oauth_sessions import AccessTokenStore, OAuthSessionStore
from mcph_Server_API.app.core.AuthNZ.upstream import HTTPUpstreamProvider, PassthroughUpstreamProvider

CALLBACK = "https://crates.example.test/auth/callback"
CLIENT_REDIRECT = "http://localhost:3000/cb"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def broker(config, tmp_path, clock):
    return OAuthBroker(
        registry=ClientRegistry(str(tmp_path / "clients.json")),
        sessions=OAuthSessionStore(ttl_seconds=300, clock=clock),
        tokens=AccessTokenStore(ttl_seconds=3600, clock=clock),
        upstream=PassthroughUpstreamProvider("https://idp.example.test/authorize", client_id="upstream-client"),
        config=config,
        clock=clock,
    )


async def _issue_code(broker: OAuthBroker, client_id: str = "cli-1", state: str = "xyz", subject: str = "user-42"):
    upstream_url = await broker.authorize(client_id, CLIENT_REDIRECT, "code", state, CALLBACK)
    upstream_state = parse_qs(urlsplit(upstream_url).query)["state"][0]
    redirect = await broker.callback(subject, upstream_state, None, CALLBACK)
    return parse_qs(urlsplit(redirect).query)


@pytest.mark.asyncio
async def test_full_flow_issues_usable_token(broker):
    query = await _issue_code(broker)
    assert query["state"] == ["xyz"]

    result = await broker.token("authorization_code", query["code"][0], CLIENT_REDIRECT, "cli-1")

    assert result["token_type"] == "Bearer"
    assert result["scope"] == "mcp"
    assert result["expires_in"] == 3600
    issued = await broker.resolve_token(result["access_token"])
    assert issued.subject == "user-42"
    assert issued.client_id == "cli-1"


@pytest.mark.asyncio
async def test_concurrent_exchange_of_one_code_succeeds_once(broker):
    code = (await _issue_code(broker))["code"][0]

    outcomes = await asyncio.gather(
        broker.token("authorization_code", code, CLIENT_REDIRECT, "cli-1"),
        broker.token("authorization_code", code, CLIENT_REDIRECT, "cli-1"),
        return_exceptions=True,
    )

    successes = [o for o in outcomes if isinstance(o, dict)]
    failures = [o for o in outcomes if isinstance(o, InvalidGrantError)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert failures[0].to_dict()["error"] == "invalid_grant"


@pytest.mark.asyncio
async def test_code_is_single_use_even_after_mismatch(broker):
    code = (await _issue_code(broker))["code"][0]

    with pytest.raises(InvalidGrantError):
        await broker.token("authorization_code", code, "http://evil.example/cb", "cli-1")
    with pytest.raises(InvalidGrantError):
        await broker.token("authorization_code", code, CLIENT_REDIRECT, "cli-1")


@pytest.mark.asyncio
async def test_expired_code_is_rejected(broker, clock):
    code = (await _issue_code(broker))["code"][0]
    clock.now += 301

    with pytest.raises(InvalidGrantError):
        await broker.token("authorization_code", code, CLIENT_REDIRECT, "cli-1")


@pytest.mark.asyncio
async def test_authorize_validates_parameters(broker):
    with pytest.raises(InvalidRequestError):
        await broker.authorize("cli-1", CLIENT_REDIRECT, "token", None, CALLBACK)
    with pytest.raises(InvalidRequestError):
        await broker.authorize(None, CLIENT_REDIRECT, "code", None, CALLBACK)


@pytest.mark.asyncio
async def test_callback_errors(broker):
    with pytest.raises(AccessDeniedError):
        await broker.callback(None, None, "access_denied", CALLBACK)
    with pytest.raises(InvalidRequestError):
        await broker.callback("code", None, None, CALLBACK)
    with pytest.raises(InvalidRequestError):
        await broker.callback("code", "%%%not-base64%%%", None, CALLBACK)


@pytest.mark.asyncio
async def test_callback_state_is_single_use(broker):
    upstream_url = await broker.authorize("cli-1", CLIENT_REDIRECT, "code", None, CALLBACK)
    upstream_state = parse_qs(urlsplit(upstream_url).query)["state"][0]
    await broker.callback("user-1", upstream_state, None, CALLBACK)

    with pytest.raises(InvalidRequestError):
        await broker.callback("user-1", upstream_state, None, CALLBACK)


@pytest.mark.asyncio
async def test_token_rejects_other_grant_types(broker):
    with pytest.raises(UnsupportedGrantTypeError):
        await broker.token("client_credentials", "c", CLIENT_REDIRECT, "cli-1")
    with pytest.raises(InvalidRequestError):
        await broker.token("authorization_code", None, CLIENT_REDIRECT, "cli-1")


@pytest.mark.asyncio
async def test_registered_clients_are_enforced(broker):
    registration = await broker.register({"client_name": "Desk", "redirect_uris": [CLIENT_REDIRECT]})
    client_id = registration["client_id"]
    assert client_id.startswith("mcp_client_")

    # Once any client is registered, unknown ids are refused
    with pytest.raises(InvalidClientError):
        await broker.authorize("cli-unknown", CLIENT_REDIRECT, "code", None, CALLBACK)
    with pytest.raises(InvalidRequestError):
        await broker.authorize(client_id, "http://elsewhere.example/cb", "code", None, CALLBACK)

    code = (await _issue_code(broker, client_id=client_id))["code"][0]
    with pytest.raises(InvalidClientError) as exc_info:
        await broker.token("authorization_code", code, CLIENT_REDIRECT, client_id, client_secret="wrong")
    assert exc_info.value.status_code == 401

    code = (await _issue_code(broker, client_id=client_id))["code"][0]
    result = await broker.token(
        "authorization_code", code, CLIENT_REDIRECT, client_id, client_secret=registration["client_secret"]
    )
    assert result["access_token"]


@pytest.mark.asyncio
async def test_register_requires_client_name(broker):
    with pytest.raises(InvalidClientMetadataError) as exc_info:
        await broker.register({"redirect_uris": [CLIENT_REDIRECT]})
    assert exc_info.value.to_dict()["error"] == "invalid_client_metadata"


@pytest.mark.asyncio
async def test_strict_mode_refuses_unregistered_clients(make_config):
    broker = build_oauth_broker(make_config(oauth_strict_clients=True))
    with pytest.raises(InvalidClientError):
        await broker.authorize("cli-1", CLIENT_REDIRECT, "code", None, CALLBACK)


@pytest.mark.asyncio
async def test_sweep_drops_expired_codes_and_tokens(broker, clock):
    code = (await _issue_code(broker))["code"][0]
    await _issue_code(broker)
    await broker.token("authorization_code", code, CLIENT_REDIRECT, "cli-1")

    clock.now += 3601
    counts = await broker.sweep()

    assert counts["sessions"] == 1
    assert counts["tokens"] == 1
    assert broker.sessions.get_stats()["total"] == 0


@pytest.mark.asyncio
async def test_token_info_reports_active_tokens(broker):
    code = (await _issue_code(broker))["code"][0]
    token = (await broker.token("authorization_code", code, CLIENT_REDIRECT, "cli-1"))["access_token"]

    info = await broker.token_info(token)
    assert info["active"] is True
    assert info["client_id"] == "cli-1"
    assert await broker.token_info("nope") is None


def _upstream_transport(token_status: int = 200):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/token":
            if token_status != 200:
                return httpx.Response(token_status, json={"error": "invalid_grant"})
            return httpx.Response(200, json={"access_token": "upstream-access", "token_type": "Bearer"})
        if request.url.path == "/userinfo":
            assert request.headers["Authorization"] == "Bearer upstream-access"
            return httpx.Response(200, json={"sub": "google-123", "email": "a@example.test"})
        return httpx.Response(404)

    return httpx.MockTransport(handler)


@pytest.mark.asyncio
async def test_http_upstream_resolves_subject_from_userinfo():
    provider = HTTPUpstreamProvider(
        authorize_url="https://idp.example.test/authorize",
        token_url="https://idp.example.test/token",
        userinfo_url="https://idp.example.test/userinfo",
        client_id="cid",
        client_secret="secret",
        transport=_upstream_transport(),
    )

    identity = await provider.exchange_code("upstream-code", CALLBACK)

    assert identity.subject == "google-123"
    assert identity.email == "a@example.test"


@pytest.mark.asyncio
async def test_http_upstream_failure_is_server_error():
    provider = HTTPUpstreamProvider(
        authorize_url="https://idp.example.test/authorize",
        token_url="https://idp.example.test/token",
        client_id="cid",
        client_secret="secret",
        transport=_upstream_transport(token_status=400),
    )

    with pytest.raises(UpstreamProviderError) as exc_info:
        await provider.exchange_code("upstream-code", CALLBACK)
    assert exc_info.value.status_code == 502
    assert exc_info.value.to_dict()["error"] == "server_error"


@pytest.mark.asyncio
async def test_registry_survives_restart(tmp_path):
    path = tmp_path / "nested" / "clients.json"
    registry = ClientRegistry(str(path))
    client = await registry.register("Editor", redirect_uris=[CLIENT_REDIRECT])

    stored = json.loads(path.read_text(encoding="utf-8"))
    assert client.client_id in stored

    reloaded = ClientRegistry(str(path))
    assert await reloaded.count() == 1
    assert await reloaded.validate(client.client_id, client.client_secret)
    assert not await reloaded.validate(client.client_id, "wrong-secret")
    assert await reloaded.is_redirect_allowed(client.client_id, CLIENT_REDIRECT)
    assert not await reloaded.is_redirect_allowed(client.client_id, "http://other/cb")


@pytest.mark.asyncio
async def test_client_without_redirect_uris_matches_no_redirect(tmp_path):
    registry = ClientRegistry(str(tmp_path / "clients.json"))
    client = await registry.register("Legacy")

    assert not await registry.is_redirect_allowed(client.client_id, "https://evil.example/steal")
    assert not await registry.is_redirect_allowed(client.client_id, CLIENT_REDIRECT)
