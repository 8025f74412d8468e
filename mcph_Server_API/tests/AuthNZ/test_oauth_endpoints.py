import pytest

from urllib.parse import parse_qs, urlsplit

CLIENT_REDIRECT = "http://localhost:3000/cb"


def _authorize_and_callback(client, client_id: str, subject: str = "user-5", state: str = "s1") -> dict:
    r = client.get(
        "/auth/authorize",
        params={"client_id": client_id, "redirect_uri": CLIENT_REDIRECT, "response_type": "code", "state": state},
        follow_redirects=False,
    )
    assert r.status_code == 302, r.text
    upstream = urlsplit(r.headers["location"])
    upstream_query = parse_qs(upstream.query)
    assert upstream_query["redirect_uri"] == ["https://testserver/auth/callback"]

    r = client.get(
        "/auth/callback",
        params={"code": subject, "state": upstream_query["state"][0]},
        follow_redirects=False,
    )
    assert r.status_code == 302, r.text
    location = r.headers["location"]
    assert location.startswith(CLIENT_REDIRECT)
    return parse_qs(urlsplit(location).query)


def test_discovery_metadata(client):
    r = client.get("/.well-known/oauth-authorization-server")
    assert r.status_code == 200
    data = r.json()
    assert data["issuer"] == "https://testserver"
    assert data["authorization_endpoint"] == "https://testserver/auth/authorize"
    assert data["token_endpoint"] == "https://testserver/auth/token"
    assert data["registration_endpoint"] == "https://testserver/oauth/register"
    assert data["grant_types_supported"] == ["authorization_code"]

    forwarded = client.get("/.well-known/oauth-authorization-server", headers={"x-forwarded-proto": "http"})
    assert forwarded.json()["issuer"] == "http://testserver"


def test_register_then_full_code_flow(client):
    r = client.post("/oauth/register", json={"client_name": "Desk", "redirect_uris": [CLIENT_REDIRECT]})
    assert r.status_code == 201, r.text
    registration = r.json()
    assert registration["client_id"].startswith("mcp_client_")
    assert registration["client_secret"]

    query = _authorize_and_callback(client, registration["client_id"])
    assert query["state"] == ["s1"]

    r = client.post(
        "/auth/token",
        data={
            "grant_type": "authorization_code",
            "code": query["code"][0],
            "redirect_uri": CLIENT_REDIRECT,
            "client_id": registration["client_id"],
            "client_secret": registration["client_secret"],
        },
    )
    assert r.status_code == 200, r.text
    assert r.headers["cache-control"] == "no-store"
    assert r.headers["pragma"] == "no-cache"
    token = r.json()
    assert token["token_type"] == "Bearer"

    info = client.get("/auth/info", headers={"Authorization": f"Bearer {token['access_token']}"})
    assert info.status_code == 200
    assert info.json()["active"] is True
    assert info.json()["client_id"] == registration["client_id"]

    # The exchanged token is accepted by the MCP transport
    r = client.post(
        "/mcp",
        json={"jsonrpc": "2.0", "id": 1, "method": "tools/call", "params": {"name": "crates_list", "arguments": {}}},
        headers={"Authorization": f"Bearer {token['access_token']}"},
    )
    assert r.status_code == 200, r.text
    assert "result" in r.json()


def test_token_endpoint_accepts_json_and_rejects_reuse(client):
    query = _authorize_and_callback(client, "cli-json")
    body = {
        "grant_type": "authorization_code",
        "code": query["code"][0],
        "redirect_uri": CLIENT_REDIRECT,
        "client_id": "cli-json",
    }

    assert client.post("/auth/token", json=body).status_code == 200
    reuse = client.post("/auth/token", json=body)
    assert reuse.status_code == 400
    assert reuse.json()["error"] == "invalid_grant"


def test_oauth_error_shapes(client):
    r = client.post("/auth/token", data={"grant_type": "password"})
    assert r.status_code == 400
    assert r.json() == {
        "error": "unsupported_grant_type",
        "error_description": "Only authorization_code grant type is supported",
    }

    r = client.get("/auth/authorize", params={"client_id": "x"}, follow_redirects=False)
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_request"

    r = client.get("/auth/callback", params={"error": "access_denied"}, follow_redirects=False)
    assert r.status_code == 400
    assert r.json()["error"] == "access_denied"

    r = client.post("/oauth/register", json={"redirect_uris": [CLIENT_REDIRECT]})
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_client_metadata"

    r = client.post("/auth/token", content=b"{not json", headers={"content-type": "application/json"})
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_request"


def test_token_info_requires_known_bearer(client):
    r = client.get("/auth/info")
    assert r.status_code == 401
    assert r.json() == {"error": "Missing or invalid authorization header"}

    r = client.get("/auth/info", headers={"Authorization": "Bearer unknown"})
    assert r.status_code == 401
    assert r.json()["error"].startswith("Invalid token")


def test_registration_requires_a_redirect_uri(client):
    r = client.post("/oauth/register", json={"client_name": "no-uris"})
    assert r.status_code == 400
    assert r.json() == {"error": "invalid_client_metadata", "error_description": "redirect_uris is required"}


def test_authorize_refuses_unregistered_redirect_uri(client):
    registration = client.post(
        "/oauth/register", json={"client_name": "Desk", "redirect_uris": [CLIENT_REDIRECT]}
    ).json()

    r = client.get(
        "/auth/authorize",
        params={
            "client_id": registration["client_id"],
            "redirect_uri": "https://evil.example/steal",
            "response_type": "code",
        },
        follow_redirects=False,
    )
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_request"
    assert "location" not in r.headers


@pytest.mark.parametrize("as_form", [False, True])
def test_single_redirect_uri_is_registered_as_a_list(client, as_form):
    payload = {"client_name": "Desk", "redirect_uris": CLIENT_REDIRECT}
    if as_form:
        r = client.post("/oauth/register", data=payload)
    else:
        r = client.post("/oauth/register", json=payload)
    assert r.status_code == 201, r.text
    registration = r.json()
    assert registration["redirect_uris"] == [CLIENT_REDIRECT]

    query = _authorize_and_callback(client, registration["client_id"])
    assert query["code"]


def test_repeated_form_redirect_uris_are_all_kept(client):
    second = "http://localhost:4000/cb"
    r = client.post("/oauth/register", data={"client_name": "Desk", "redirect_uris": [CLIENT_REDIRECT, second]})
    assert r.status_code == 201, r.text
    assert r.json()["redirect_uris"] == [CLIENT_REDIRECT, second]


@pytest.mark.parametrize(
    "payload",
    [
        {"client_name": 123, "redirect_uris": [CLIENT_REDIRECT]},
        {"client_name": "", "redirect_uris": [CLIENT_REDIRECT]},
        {"client_name": "Desk", "redirect_uris": []},
        {"client_name": "Desk", "redirect_uris": [42]},
        {"client_name": "Desk", "redirect_uris": ["/relative/cb"]},
        {"client_name": "Desk", "redirect_uris": ["https://app.example/cb#frag"]},
    ],
)
def test_malformed_registration_metadata_is_400(client, payload):
    r = client.post("/oauth/register", json=payload)
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_client_metadata"
