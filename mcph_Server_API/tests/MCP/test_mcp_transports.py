import json

from fastapi.testclient import TestClient

from mcph_Server_API.app.main import create_app


def _rpc(method, params=None, request_id=1):
    body = {"jsonrpc": "2.0", "method": method}
    if params is not None:
        body["params"] = params
    if request_id is not None:
        body["id"] = request_id
    return body


def _tool(name, arguments, request_id=1):
    return _rpc("tools/call", {"name": name, "arguments": arguments}, request_id)


def test_initialize_over_stateless_http(client, auth_headers, config):
    r = client.post("/mcp", json=_rpc("initialize", {"clientInfo": {"name": "pytest"}}), headers=auth_headers)

    assert r.status_code == 200, r.text
    body = r.json()
    assert body["jsonrpc"] == "2.0"
    assert body["id"] == 1
    assert body["result"]["protocolVersion"] == config.protocol_version
    assert r.headers["MCP-Protocol-Version"] == config.protocol_version


def test_protocol_version_header_is_echoed(client, auth_headers):
    headers = dict(auth_headers, **{"MCP-Protocol-Version": "2025-03-26"})
    r = client.post("/mcp", json=_rpc("ping"), headers=headers)
    assert r.headers["MCP-Protocol-Version"] == "2025-03-26"


def test_tools_list_over_http(client, auth_headers):
    r = client.post("/mcp", json=_rpc("tools/list"), headers=auth_headers)
    names = {t["name"] for t in r.json()["result"]["tools"]}
    assert {"crates_get", "crates_list", "crates_upload", "crates_share", "crates_delete"} <= names


def test_notification_gets_empty_response(client, auth_headers):
    r = client.post("/mcp", json=_rpc("notifications/initialized", request_id=None), headers=auth_headers)
    assert r.status_code == 200
    assert r.content == b""


def test_batch_over_http(client, auth_headers):
    r = client.post(
        "/mcp",
        json=[_rpc("ping", request_id=1), _rpc("notifications/initialized", request_id=None), _rpc("x/y", request_id=2)],
        headers=auth_headers,
    )
    body = r.json()
    assert [item["id"] for item in body] == [1, 2]
    assert body[1]["error"]["code"] == -32601


def test_malformed_body_is_parse_error(client, auth_headers):
    for raw in (b"{not json", b"42", b'"text"'):
        r = client.post("/mcp", content=raw, headers=dict(auth_headers, **{"content-type": "application/json"}))
        assert r.status_code == 400
        assert r.json()["error"]["code"] == -32700
        assert r.json()["id"] is None


def test_unknown_tool_and_bad_params_over_http(client, auth_headers):
    r = client.post("/mcp", json=_tool("crates_nope", {"id": "x"}), headers=auth_headers)
    assert r.status_code == 200
    assert r.json()["error"]["code"] == -32601

    r = client.post("/mcp", json=_tool("crates_get", {"password": 3}), headers=auth_headers)
    error = r.json()["error"]
    assert error["code"] == -32602
    assert error["data"]["issues"]


def test_anonymous_caller_limited_to_allow_listed_tool(client, auth_headers):
    upload = client.post(
        "/mcp",
        json=_tool("crates_upload", {
            "fileName": "notes.md",
            "contentType": "text/markdown",
            "data": "# shared notes",
            "isPublic": True,
        }),
        headers=auth_headers,
    )
    crate_id = upload.json()["result"]["crate"]["id"]

    r = client.post("/mcp", json=_tool("crates_get", {"id": crate_id}))
    assert r.status_code == 200, r.text
    assert r.json()["result"]["content"][0]["text"] == "# shared notes"

    for name, arguments in (
        ("crates_list", {}),
        ("crates_delete", {"id": crate_id}),
        ("crates_upload", {"fileName": "a.txt", "contentType": "text/plain", "data": "a"}),
    ):
        r = client.post("/mcp", json=_tool(name, arguments))
        assert r.status_code in (401, 403)
        assert "error" in r.json()

    assert client.post("/mcp", json=_rpc("tools/list")).status_code == 401


def test_invalid_credential_is_rejected_even_for_allow_listed_tool(client):
    r = client.post("/mcp", json=_tool("crates_get", {"id": "x"}), headers={"Authorization": "Bearer mcph_bogus"})
    assert r.status_code == 401
    assert r.json() == {"error": "Invalid API key"}


def test_auth_failures_keep_protocol_version_header(client, config):
    r = client.post("/mcp", json=_rpc("tools/list"), headers={"MCP-Protocol-Version": "2025-03-26"})
    assert r.status_code == 401
    assert r.headers["MCP-Protocol-Version"] == "2025-03-26"

    r = client.post("/mcp", json=_tool("crates_get", {"id": "x"}), headers={"Authorization": "Bearer mcph_bogus"})
    assert r.status_code == 401
    assert r.headers["MCP-Protocol-Version"] == config.protocol_version

    r = client.get("/auth/info")
    assert r.status_code == 401
    assert "MCP-Protocol-Version" not in r.headers


def test_x_authorization_header_is_accepted(client, api_key):
    r = client.post("/mcp", json=_rpc("ping"), headers={"x-authorization": f"Bearer {api_key}"})
    assert r.status_code == 200
    assert r.json()["result"]["pong"] is True


def test_key_store_outage_is_internal_error(mcp_server, auth_headers):
    client = TestClient(create_app(mcp_server), raise_server_exceptions=False)
    mcp_server.metadata_store.available = False

    r = client.post("/mcp", json=_rpc("ping"), headers=auth_headers)

    assert r.status_code == 500
    assert r.json()["error"] == {"code": -32603, "message": "Internal server error"}


def test_sse_message_is_delivered_on_the_stream(client, mcp_server, auth_headers, config):
    session = mcp_server.sessions.create()

    r = client.post(f"/mcp?sessionId={session.session_id}", json=_rpc("initialize"), headers=auth_headers)

    assert r.status_code == 200
    assert r.content == b""
    assert r.headers["mcp-session-id"] == session.session_id

    frame = session.queue.get_nowait()
    lines = dict(line.split(": ", 1) for line in frame.strip().splitlines())
    assert lines["id"] == "1"
    assert lines["event"] == "message"
    assert json.loads(lines["data"])["result"]["protocolVersion"] == config.protocol_version

    client.post(f"/sse?sessionId={session.session_id}", json=_rpc("ping", request_id=7), headers=auth_headers)
    second = session.queue.get_nowait()
    assert second.startswith("id: 2\n")


def test_sse_notification_emits_no_frame(client, mcp_server, auth_headers):
    session = mcp_server.sessions.create()
    r = client.post(
        f"/mcp?sessionId={session.session_id}",
        json=_rpc("notifications/initialized", request_id=None),
        headers=auth_headers,
    )
    assert r.status_code == 200
    assert session.queue.empty()
    assert session.next_event_id == 1


def test_sse_unknown_session(client, auth_headers):
    r = client.post("/mcp?sessionId=does-not-exist", json=_rpc("ping"), headers=auth_headers)
    assert r.status_code == 404
    assert r.json()["error"]["message"] == "Session not found"

    assert client.post("/sse", json=_rpc("ping"), headers=auth_headers).status_code == 404


def test_sse_message_requires_auth_like_stateless(client, mcp_server):
    session = mcp_server.sessions.create()
    r = client.post(f"/mcp?sessionId={session.session_id}", json=_tool("crates_list", {}))
    assert r.status_code == 401
    assert session.queue.empty()


def test_delete_and_disabled_streaming_are_405(make_server, make_config, make_client, client):
    r = client.delete("/mcp")
    assert r.status_code == 405
    assert r.json()["error"]["message"] == "Method not allowed."

    no_sse = make_client(make_server(make_config(sse_enabled=False)))
    r = no_sse.get("/mcp")
    assert r.status_code == 405
    assert no_sse.get("/sse").status_code == 405
