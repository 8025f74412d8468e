import asyncio
import json

import pytest

from mcph_Server_API.app.core.MCP_unified.sessions import (
    HEARTBEAT_FRAME,
    SessionLimitError,
    SessionNotFoundError,
    SSESessionManager,
)


def _parse_frame(frame: str) -> dict:
    fields = {}
    for line in frame.strip().splitlines():
        name, _, value = line.partition(": ")
        fields[name] = value
    return fields


def test_session_ids_are_unique():
    manager = SSESessionManager()
    ids = {manager.create().session_id for _ in range(200)}
    assert len(ids) == 200
    assert manager.count() == 200


def test_session_limit():
    manager = SSESessionManager(max_sessions=1)
    manager.create()
    with pytest.raises(SessionLimitError):
        manager.create()


def test_event_ids_strictly_increase_and_are_never_reused():
    manager = SSESessionManager()
    session = manager.create()

    event_ids = [manager.send(session.session_id, {"n": i}) for i in range(50)]

    assert event_ids == list(range(1, 51))
    frames = [session.queue.get_nowait() for _ in range(50)]
    assert [int(_parse_frame(f)["id"]) for f in frames] == event_ids


def test_close_has_effect_exactly_once():
    manager = SSESessionManager()
    session = manager.create()

    assert manager.close(session.session_id) is True
    assert manager.close(session.session_id) is False
    assert manager.get(session.session_id) is None
    with pytest.raises(SessionNotFoundError):
        manager.send(session.session_id, {})


@pytest.mark.asyncio
async def test_stream_emits_endpoint_then_messages():
    manager = SSESessionManager(heartbeat_seconds=5)
    session = manager.create()
    stream = manager.stream(session, message_path="/mcp")

    assert await stream.__anext__() == HEARTBEAT_FRAME
    endpoint = _parse_frame(await stream.__anext__())
    assert endpoint == {"event": "endpoint", "data": f"/mcp?sessionId={session.session_id}"}

    manager.send(session.session_id, {"jsonrpc": "2.0", "id": 1, "result": {"protocolVersion": "2024-11-05"}})
    frame = _parse_frame(await asyncio.wait_for(stream.__anext__(), timeout=1))
    assert frame["id"] == "1"
    assert frame["event"] == "message"
    assert json.loads(frame["data"])["result"]["protocolVersion"] == "2024-11-05"

    await stream.aclose()
    assert manager.count() == 0


@pytest.mark.asyncio
async def test_stream_heartbeats_while_idle():
    manager = SSESessionManager(heartbeat_seconds=0.01)
    session = manager.create()
    stream = manager.stream(session)
    await stream.__anext__()
    await stream.__anext__()

    assert await asyncio.wait_for(stream.__anext__(), timeout=1) == HEARTBEAT_FRAME
    await stream.aclose()


@pytest.mark.asyncio
async def test_client_disconnect_cleans_up_once():
    manager = SSESessionManager(heartbeat_seconds=0.01)
    session = manager.create()

    async def gone():
        return True

    frames = [frame async for frame in manager.stream(session, gone)]

    assert len(frames) == 2
    assert manager.count() == 0
    assert session.closed


@pytest.mark.asyncio
async def test_server_close_ends_stream():
    manager = SSESessionManager(heartbeat_seconds=5)
    session = manager.create()

    async def consume():
        return [frame async for frame in manager.stream(session)]

    task = asyncio.create_task(consume())
    await asyncio.sleep(0)
    assert manager.close_all() == 1

    frames = await asyncio.wait_for(task, timeout=1)
    assert len(frames) == 2
    assert manager.count() == 0
