import json
import tempfile
import textwrap
from pathlib import Path
from typing import Dict, List

import httpx
import pytest

from gantz_relay import (
    AuditLog,
    AuthToken,
    Authorizer,
    ExecutionSandbox,
    ToolRelay,
    create_http_app,
    load_manifest,
)


MANIFEST = """
tools:
  - name: echo_tool
    description: Echo a message
    parameters:
      - {name: msg, type: string, required: true}
    execution:
      shell: "echo {{msg}}"
  - name: stream_tool
    description: Emit several lines
    execution:
      shell: "echo one; echo two"
      streaming: true
"""

TOKEN = "http-token-value"


@pytest.fixture
def relay_factory():
    tmp = tempfile.TemporaryDirectory()
    manifest = Path(tmp.name) / "gantz.yaml"
    manifest.write_text(textwrap.dedent(MANIFEST))

    def _make(require_auth: bool = True) -> ToolRelay:
        return ToolRelay(
            load_manifest(manifest),
            ExecutionSandbox(),
            Authorizer([AuthToken(token_id="http", value=TOKEN)], require_auth=require_auth),
            audit=AuditLog(),
        )

    yield _make
    tmp.cleanup()


def _client(relay: ToolRelay) -> httpx.AsyncClient:
    transport = httpx.ASGITransport(app=create_http_app(relay))
    return httpx.AsyncClient(transport=transport, base_url="http://testserver")


def _events(body: str) -> List[str]:
    return [line[len("data: "):] for line in body.splitlines() if line.startswith("data: ")]


def _messages(body: str) -> List[Dict[str, object]]:
    events = _events(body)
    assert events[-1] == "[DONE]"
    return [json.loads(event) for event in events[:-1]]


@pytest.mark.asyncio
async def test_health_needs_no_token(relay_factory):
    async with _client(relay_factory()) as client:
        response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "tools": 2}


@pytest.mark.asyncio
async def test_rpc_requires_bearer_token(relay_factory):
    async with _client(relay_factory()) as client:
        missing = await client.post("/rpc", json={"jsonrpc": "2.0", "id": 1, "method": "tools/list"})
        wrong = await client.post(
            "/rpc",
            json={"jsonrpc": "2.0", "id": 1, "method": "tools/list"},
            headers={"Authorization": "Bearer nope"},
        )

    assert missing.status_code == 401
    assert missing.headers["www-authenticate"] == "Bearer"
    assert missing.json()["error"]["kind"] == "Unauthorized"
    assert wrong.status_code == 401
    assert "nope" not in wrong.text


@pytest.mark.asyncio
async def test_rpc_tools_list(relay_factory):
    async with _client(relay_factory()) as client:
        response = await client.post(
            "/rpc",
            json={"jsonrpc": "2.0", "id": 1, "method": "tools/list"},
            headers={"Authorization": f"Bearer {TOKEN}"},
        )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    (reply,) = _messages(response.text)
    assert [tool["name"] for tool in reply["result"]["tools"]] == ["echo_tool", "stream_tool"]


@pytest.mark.asyncio
async def test_rpc_tools_call_streams_progress(relay_factory):
    async with _client(relay_factory()) as client:
        response = await client.post(
            "/rpc",
            json={"jsonrpc": "2.0", "id": "c1", "method": "tools/call", "params": {"name": "stream_tool"}},
            headers={"Authorization": f"Bearer {TOKEN}"},
        )

    messages = _messages(response.text)
    final = messages[-1]
    progress = [m for m in messages[:-1] if m["method"] == "notifications/progress"]
    assert final["id"] == "c1"
    assert final["result"]["stdout"]["text"] == "one\ntwo\n"
    assert progress[0]["params"]["type"] == "accepted"
    assert all(m["params"]["requestId"] == final["result"]["requestId"] for m in progress)


@pytest.mark.asyncio
async def test_rpc_echo_tool_without_auth(relay_factory):
    async with _client(relay_factory(require_auth=False)) as client:
        response = await client.post(
            "/rpc",
            json={
                "jsonrpc": "2.0",
                "id": 5,
                "method": "tools/call",
                "params": {"name": "echo_tool", "arguments": {"msg": "hello world"}},
            },
        )

    final = _messages(response.text)[-1]
    assert final["result"]["success"] is True
    assert final["result"]["stdout"]["text"] == "hello world\n"


@pytest.mark.asyncio
async def test_rpc_parse_error(relay_factory):
    async with _client(relay_factory()) as client:
        response = await client.post(
            "/rpc",
            content=b"{not json",
            headers={"Authorization": f"Bearer {TOKEN}", "Content-Type": "application/json"},
        )

    (reply,) = _messages(response.text)
    assert reply["error"]["code"] == -32700
    assert reply["error"]["kind"] == "ParseError"
