import json
import re
import tempfile
import textwrap
import unittest
from pathlib import Path
from typing import List, Optional
from unittest.mock import patch

try:  # pragma: no cover - runtime import with graceful fallback
    from toon_format import decode as toon_decode  # type: ignore[import-not-found]
except ImportError:  # pragma: no cover - dependency missing during static analysis
    toon_decode = None  # type: ignore[assignment]

from mcp.shared.exceptions import McpError
from mcp.shared.memory import create_connected_server_and_client_session

from gantz_relay import (
    AuditLog,
    AuthToken,
    Authorizer,
    ExecutionSandbox,
    RelayMCPServer,
    ToolRelay,
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
  - name: slow_tool
    description: Sleep for a while
    execution:
      shell: "echo started; sleep 5"
      timeout: 1
  - name: failing_tool
    description: Exit with an error
    execution:
      shell: "echo broken >&2; exit 3"
"""

TOKEN = "mcp-token-value"


def _extract_block(text: str, fence: str) -> str:
    match = re.search(rf"```{fence}\s*\n(.*?)\n```", text, re.DOTALL)
    if not match:
        raise AssertionError(f"No {fence} block found in: {text!r}")
    return match.group(1).strip()


class RelayMCPServerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        manifest = Path(self._tmp.name) / "gantz.yaml"
        manifest.write_text(textwrap.dedent(MANIFEST))
        self.sandbox = ExecutionSandbox()
        self.relay = ToolRelay(
            load_manifest(manifest),
            self.sandbox,
            Authorizer([AuthToken(token_id="client", value=TOKEN)]),
            audit=AuditLog(),
        )

    async def asyncTearDown(self) -> None:
        self._tmp.cleanup()

    def _binding(self, token: Optional[str] = TOKEN) -> RelayMCPServer:
        return RelayMCPServer(self.relay, token, transport="stdio")

    async def test_list_tools_over_session(self) -> None:
        async with create_connected_server_and_client_session(self._binding().app) as client:
            result = await client.list_tools()

        names = [tool.name for tool in result.tools]
        self.assertEqual(names, ["echo_tool", "stream_tool", "slow_tool", "failing_tool"])
        echo = result.tools[0]
        self.assertEqual(echo.inputSchema["required"], ["msg"])
        self.assertFalse(echo.inputSchema["additionalProperties"])

    async def test_call_tool_over_session(self) -> None:
        async with create_connected_server_and_client_session(self._binding().app) as client:
            result = await client.call_tool("echo_tool", {"msg": "hello world"})

        self.assertFalse(result.isError)
        self.assertEqual(result.content[0].text, "hello world")
        self.assertEqual(result.structuredContent, {"stdout": ["hello world"]})

    async def test_progress_notifications(self) -> None:
        messages: List[str] = []

        async def on_progress(progress: float, total: Optional[float], message: Optional[str]) -> None:
            messages.append(message or "")

        async with create_connected_server_and_client_session(self._binding().app) as client:
            result = await client.call_tool("stream_tool", {}, progress_callback=on_progress)

        self.assertFalse(result.isError)
        self.assertEqual("".join(messages), "one\ntwo\n")

    async def test_unknown_tool(self) -> None:
        async with create_connected_server_and_client_session(self._binding().app) as client:
            result = await client.call_tool("x", {})

        self.assertTrue(result.isError)
        self.assertEqual(result.structuredContent["error"], {"kind": "NotFound", "message": "Unknown tool: x"})
        self.assertEqual(result.structuredContent["status"], "not_found")
        self.assertIn("Unknown tool: x", result.content[0].text)

    async def test_list_tools_requires_token(self) -> None:
        async with create_connected_server_and_client_session(self._binding("wrong").app) as client:
            with self.assertRaises(McpError) as ctx:
                await client.list_tools()

        self.assertEqual(ctx.exception.error.code, -32001)

    async def test_unauthorized_call_never_spawns(self) -> None:
        result = await self._binding(None).call_tool("echo_tool", {"msg": "hi"})

        self.assertTrue(result.isError)
        self.assertEqual(result.structuredContent["error"]["kind"], "Unauthorized")
        self.assertEqual(self.sandbox.spawn_count, 0)

    async def test_timeout_response(self) -> None:
        result = await self._binding().call_tool("slow_tool", {})

        self.assertTrue(result.isError)
        self.assertEqual(result.structuredContent["status"], "timeout")
        self.assertEqual(result.structuredContent["stdout"], ["started"])
        self.assertEqual(result.structuredContent["error"]["kind"], "Timeout")

    async def test_non_zero_exit_response(self) -> None:
        result = await self._binding().call_tool("failing_tool", {})

        self.assertTrue(result.isError)
        text = result.content[0].text
        self.assertIn("exit: 3", text)
        self.assertIn("stderr:\nbroken", text)
        self.assertEqual(result.structuredContent["exitCode"], 3)

    async def test_validation_error_response(self) -> None:
        result = await self._binding().call_tool("echo_tool", {})

        self.assertTrue(result.isError)
        self.assertEqual(result.structuredContent["status"], "validation_error")
        self.assertEqual(
            result.content[0].text,
            "status: validation_error\nerror: MissingRequired: Missing required parameter: msg",
        )

    async def test_toon_mode_uses_full_payload(self) -> None:
        with patch.dict("os.environ", {"GANTZ_OUTPUT_MODE": "toon"}, clear=False):
            result = await self._binding().call_tool("echo_tool", {"msg": "line"})

        expected = {"status": "success", "summary": "Success", "exitCode": 0, "stdout": ["line"]}
        self.assertFalse(result.isError)
        self.assertEqual(result.structuredContent, expected)
        text = result.content[0].text
        if toon_decode is None:
            self.assertEqual(json.loads(_extract_block(text, "json")), expected)
        else:
            self.assertEqual(toon_decode(_extract_block(text, "toon")), expected)


if __name__ == "__main__":
    unittest.main()
