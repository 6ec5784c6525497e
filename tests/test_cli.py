import io
import json
import socket
import tempfile
import textwrap
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path
from unittest.mock import AsyncMock, patch

import yaml

import gantz_relay
from gantz_relay import (
    EXIT_BIND_ERROR,
    EXIT_LOAD_ERROR,
    EXIT_OK,
    EXIT_TUNNEL_ERROR,
    EXIT_USAGE,
    RelayConfig,
    TunnelError,
    build_parser,
    main,
    run_relay,
)


MANIFEST = """
name: cli-tools
version: "2.0.0"
tools:
  - name: echo_tool
    description: Echo a message
    parameters:
      - {name: msg, type: string, required: true}
    execution:
      shell: "echo {{msg}}"
"""


class CliTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.manifest = self.root / "gantz.yaml"
        self.manifest.write_text(textwrap.dedent(MANIFEST))
        self.broken = self.root / "broken.yaml"
        self.broken.write_text("tools:\n  - name: bad\n    description: x\n    execution: {shell: 'echo {{nope}}'}\n")

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _main(self, *argv: str):
        out, err = io.StringIO(), io.StringIO()
        with redirect_stdout(out), redirect_stderr(err):
            code = main(list(argv))
        return code, out.getvalue(), err.getvalue()

    def test_validate_ok(self) -> None:
        code, out, _ = self._main("validate", "--config", str(self.manifest))

        self.assertEqual(code, EXIT_OK)
        self.assertIn("cli-tools 2.0.0: 1 tools OK", out)
        self.assertIn("echo_tool", out)

    def test_validate_broken_manifest(self) -> None:
        code, _, err = self._main("validate", "--config", str(self.broken))

        self.assertEqual(code, EXIT_LOAD_ERROR)
        self.assertIn("nope", err)

    def test_tools_prints_schema_document(self) -> None:
        code, out, _ = self._main("tools", "--config", str(self.manifest))

        self.assertEqual(code, EXIT_OK)
        document = json.loads(out)
        self.assertEqual(document["tools"][0]["name"], "echo_tool")
        self.assertNotIn("execution", document["tools"][0])

    def test_token_prints_entry(self) -> None:
        code, out, _ = self._main("token", "--id", "ci", "--tool", "echo_tool", "--read-only")

        self.assertEqual(code, EXIT_OK)
        entry = yaml.safe_load(out)["tokens"][0]
        self.assertEqual(entry["id"], "ci")
        self.assertEqual(entry["scope"], ["read"])
        self.assertEqual(entry["tools"], ["echo_tool"])
        self.assertGreaterEqual(len(entry["value"]), 32)

    def test_run_broken_manifest_exits_with_load_error(self) -> None:
        code, _, err = self._main("run", "--config", str(self.broken), "--no-tunnel")

        self.assertEqual(code, EXIT_LOAD_ERROR)
        self.assertIn("error:", err)

    def test_config_from_args(self) -> None:
        args = build_parser().parse_args(
            ["run", "--config", "tools.yaml", "--port", "4000", "--auth", "--expensive", "deploy", "--transport", "stdio"]
        )

        config = RelayConfig.from_args(args)

        self.assertEqual(config.manifest, Path("tools.yaml"))
        self.assertEqual(config.port, 4000)
        self.assertTrue(config.require_auth)
        self.assertEqual(config.expensive_tools, ("deploy",))
        self.assertFalse(config.tunnel)


class RunRelayTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.manifest = Path(self._tmp.name) / "gantz.yaml"
        self.manifest.write_text(textwrap.dedent(MANIFEST))

    async def asyncTearDown(self) -> None:
        self._tmp.cleanup()

    async def test_port_in_use_exits_with_bind_error(self) -> None:
        holder = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        holder.bind(("127.0.0.1", 0))
        holder.listen(1)
        try:
            port = holder.getsockname()[1]
            config = RelayConfig(manifest=self.manifest, port=port, tunnel=False)
            with redirect_stderr(io.StringIO()):
                code = await run_relay(config, out=io.StringIO())
        finally:
            holder.close()

        self.assertEqual(code, EXIT_BIND_ERROR)

    async def test_tunnel_failure_exits_with_tunnel_error(self) -> None:
        config = RelayConfig(manifest=self.manifest, port=0, tunnel=True)
        connect = AsyncMock(side_effect=TunnelError("Could not reach relay"))

        err = io.StringIO()
        with patch.object(gantz_relay.TunnelClient, "connect", connect), redirect_stderr(err):
            code = await run_relay(config, out=io.StringIO())

        self.assertEqual(code, EXIT_TUNNEL_ERROR)
        self.assertIn("Could not reach relay", err.getvalue())

    async def test_stdio_with_auth_serves_the_minted_token(self) -> None:
        config = RelayConfig(manifest=self.manifest, transport="stdio", tunnel=False, require_auth=True)
        serve = AsyncMock(return_value=None)

        err = io.StringIO()
        with patch.object(gantz_relay, "serve_stdio", serve), redirect_stderr(err):
            code = await run_relay(config, out=io.StringIO())

        self.assertEqual(code, EXIT_OK)
        relay, session_token = serve.await_args.args
        self.assertIsNotNone(session_token)
        self.assertIn(f"Auth token: {session_token}", err.getvalue())
        self.assertEqual(relay.authorizer.authenticate(session_token).token_id, "default")
        self.assertEqual(len(relay.list_tools(session_token)), 1)

    async def test_stdio_with_auth_and_token_file_needs_a_token(self) -> None:
        tokens = Path(self._tmp.name) / "tokens.yaml"
        tokens.write_text("tokens:\n  - {id: ci, value: ci-secret-value}\n")
        config = RelayConfig(
            manifest=self.manifest,
            transport="stdio",
            tunnel=False,
            require_auth=True,
            tokens_file=tokens,
        )
        serve = AsyncMock(return_value=None)

        err = io.StringIO()
        with patch.object(gantz_relay, "serve_stdio", serve), redirect_stderr(err):
            code = await run_relay(config, out=io.StringIO())

        self.assertEqual(code, EXIT_USAGE)
        self.assertIn("GANTZ_TOKEN", err.getvalue())
        serve.assert_not_awaited()

    async def test_stdio_uses_the_configured_token(self) -> None:
        config = RelayConfig(manifest=self.manifest, transport="stdio", tunnel=False, require_auth=True, token="cli-secret")
        serve = AsyncMock(return_value=None)

        with patch.object(gantz_relay, "serve_stdio", serve):
            code = await run_relay(config, out=io.StringIO())

        self.assertEqual(code, EXIT_OK)
        self.assertEqual(serve.await_args.args[1], "cli-secret")

    async def test_run_prints_urls_and_minted_token(self) -> None:
        config = RelayConfig(manifest=self.manifest, port=0, tunnel=True, require_auth=True)
        out = io.StringIO()
        connect = AsyncMock(return_value="https://abc.gantz.run")
        serve = AsyncMock(return_value=None)

        with patch.object(gantz_relay.TunnelClient, "connect", connect), patch.object(
            gantz_relay.TunnelClient, "close", AsyncMock()
        ), patch.object(gantz_relay.uvicorn.Server, "serve", serve):
            code = await run_relay(config, out=out)

        self.assertEqual(code, EXIT_OK)
        lines = out.getvalue().splitlines()
        self.assertEqual(lines[0], "Public URL: https://abc.gantz.run")
        self.assertTrue(lines[1].startswith("Local URL: http://127.0.0.1:"))
        self.assertTrue(lines[2].startswith("Auth token: "))
        self.assertGreaterEqual(len(lines[2].split(": ", 1)[1]), 32)
        serve.assert_awaited_once()
        self.assertEqual(len(serve.await_args.kwargs["sockets"]), 1)


if __name__ == "__main__":
    unittest.main()
