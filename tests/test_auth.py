import tempfile
import textwrap
import unittest
from pathlib import Path
from unittest.mock import patch

from gantz_relay import (
    AuthToken,
    Authorizer,
    Forbidden,
    LoadError,
    RateLimited,
    Redactor,
    SlidingWindowRateLimiter,
    Unauthorized,
    load_tokens,
    mint_token,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class AuthorizerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.admin = AuthToken(token_id="admin", value="admin-token-value")
        self.reader = AuthToken(token_id="reader", value="reader-token-value", operations=frozenset({"read"}))
        self.scoped = AuthToken(
            token_id="scoped",
            value="scoped-token-value",
            tools=frozenset({"read_only_tool"}),
        )
        self.authorizer = Authorizer([self.admin, self.reader, self.scoped])

    def test_authenticate_known_token(self) -> None:
        self.assertIs(self.authorizer.authenticate("reader-token-value"), self.reader)

    def test_unknown_or_missing_token_is_unauthorized(self) -> None:
        for value in (None, "", "nope"):
            with self.subTest(value=value):
                with self.assertRaises(Unauthorized):
                    self.authorizer.authenticate(value)

    def test_token_scoped_to_other_tool_is_forbidden(self) -> None:
        self.authorizer.authorize("scoped-token-value", "read_only_tool", "call")

        with self.assertRaises(Forbidden) as ctx:
            self.authorizer.authorize("scoped-token-value", "deploy_tool", "call")

        self.assertEqual(ctx.exception.kind, "Forbidden")
        self.assertIn("deploy_tool", ctx.exception.message)

    def test_read_only_token_cannot_call(self) -> None:
        self.authorizer.authorize("reader-token-value", None, "list")

        with self.assertRaises(Forbidden):
            self.authorizer.authorize("reader-token-value", "anything", "call")

    def test_auth_disabled_uses_anonymous_token(self) -> None:
        authorizer = Authorizer(require_auth=False)

        token = authorizer.authorize(None, "any_tool", "call")

        self.assertEqual(token.token_id, "anonymous")
        self.assertEqual(token.operations, frozenset({"read", "write"}))

    def test_token_value_is_not_in_repr(self) -> None:
        self.assertNotIn("admin-token-value", repr(self.admin))

    def test_issue_token_registers_and_redacts(self) -> None:
        redactor = Redactor()
        authorizer = Authorizer(redactor=redactor)

        token = authorizer.issue_token(token_id="cli")

        self.assertIs(authorizer.authenticate(token.value), token)
        self.assertGreaterEqual(len(token.value), 32)
        self.assertEqual(redactor.redact(f"leak {token.value}"), "leak [REDACTED]")

    def test_minted_ids_are_derived_from_value(self) -> None:
        token = mint_token(operations={"read"}, tools=["a"])

        self.assertTrue(token.token_id.startswith("tok_"))
        self.assertEqual(token.tools, frozenset({"a"}))
        with self.assertRaises(ValueError):
            mint_token(operations={"admin"})


class RateLimitTests(unittest.TestCase):
    def test_sliding_window(self) -> None:
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(window=60, clock=clock)

        self.assertIsNone(limiter.acquire(("k", 2)))
        clock.now += 10
        self.assertIsNone(limiter.acquire(("k", 2)))
        self.assertAlmostEqual(limiter.acquire(("k", 2)), 50.0)

        clock.now += 50
        self.assertIsNone(limiter.acquire(("k", 2)))

    def test_rejected_call_records_nothing(self) -> None:
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(window=60, clock=clock)
        self.assertIsNone(limiter.acquire(("expensive", 1)))

        self.assertIsNotNone(limiter.acquire(("total", 5), ("expensive", 1)))
        for _ in range(5):
            self.assertIsNone(limiter.acquire(("total", 5)))
        self.assertIsNotNone(limiter.acquire(("total", 5)))

    def test_authorizer_rate_limits_per_token(self) -> None:
        clock = FakeClock()
        authorizer = Authorizer(
            [AuthToken(token_id="a", value="token-a-value"), AuthToken(token_id="b", value="token-b-value")],
            requests_per_minute=2,
            expensive_per_minute=1,
            expensive_tools=["heavy"],
            rate_limiter=SlidingWindowRateLimiter(clock=clock),
        )

        authorizer.authorize("token-a-value", "light", "call")
        authorizer.authorize("token-a-value", "light", "call")
        with self.assertRaises(RateLimited) as ctx:
            authorizer.authorize("token-a-value", "light", "call")
        self.assertAlmostEqual(ctx.exception.retry_after, 60.0)

        authorizer.authorize("token-b-value", "heavy", "call")
        with self.assertRaises(RateLimited):
            authorizer.authorize("token-b-value", "heavy", "call")
        authorizer.authorize("token-b-value", "light", "call")

    def test_manifest_expensive_flag(self) -> None:
        authorizer = Authorizer(
            [AuthToken(token_id="a", value="token-a-value")],
            expensive_per_minute=1,
            rate_limiter=SlidingWindowRateLimiter(clock=FakeClock()),
        )

        authorizer.authorize("token-a-value", "costly", "call", expensive=True)
        with self.assertRaises(RateLimited):
            authorizer.authorize("token-a-value", "costly", "call", expensive=True)


class TokenFileTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_load_tokens(self) -> None:
        path = self.root / "tokens.yaml"
        path.write_text(
            textwrap.dedent(
                """
                tokens:
                  - id: ci
                    value: ci-token-value
                    scope: [read]
                  - id: deployer
                    env: DEPLOY_TOKEN
                    tools: [deploy_tool]
                """
            )
        )

        with patch.dict("os.environ", {"DEPLOY_TOKEN": "deploy-token-value"}):
            tokens = load_tokens(path)

        self.assertEqual([t.token_id for t in tokens], ["ci", "deployer"])
        self.assertEqual(tokens[0].operations, frozenset({"read"}))
        self.assertEqual(tokens[1].value, "deploy-token-value")
        self.assertEqual(tokens[1].tools, frozenset({"deploy_tool"}))
        self.assertEqual(tokens[1].operations, frozenset({"read", "write"}))

    def test_invalid_token_file(self) -> None:
        path = self.root / "tokens.yaml"
        path.write_text("tokens:\n  - id: x\n    scope: [admin]\n    value: abc\n")

        with self.assertRaises(LoadError):
            load_tokens(path)


if __name__ == "__main__":
    unittest.main()
