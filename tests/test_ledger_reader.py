#!/usr/bin/env python3
"""
Tests for the JSON-RPC ledger reader with the HTTP session mocked
"""
import base64
import unittest
from dataclasses import replace
from unittest.mock import MagicMock

import requests

from common.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from common.error_handling import ErrorCodes, UpstreamUnavailable
from common.retry import LEDGER_RETRY_CONFIG, RetryConfig
from gateway_service.accounts import AGENT_KIND, DISCRIMINATORS
from gateway_service.addresses import agent_addresses
from gateway_service.ledger import MemcmpFilter, SolanaLedgerReader

from ledger_fixtures import agent_bytes, token_account_bytes

def rpc_response(result=None, error=None):
    response = MagicMock()
    body = {"jsonrpc": "2.0", "id": 1}
    if error is not None:
        body["error"] = error
    else:
        body["result"] = result
    response.json.return_value = body
    return response

def account(data: bytes):
    return {"data": [base64.b64encode(data).decode("ascii"), "base64"], "owner": "x", "lamports": 1}

class TestLedgerReader(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.session = MagicMock()
        self.breaker = CircuitBreaker("test_rpc", CircuitBreakerConfig(failure_threshold=5, reset_timeout=60))
        self.reader = SolanaLedgerReader(
            rpc_url="http://rpc.test",
            session=self.session,
            breaker=self.breaker,
            retry_config=RetryConfig(max_attempts=2, base_delay=0, jitter=False,
                                     retryable_exceptions=[UpstreamUnavailable]),
        )

    async def test_fetch_raw_decodes_base64(self):
        data = agent_bytes("alice")
        self.session.post.return_value = rpc_response({"context": {"slot": 1}, "value": account(data)})
        self.assertEqual(await self.reader.fetch_raw(agent_addresses("alice").record), data)

        payload = self.session.post.call_args.kwargs["json"]
        self.assertEqual(payload["method"], "getAccountInfo")
        self.assertEqual(payload["params"][0], str(agent_addresses("alice").record))
        self.assertEqual(payload["params"][1]["encoding"], "base64")

    async def test_absent_account_is_none(self):
        self.session.post.return_value = rpc_response({"context": {"slot": 1}, "value": None})
        self.assertIsNone(await self.reader.fetch_raw(agent_addresses("nobody").record))
        self.assertFalse(await self.reader.account_exists(agent_addresses("nobody").record))

    async def test_rpc_error_is_unavailable_not_absent(self):
        self.session.post.return_value = rpc_response(error={"code": -32005, "message": "node is behind"})
        with self.assertRaises(UpstreamUnavailable) as ctx:
            await self.reader.fetch_raw(agent_addresses("alice").record)
        self.assertIn("node is behind", ctx.exception.message)
        self.assertEqual(self.session.post.call_count, 2)

    async def test_transient_failure_is_retried(self):
        data = token_account_bytes(42)
        self.session.post.side_effect = [
            requests.ConnectionError("reset"),
            rpc_response({"context": {"slot": 1}, "value": account(data)}),
        ]
        self.assertEqual(await self.reader.token_balance(agent_addresses("alice").vault), 42)

    async def test_missing_vault_balance_is_zero(self):
        self.session.post.return_value = rpc_response({"context": {"slot": 1}, "value": None})
        self.assertEqual(await self.reader.token_balance(agent_addresses("alice").vault), 0)

    async def test_malformed_payloads(self):
        bad = MagicMock()
        bad.json.side_effect = ValueError("not json")
        self.session.post.return_value = bad
        with self.assertRaises(UpstreamUnavailable):
            await self.reader.get_slot()

        self.session.post.return_value = rpc_response({"value": {"data": ["zz", "jsonParsed"]}})
        with self.assertRaises(UpstreamUnavailable):
            await self.reader.fetch_raw(agent_addresses("alice").record)

    async def test_program_scan_sends_discriminator_filter(self):
        alice, bob = agent_bytes("alice"), agent_bytes("bob")
        self.session.post.return_value = rpc_response([
            {"pubkey": str(agent_addresses("alice").record), "account": account(alice)},
            {"pubkey": str(agent_addresses("bob").record), "account": account(bob)},
        ])
        extra = MemcmpFilter(8, b"\x01\x02")
        records = await self.reader.fetch_all_of_kind(AGENT_KIND, [extra])
        self.assertEqual([data for _, data in records], [alice, bob])
        self.assertEqual(records[0][0], agent_addresses("alice").record)

        filters = self.session.post.call_args.kwargs["json"]["params"][1]["filters"]
        self.assertEqual(filters[0]["memcmp"]["offset"], 0)
        self.assertEqual(base64.b64decode(filters[0]["memcmp"]["bytes"]), DISCRIMINATORS[AGENT_KIND])
        self.assertEqual(filters[1], extra.to_rpc())

    async def test_get_slot(self):
        self.session.post.return_value = rpc_response(123456)
        self.assertEqual(await self.reader.get_slot(), 123456)

    async def test_open_breaker_fails_fast(self):
        reader = SolanaLedgerReader(
            rpc_url="http://rpc.test",
            session=self.session,
            breaker=CircuitBreaker("test_rpc", CircuitBreakerConfig(failure_threshold=1, reset_timeout=60)),
            retry_config=RetryConfig(max_attempts=1, retryable_exceptions=[UpstreamUnavailable]),
        )
        self.session.post.side_effect = requests.ConnectionError("down")
        with self.assertRaises(UpstreamUnavailable):
            await reader.get_slot()
        with self.assertRaises(UpstreamUnavailable) as ctx:
            await reader.get_slot()
        self.assertEqual(ctx.exception.code, ErrorCodes.CIRCUIT_BREAKER_OPEN)
        self.assertEqual(self.session.post.call_count, 1)

class TestLedgerRetryPolicy(unittest.IsolatedAsyncioTestCase):
    """Test which ledger failures the production retry policy retries"""

    def make_reader(self, failure_threshold=5):
        self.breaker = CircuitBreaker("retry_rpc", CircuitBreakerConfig(failure_threshold=failure_threshold,
                                                                        reset_timeout=60))
        return SolanaLedgerReader(
            rpc_url="http://rpc.test",
            session=self.session,
            breaker=self.breaker,
            retry_config=replace(LEDGER_RETRY_CONFIG, base_delay=0, jitter=False),
        )

    def setUp(self):
        self.session = MagicMock()

    async def test_rejected_request_is_not_retried(self):
        reader = self.make_reader()
        self.session.post.return_value = rpc_response(error={"code": -32602, "message": "Invalid params"})
        with self.assertRaises(UpstreamUnavailable) as ctx:
            await reader.get_slot()
        self.assertEqual(ctx.exception.code, ErrorCodes.LEDGER_RPC_ERROR)
        self.assertEqual(self.session.post.call_count, 1)

    async def test_unhealthy_node_is_retried(self):
        reader = self.make_reader()
        self.session.post.side_effect = [
            rpc_response(error={"code": -32005, "message": "node is behind"}),
            rpc_response(99),
        ]
        self.assertEqual(await reader.get_slot(), 99)
        self.assertEqual(self.session.post.call_count, 2)

    async def test_open_breaker_stops_retries(self):
        reader = self.make_reader(failure_threshold=1)
        self.session.post.side_effect = requests.ConnectionError("down")
        with self.assertLogs("common.retry", level="WARNING") as logs:
            with self.assertRaises(UpstreamUnavailable) as ctx:
                await reader.get_slot()
        self.assertEqual(ctx.exception.code, ErrorCodes.CIRCUIT_BREAKER_OPEN)
        self.assertEqual(self.session.post.call_count, 1)
        self.assertEqual(self.breaker.get_state()["total_rejected"], 1)
        self.assertIn("not retrying", logs.output[-1])

class TestMemcmpFilter(unittest.TestCase):

    def test_matches(self):
        f = MemcmpFilter(2, b"\xaa\xbb")
        self.assertTrue(f.matches(b"\x00\x00\xaa\xbb\x00"))
        self.assertFalse(f.matches(b"\x00\xaa\xbb"))

if __name__ == "__main__":
    unittest.main()
