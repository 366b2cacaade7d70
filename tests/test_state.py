#!/usr/bin/env python3
"""
Tests for state reconstruction: invoice expiry, subscription due-ness, loaders
"""
import unittest

from common.error_handling import NotFoundError, UpstreamUnavailable
from gateway_service.accounts import decode_invoice, decode_subscription
from gateway_service.addresses import agent_addresses, invoice_address
from gateway_service.state import (
    STATUS_CANCELLED, STATUS_PAID, StateReconstructor, effective_invoice_status, format_interval,
    is_subscription_due, overdue_seconds,
)

from ledger_fixtures import NOW, FakeLedger, invoice_bytes, subscription_bytes

class TestInvoiceStatus(unittest.TestCase):
    """Test the lazy pending -> expired transition"""

    def test_pending_until_expiry_then_expired(self):
        invoice = decode_invoice(invoice_bytes(1, "alice", "bob", expires_at=NOW))
        self.assertEqual(effective_invoice_status(invoice, NOW - 1), "pending")
        self.assertEqual(effective_invoice_status(invoice, NOW), "pending")
        self.assertEqual(effective_invoice_status(invoice, NOW + 2), "expired")
        # Stored fields are untouched
        self.assertEqual(invoice.status, 0)

    def test_zero_expiry_never_expires(self):
        invoice = decode_invoice(invoice_bytes(1, "alice", "bob", expires_at=0))
        self.assertEqual(effective_invoice_status(invoice, NOW + 10 ** 9), "pending")

    def test_decided_invoice_keeps_stored_status(self):
        paid = decode_invoice(invoice_bytes(1, "alice", "bob", status=STATUS_PAID, expires_at=NOW))
        cancelled = decode_invoice(invoice_bytes(2, "alice", "bob", status=STATUS_CANCELLED, expires_at=NOW))
        self.assertEqual(effective_invoice_status(paid, NOW + 100), "paid")
        self.assertEqual(effective_invoice_status(cancelled, NOW + 100), "cancelled")

    def test_unknown_status_code(self):
        invoice = decode_invoice(invoice_bytes(1, "alice", "bob", status=9))
        self.assertEqual(effective_invoice_status(invoice, NOW), "unknown")

class TestSubscriptionDueness(unittest.TestCase):

    def test_due_when_active_and_next_due_passed(self):
        sub = decode_subscription(subscription_bytes("alice", "bob", next_due=NOW - 30))
        self.assertTrue(is_subscription_due(sub, NOW))
        self.assertEqual(overdue_seconds(sub, NOW), 30)

    def test_due_exactly_at_next_due(self):
        sub = decode_subscription(subscription_bytes("alice", "bob", next_due=NOW))
        self.assertTrue(is_subscription_due(sub, NOW))
        self.assertEqual(overdue_seconds(sub, NOW), 0)

    def test_not_due_in_future_or_inactive(self):
        future = decode_subscription(subscription_bytes("alice", "bob", next_due=NOW + 1))
        inactive = decode_subscription(subscription_bytes("alice", "bob", next_due=NOW - 100, is_active=False))
        self.assertFalse(is_subscription_due(future, NOW))
        self.assertFalse(is_subscription_due(inactive, NOW))
        self.assertEqual(overdue_seconds(inactive, NOW), 0)

    def test_format_interval(self):
        self.assertEqual(format_interval(59), "59 seconds")
        self.assertEqual(format_interval(120), "2 minutes")
        self.assertEqual(format_interval(7200), "2 hours")
        self.assertEqual(format_interval(86400 * 30), "30 days")

class TestStateReconstructor(unittest.IsolatedAsyncioTestCase):
    """Test loaders against the in-memory ledger"""

    def setUp(self):
        self.ledger = FakeLedger()
        self.state = StateReconstructor(self.ledger)
        self.ledger.add_agent("alice", vault_balance=7_500_000)
        self.ledger.add_agent("bob")
        self.ledger.add_agent("carol")

    async def test_require_agent_names_role(self):
        await self.state.require_agent("alice", "Sender")
        with self.assertRaises(NotFoundError) as ctx:
            await self.state.require_agent("dave", "Receiver")
        self.assertEqual(ctx.exception.message, 'Receiver agent "dave" not found')

    async def test_load_agent_missing(self):
        with self.assertRaises(NotFoundError):
            await self.state.load_agent("dave")

    async def test_vault_balance(self):
        self.assertEqual(await self.state.vault_balance("alice"), 7_500_000)
        self.assertEqual(await self.state.vault_balance("bob"), 0)

    async def test_unavailable_is_not_not_found(self):
        self.ledger.unavailable = True
        with self.assertRaises(UpstreamUnavailable):
            await self.state.load_agent("alice")
        with self.assertRaises(UpstreamUnavailable):
            await self.state.agent_exists("alice")

    async def test_undecodable_single_record_is_unavailable(self):
        self.ledger.put(agent_addresses("eve").record, b"garbage")
        with self.assertRaises(UpstreamUnavailable):
            await self.state.load_agent("eve")

    async def test_bulk_scan_skips_undecodable(self):
        good = self.ledger.accounts[agent_addresses("alice").record]
        self.ledger.put(agent_addresses("eve").record, good[:20])
        names = sorted(agent.name for agent in await self.state.list_agents())
        self.assertEqual(names, ["alice", "bob", "carol"])

    async def test_load_invoice_applies_expiry(self):
        self.ledger.add_invoice(3, "alice", "bob", expires_at=NOW + 60)
        self.assertEqual((await self.state.load_invoice(3, NOW)).status, "pending")
        view = await self.state.load_invoice(3, NOW + 61)
        self.assertEqual(view.status, "expired")
        self.assertEqual(view.address, invoice_address(3))
        self.assertEqual(view.to_dict()["statusCode"], 0)

    async def test_load_invoice_missing(self):
        with self.assertRaises(NotFoundError) as ctx:
            await self.state.load_invoice(99, NOW)
        self.assertEqual(ctx.exception.message, "Invoice #99 not found")

    async def test_invoices_by_role(self):
        self.ledger.add_invoice(0, "alice", "bob")
        self.ledger.add_invoice(1, "bob", "alice", expires_at=NOW - 5)
        self.ledger.add_invoice(2, "carol", "bob")

        as_requester = await self.state.invoices_as_requester("alice", NOW)
        as_payer = await self.state.invoices_as_payer("alice", NOW)
        self.assertEqual([v.invoice.id for v in as_requester], [0])
        self.assertEqual([v.invoice.id for v in as_payer], [1])
        self.assertEqual(as_payer[0].status, "expired")

        bob_pays = sorted(v.invoice.id for v in await self.state.invoices_as_payer("bob", NOW))
        self.assertEqual(bob_pays, [0, 2])

    async def test_invoice_counter(self):
        self.assertIsNone(await self.state.load_invoice_counter())
        self.ledger.set_counter(4)
        self.assertEqual((await self.state.load_invoice_counter()).count, 4)

    async def test_subscriptions(self):
        self.ledger.add_subscription("alice", "bob", next_due=NOW - 10)
        self.ledger.add_subscription("alice", "carol", next_due=NOW + 10)
        self.ledger.add_subscription("bob", "alice", next_due=NOW - 1, is_active=False)

        self.assertTrue(await self.state.subscription_exists("alice", "bob"))
        self.assertFalse(await self.state.subscription_exists("bob", "carol"))
        from_alice = await self.state.list_subscriptions(sender="alice")
        self.assertEqual(sorted(s.receiver_name for s in from_alice), ["bob", "carol"])
        self.assertEqual(len(await self.state.list_subscriptions()), 3)

        due = await self.state.list_due_subscriptions(NOW)
        self.assertEqual([(s.sender_name, s.receiver_name) for s in due], [("alice", "bob")])

    async def test_load_subscription_missing(self):
        with self.assertRaises(NotFoundError):
            await self.state.load_subscription("alice", "bob")

    async def test_allowances(self):
        self.ledger.add_allowance("alice", "bob")
        self.ledger.add_allowance("alice", "carol")
        self.ledger.add_allowance("bob", "alice")

        self.assertEqual(len(await self.state.list_allowances(owner="alice")), 2)
        rows = await self.state.list_allowances(owner="alice", spender="carol")
        self.assertEqual([a.spender_name for _, a in rows], ["carol"])
        self.assertEqual(len(await self.state.list_allowances(spender="alice")), 1)

        with self.assertRaises(NotFoundError) as ctx:
            await self.state.load_allowance("carol", "alice")
        self.assertEqual(ctx.exception.message, 'No allowance found from "carol" to "alice"')

if __name__ == "__main__":
    unittest.main()
