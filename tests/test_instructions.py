#!/usr/bin/env python3
"""
Tests for instruction descriptors: account order, flags, argument encoding
"""
import unittest
from decimal import Decimal

from gateway_service import instructions as ix
from gateway_service.addresses import (
    RENT_SYSVAR, SYSTEM_PROGRAM_ID, TOKEN_PROGRAM_ID, USDC_MINT, agent_addresses, allowance_address,
    invoice_address, invoice_counter_address, subscription_address,
)

WALLET = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"

def layout(instruction):
    """(address, isSigner, isWritable) triples"""
    return [(str(m.address), m.is_signer, m.is_writable) for m in instruction.accounts]

class TestMinorUnits(unittest.TestCase):
    """Test decimal -> minor unit conversion"""

    def test_floor_conversion(self):
        self.assertEqual(ix.to_minor_units(1), 1_000_000)
        self.assertEqual(ix.to_minor_units(0.1), 100_000)
        self.assertEqual(ix.to_minor_units("2.5"), 2_500_000)
        self.assertEqual(ix.to_minor_units(Decimal("1.9999999")), 1_999_999)
        self.assertEqual(ix.to_minor_units(0.0000001), 0)

class TestPaymentInstructions(unittest.TestCase):

    def test_transfer_layout(self):
        alice, bob = agent_addresses("alice"), agent_addresses("bob")
        instruction = ix.transfer_by_name("alice", "bob", 1_500_000, "lunch", WALLET)
        self.assertEqual(instruction.name, "transferByName")
        self.assertEqual(layout(instruction), [
            (str(alice.record), False, True),
            (str(alice.vault), False, True),
            (str(bob.record), False, True),
            (str(bob.vault), False, True),
            (WALLET, True, False),
            (str(TOKEN_PROGRAM_ID), False, False),
        ])
        self.assertEqual(instruction.args, {"amount": 1_500_000, "memo": "lunch"})

    def test_missing_wallet_uses_placeholder(self):
        instruction = ix.transfer_by_name("alice", "bob", 1)
        self.assertEqual(instruction.to_dict()["accounts"][4],
                         {"address": "SIGNER_REQUIRED", "isSigner": True, "isWritable": False})

    def test_batch_remaining_accounts_in_payment_order(self):
        payments = [("carol", 1_000_000, None), ("bob", 2_000_000, "x"), ("dave", 3, None)]
        instruction = ix.batch_payment("alice", payments, WALLET)
        accounts = layout(instruction)
        self.assertEqual(len(accounts), 4 + 2 * len(payments))
        self.assertEqual(accounts[2], (WALLET, True, False))
        expected_tail = []
        for name in ("carol", "bob", "dave"):
            expected_tail.append((str(agent_addresses(name).record), False, True))
            expected_tail.append((str(agent_addresses(name).vault), False, True))
        self.assertEqual(accounts[4:], expected_tail)
        self.assertEqual(instruction.args["payments"][1], {"recipientName": "bob", "amount": 2_000_000, "memo": "x"})

    def test_split_layout(self):
        instruction = ix.split_payment("alice", 10_000_000, [("bob", 6000), ("carol", 4000)], "rent", WALLET)
        accounts = layout(instruction)
        self.assertEqual(accounts[0], (str(agent_addresses("alice").record), False, True))
        self.assertEqual(accounts[4][0], str(agent_addresses("bob").record))
        self.assertEqual(accounts[7][0], str(agent_addresses("carol").vault))
        self.assertEqual(instruction.args["recipients"], [{"name": "bob", "shareBps": 6000},
                                                          {"name": "carol", "shareBps": 4000}])
        self.assertEqual(instruction.args["totalAmount"], 10_000_000)

    def test_register_layout(self):
        alice = agent_addresses("alice")
        self.assertEqual(layout(ix.register_agent("alice", WALLET)), [
            (str(alice.record), False, True),
            (str(alice.vault), False, True),
            (str(USDC_MINT), False, False),
            (WALLET, True, True),
            (str(SYSTEM_PROGRAM_ID), False, False),
            (str(TOKEN_PROGRAM_ID), False, False),
            (str(RENT_SYSVAR), False, False),
        ])

class TestSubscriptionAndAllowanceInstructions(unittest.TestCase):

    def test_create_subscription(self):
        instruction = ix.create_subscription("alice", "bob", 5, 3600, WALLET)
        accounts = layout(instruction)
        self.assertEqual(accounts[0], (str(subscription_address("alice", "bob")), False, True))
        self.assertEqual(accounts[1], (str(agent_addresses("alice").record), False, False))
        self.assertEqual(accounts[3], (WALLET, True, False))
        self.assertEqual(accounts[4], (WALLET, True, True))
        self.assertEqual(instruction.args, {"receiverName": "bob", "amount": 5, "intervalSeconds": 3600})

    def test_execute_subscription_cranker_last(self):
        accounts = layout(ix.execute_subscription("alice", "bob", WALLET))
        self.assertEqual(accounts[3][0], str(agent_addresses("alice").vault))
        self.assertEqual(accounts[4][0], str(agent_addresses("bob").vault))
        self.assertEqual(accounts[5], (str(TOKEN_PROGRAM_ID), False, False))
        self.assertEqual(accounts[6], (WALLET, True, False))

    def test_transfer_from(self):
        accounts = layout(ix.transfer_from("alice", "bob", 7, None, WALLET))
        self.assertEqual(accounts[0], (str(allowance_address("alice", "bob")), False, True))
        self.assertEqual(accounts[1][0], str(agent_addresses("alice").record))
        self.assertEqual(accounts[2][0], str(agent_addresses("bob").record))
        self.assertEqual(accounts[5], (WALLET, True, False))

    def test_revoke_and_increase(self):
        self.assertEqual(len(ix.revoke_allowance("alice", "bob").accounts), 2)
        increase = ix.increase_allowance("alice", "bob", 3_000_000, WALLET)
        self.assertEqual(increase.args, {"additionalAmount": 3_000_000})

class TestInvoiceInstructions(unittest.TestCase):

    def test_create_invoice(self):
        instruction = ix.create_invoice(7, "alice", "bob", 2_000_000, "api calls", 3600, WALLET)
        accounts = layout(instruction)
        self.assertEqual(accounts[0], (str(invoice_address(7)), False, True))
        self.assertEqual(accounts[1], (str(invoice_counter_address()), False, True))
        self.assertEqual(accounts[2], (str(agent_addresses("alice").record), False, False))
        self.assertEqual(accounts[3], (str(agent_addresses("bob").record), False, False))
        self.assertEqual(instruction.args["payerName"], "bob")
        self.assertEqual(instruction.args["expiresInSeconds"], 3600)

    def test_pay_invoice_payer_first(self):
        accounts = layout(ix.pay_invoice(7, "alice", "bob", WALLET))
        self.assertEqual(accounts[1][0], str(agent_addresses("bob").record))
        self.assertEqual(accounts[2][0], str(agent_addresses("alice").record))
        self.assertEqual(accounts[3][0], str(agent_addresses("bob").vault))

    def test_reject_and_cancel(self):
        reject = layout(ix.reject_invoice(7, "bob", WALLET))
        self.assertEqual(reject[1], (str(agent_addresses("bob").record), False, False))
        self.assertEqual(layout(ix.cancel_invoice(7, WALLET)), [
            (str(invoice_address(7)), False, True),
            (WALLET, True, False),
        ])

class TestRefundMemo(unittest.TestCase):

    def test_with_and_without_reason(self):
        self.assertEqual(ix.refund_memo(4), "Refund (ref: invoice#4)")
        self.assertEqual(ix.refund_memo(4, "duplicate"), "Refund: duplicate (ref: invoice#4)")

    def test_truncated_past_128_bytes(self):
        memo = ix.refund_memo(4, "x" * 200)
        self.assertEqual(len(memo.encode("utf-8")), 123)
        self.assertTrue(memo.endswith("..."))

    def test_truncation_keeps_valid_utf8(self):
        memo = ix.refund_memo(4, "é" * 100)
        self.assertLessEqual(len(memo.encode("utf-8")), 123)
        self.assertTrue(memo.startswith("Refund: é"))

if __name__ == "__main__":
    unittest.main()
