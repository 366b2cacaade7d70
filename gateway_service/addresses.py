"""
Deterministic program-derived addresses for agents and their records.

Every address is a pure function of a seed tuple ``(tag, *parts)`` under the
fixed program namespace, so no ledger lookup is needed to locate a record.
Composite records (subscription, allowance) are seeded with the *agent record
addresses* of both participants, first-role participant first, so
``(alice, bob)`` and ``(bob, alice)`` never collide.
"""
import functools
from dataclasses import dataclass
from typing import Sequence

from solders.pubkey import Pubkey

from common.settings import settings

PROGRAM_ID = Pubkey.from_string(settings.program_id)
USDC_MINT = Pubkey.from_string(settings.usdc_mint)
TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")
RENT_SYSVAR = Pubkey.from_string("SysvarRent111111111111111111111111111111111")

AGENT_TAG = "agent"
VAULT_TAG = "vault"
SUBSCRIPTION_TAG = "subscription"
ALLOWANCE_TAG = "allowance"
INVOICE_COUNTER_TAG = "invoice_counter"
INVOICE_TAG = "invoice"

@dataclass(frozen=True)
class AgentAddresses:
    record: Pubkey
    vault: Pubkey

def derive(tag: str, parts: Sequence[bytes] = ()) -> Pubkey:
    """Derive the address for ``tag`` + ``parts`` under the program namespace"""
    address, _bump = Pubkey.find_program_address([tag.encode("utf-8"), *parts], PROGRAM_ID)
    return address

def invoice_id_seed(invoice_id: int) -> bytes:
    """8-byte little-endian encoding of an invoice id"""
    return int(invoice_id).to_bytes(8, "little", signed=False)

@functools.lru_cache(maxsize=4096)
def agent_addresses(name: str) -> AgentAddresses:
    seed = name.encode("utf-8")
    return AgentAddresses(record=derive(AGENT_TAG, [seed]), vault=derive(VAULT_TAG, [seed]))

def subscription_address(sender_name: str, receiver_name: str) -> Pubkey:
    return derive(SUBSCRIPTION_TAG, [
        bytes(agent_addresses(sender_name).record),
        bytes(agent_addresses(receiver_name).record),
    ])

def allowance_address(owner_name: str, spender_name: str) -> Pubkey:
    return derive(ALLOWANCE_TAG, [
        bytes(agent_addresses(owner_name).record),
        bytes(agent_addresses(spender_name).record),
    ])

def invoice_counter_address() -> Pubkey:
    return derive(INVOICE_COUNTER_TAG)

def invoice_address(invoice_id: int) -> Pubkey:
    return derive(INVOICE_TAG, [invoice_id_seed(invoice_id)])
