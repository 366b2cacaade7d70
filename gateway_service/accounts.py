"""
Byte layouts and decoders for the program's account records.

Records are Anchor accounts: an 8-byte discriminator
(``sha256("account:<Name>")[:8]``) followed by Borsh-encoded fields.
Each decoder checks the discriminator and reads every field against a fixed
layout; a record that does not match raises ``AccountDecodeError`` instead of
yielding a half-populated entity.
"""
import hashlib
import struct
from dataclasses import dataclass
from typing import Optional

from solders.pubkey import Pubkey

DISCRIMINATOR_SIZE = 8
MINOR_UNITS = 1_000_000

# Byte offsets inside an Invoice record, used for memcmp scans
INVOICE_REQUESTER_OFFSET = DISCRIMINATOR_SIZE + 8
INVOICE_PAYER_OFFSET = INVOICE_REQUESTER_OFFSET + 32
# Sender / owner address follows the discriminator directly
SUBSCRIPTION_SENDER_OFFSET = DISCRIMINATOR_SIZE
ALLOWANCE_OWNER_OFFSET = DISCRIMINATOR_SIZE

# SPL token account: mint[32] owner[32] amount:u64 ...
TOKEN_AMOUNT_OFFSET = 64

class AccountDecodeError(ValueError):
    """Raised when raw account bytes do not match the expected layout"""

def account_discriminator(account_name: str) -> bytes:
    return hashlib.sha256(f"account:{account_name}".encode("utf-8")).digest()[:DISCRIMINATOR_SIZE]

AGENT_KIND = "AgentRegistry"
SUBSCRIPTION_KIND = "Subscription"
ALLOWANCE_KIND = "Allowance"
INVOICE_COUNTER_KIND = "InvoiceCounter"
INVOICE_KIND = "Invoice"

DISCRIMINATORS = {
    kind: account_discriminator(kind)
    for kind in (AGENT_KIND, SUBSCRIPTION_KIND, ALLOWANCE_KIND, INVOICE_COUNTER_KIND, INVOICE_KIND)
}

@dataclass(frozen=True)
class Agent:
    name: str
    authority: Pubkey
    vault: Pubkey
    created_at: int
    total_sent: int
    total_received: int
    # None on records written before spending caps existed
    daily_limit: Optional[int] = None
    daily_spent: Optional[int] = None
    last_spend_day: Optional[int] = None

    @property
    def has_spending_cap(self) -> bool:
        return bool(self.daily_limit)

@dataclass(frozen=True)
class Subscription:
    sender: Pubkey
    receiver: Pubkey
    sender_name: str
    receiver_name: str
    amount: int
    interval_seconds: int
    last_executed: int
    next_due: int
    is_active: bool
    authority: Pubkey
    total_paid: int
    execution_count: int

@dataclass(frozen=True)
class Allowance:
    owner: Pubkey
    spender: Pubkey
    owner_name: str
    spender_name: str
    amount: int
    total_pulled: int
    pull_count: int
    is_active: bool
    authority: Pubkey

@dataclass(frozen=True)
class InvoiceCounter:
    count: int

@dataclass(frozen=True)
class Invoice:
    id: int
    requester: Pubkey
    payer: Pubkey
    requester_name: str
    payer_name: str
    amount: int
    memo: str
    status: int
    created_at: int
    expires_at: int
    paid_at: int
    authority: Pubkey

class _BorshReader:
    """Sequential little-endian reader over one record"""

    def __init__(self, data: bytes, kind: str):
        self.data = bytes(data)
        self.kind = kind
        self.offset = 0
        expected = DISCRIMINATORS[kind]
        if self.data[:DISCRIMINATOR_SIZE] != expected:
            raise AccountDecodeError(f"{kind}: discriminator mismatch")
        self.offset = DISCRIMINATOR_SIZE

    def remaining(self) -> int:
        return len(self.data) - self.offset

    def _take(self, size: int) -> bytes:
        if self.remaining() < size:
            raise AccountDecodeError(f"{self.kind}: truncated at offset {self.offset} (need {size} bytes)")
        chunk = self.data[self.offset:self.offset + size]
        self.offset += size
        return chunk

    def _unpack(self, fmt: str, size: int):
        return struct.unpack(fmt, self._take(size))[0]

    def u8(self) -> int:
        return self._unpack("<B", 1)

    def u64(self) -> int:
        return self._unpack("<Q", 8)

    def i64(self) -> int:
        return self._unpack("<q", 8)

    def boolean(self) -> bool:
        value = self.u8()
        if value not in (0, 1):
            raise AccountDecodeError(f"{self.kind}: invalid bool byte {value}")
        return value == 1

    def pubkey(self) -> Pubkey:
        return Pubkey.from_bytes(self._take(32))

    def string(self) -> str:
        length = self._unpack("<I", 4)
        raw = self._take(length)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise AccountDecodeError(f"{self.kind}: string is not valid UTF-8") from e

def decode_agent(data: bytes) -> Agent:
    r = _BorshReader(data, AGENT_KIND)
    r._take(32)  # name hash
    name = r.string()
    authority = r.pubkey()
    vault = r.pubkey()
    created_at = r.i64()
    total_sent = r.u64()
    total_received = r.u64()
    r.u8()  # bump
    r.u8()  # vault bump

    daily_limit = daily_spent = last_spend_day = None
    if r.remaining() >= 24:
        daily_limit = r.u64()
        daily_spent = r.u64()
        last_spend_day = r.i64()

    return Agent(
        name=name,
        authority=authority,
        vault=vault,
        created_at=created_at,
        total_sent=total_sent,
        total_received=total_received,
        daily_limit=daily_limit,
        daily_spent=daily_spent,
        last_spend_day=last_spend_day,
    )

def decode_subscription(data: bytes) -> Subscription:
    r = _BorshReader(data, SUBSCRIPTION_KIND)
    return Subscription(
        sender=r.pubkey(),
        receiver=r.pubkey(),
        sender_name=r.string(),
        receiver_name=r.string(),
        amount=r.u64(),
        interval_seconds=r.i64(),
        last_executed=r.i64(),
        next_due=r.i64(),
        is_active=r.boolean(),
        authority=r.pubkey(),
        total_paid=r.u64(),
        execution_count=r.u64(),
    )

def decode_allowance(data: bytes) -> Allowance:
    r = _BorshReader(data, ALLOWANCE_KIND)
    return Allowance(
        owner=r.pubkey(),
        spender=r.pubkey(),
        owner_name=r.string(),
        spender_name=r.string(),
        amount=r.u64(),
        total_pulled=r.u64(),
        pull_count=r.u64(),
        is_active=r.boolean(),
        authority=r.pubkey(),
    )

def decode_invoice_counter(data: bytes) -> InvoiceCounter:
    r = _BorshReader(data, INVOICE_COUNTER_KIND)
    return InvoiceCounter(count=r.u64())

def decode_invoice(data: bytes) -> Invoice:
    r = _BorshReader(data, INVOICE_KIND)
    return Invoice(
        id=r.u64(),
        requester=r.pubkey(),
        payer=r.pubkey(),
        requester_name=r.string(),
        payer_name=r.string(),
        amount=r.u64(),
        memo=r.string(),
        status=r.u8(),
        created_at=r.i64(),
        expires_at=r.i64(),
        paid_at=r.i64(),
        authority=r.pubkey(),
    )

DECODERS = {
    AGENT_KIND: decode_agent,
    SUBSCRIPTION_KIND: decode_subscription,
    ALLOWANCE_KIND: decode_allowance,
    INVOICE_COUNTER_KIND: decode_invoice_counter,
    INVOICE_KIND: decode_invoice,
}

def decode_token_amount(data: bytes) -> int:
    """Balance held by an SPL token account, in minor units"""
    if len(data) < TOKEN_AMOUNT_OFFSET + 8:
        raise AccountDecodeError("TokenAccount: truncated")
    return struct.unpack_from("<Q", data, TOKEN_AMOUNT_OFFSET)[0]

def to_display_units(minor: int) -> float:
    return minor / MINOR_UNITS
