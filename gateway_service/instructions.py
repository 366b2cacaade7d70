"""
Instruction Assembler.

Builds unsigned instruction descriptors for the ledger program. Nothing here
performs I/O: callers pass names (addresses are derived locally) and already
validated arguments. The account order and signer/writable flags of each
builder must match the program's account structs exactly; the program rejects
anything else.
"""
import math
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from solders.pubkey import Pubkey

from gateway_service.accounts import MINOR_UNITS
from gateway_service.addresses import (
    RENT_SYSVAR, SYSTEM_PROGRAM_ID, TOKEN_PROGRAM_ID, USDC_MINT,
    agent_addresses, allowance_address, invoice_address, invoice_counter_address, subscription_address,
)

SIGNER_PLACEHOLDER = "SIGNER_REQUIRED"

Address = Union[Pubkey, str]

U64_MAX = 2 ** 64 - 1

def to_minor_units(amount: Union[Decimal, float, int, str]) -> int:
    """floor(amount * 1_000_000), computed in decimal so 0.1 stays 100000"""
    return math.floor(Decimal(str(amount)) * MINOR_UNITS)

def _signer(wallet: Optional[str]) -> str:
    return wallet or SIGNER_PLACEHOLDER

@dataclass(frozen=True)
class AccountMeta:
    address: Address
    is_signer: bool = False
    is_writable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"address": str(self.address), "isSigner": self.is_signer, "isWritable": self.is_writable}

def readonly(address: Address) -> AccountMeta:
    return AccountMeta(address)

def writable(address: Address) -> AccountMeta:
    return AccountMeta(address, is_writable=True)

def signer(address: Address, is_writable: bool = False) -> AccountMeta:
    return AccountMeta(address, is_signer=True, is_writable=is_writable)

@dataclass
class Instruction:
    name: str
    accounts: List[AccountMeta]
    args: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "accounts": [meta.to_dict() for meta in self.accounts],
            "args": self.args,
        }

def _remaining_agent_accounts(names: Sequence[str]) -> List[AccountMeta]:
    """(record, vault) pairs for each recipient, in list order"""
    metas = []
    for name in names:
        addrs = agent_addresses(name)
        metas.append(writable(addrs.record))
        metas.append(writable(addrs.vault))
    return metas

# -- agents & payments -------------------------------------------------------

def register_agent(name: str, wallet: Optional[str] = None) -> Instruction:
    addrs = agent_addresses(name)
    return Instruction("registerAgent", [
        writable(addrs.record),
        writable(addrs.vault),
        readonly(USDC_MINT),
        signer(_signer(wallet), is_writable=True),
        readonly(SYSTEM_PROGRAM_ID),
        readonly(TOKEN_PROGRAM_ID),
        readonly(RENT_SYSVAR),
    ], {"name": name})

def transfer_by_name(sender: str, receiver: str, amount: int, memo: Optional[str] = None,
                     wallet: Optional[str] = None) -> Instruction:
    s, r = agent_addresses(sender), agent_addresses(receiver)
    return Instruction("transferByName", [
        writable(s.record),
        writable(s.vault),
        writable(r.record),
        writable(r.vault),
        signer(_signer(wallet)),
        readonly(TOKEN_PROGRAM_ID),
    ], {"amount": amount, "memo": memo})

def batch_payment(sender: str, payments: Sequence[Tuple[str, int, Optional[str]]],
                  wallet: Optional[str] = None) -> Instruction:
    """``payments`` is a list of (recipient, amount_minor, memo)"""
    s = agent_addresses(sender)
    accounts = [writable(s.record), writable(s.vault), signer(_signer(wallet)), readonly(TOKEN_PROGRAM_ID)]
    accounts.extend(_remaining_agent_accounts([to for to, _, _ in payments]))
    return Instruction("batchPayment", accounts, {
        "payments": [
            {"recipientName": to, "amount": amount, "memo": memo}
            for to, amount, memo in payments
        ],
    })

def split_payment(sender: str, total_amount: int, recipients: Sequence[Tuple[str, int]],
                  memo: Optional[str] = None, wallet: Optional[str] = None) -> Instruction:
    """``recipients`` is a list of (name, share_bps)"""
    s = agent_addresses(sender)
    accounts = [writable(s.record), writable(s.vault), signer(_signer(wallet)), readonly(TOKEN_PROGRAM_ID)]
    accounts.extend(_remaining_agent_accounts([name for name, _ in recipients]))
    return Instruction("splitPayment", accounts, {
        "totalAmount": total_amount,
        "recipients": [{"name": name, "shareBps": bps} for name, bps in recipients],
        "memo": memo,
    })

def set_daily_limit(name: str, limit: int, wallet: Optional[str] = None) -> Instruction:
    return Instruction("setDailyLimit", [
        writable(agent_addresses(name).record),
        signer(_signer(wallet)),
    ], {"limitUsdc": limit})

# -- subscriptions -----------------------------------------------------------

def create_subscription(sender: str, receiver: str, amount: int, interval_seconds: int,
                        wallet: Optional[str] = None) -> Instruction:
    return Instruction("createSubscription", [
        writable(subscription_address(sender, receiver)),
        readonly(agent_addresses(sender).record),
        readonly(agent_addresses(receiver).record),
        signer(_signer(wallet)),
        signer(_signer(wallet), is_writable=True),
        readonly(SYSTEM_PROGRAM_ID),
    ], {"receiverName": receiver, "amount": amount, "intervalSeconds": interval_seconds})

def execute_subscription(sender: str, receiver: str, wallet: Optional[str] = None) -> Instruction:
    s, r = agent_addresses(sender), agent_addresses(receiver)
    return Instruction("executeSubscription", [
        writable(subscription_address(sender, receiver)),
        writable(s.record),
        writable(r.record),
        writable(s.vault),
        writable(r.vault),
        readonly(TOKEN_PROGRAM_ID),
        signer(_signer(wallet)),
    ])

def cancel_subscription(sender: str, receiver: str, wallet: Optional[str] = None) -> Instruction:
    return Instruction("cancelSubscription", [
        writable(subscription_address(sender, receiver)),
        signer(_signer(wallet)),
    ])

# -- allowances --------------------------------------------------------------

def approve(owner: str, spender: str, amount: int, wallet: Optional[str] = None) -> Instruction:
    return Instruction("approve", [
        writable(allowance_address(owner, spender)),
        readonly(agent_addresses(owner).record),
        readonly(agent_addresses(spender).record),
        signer(_signer(wallet)),
        signer(_signer(wallet), is_writable=True),
        readonly(SYSTEM_PROGRAM_ID),
    ], {"spenderName": spender, "amount": amount})

def transfer_from(owner: str, spender: str, amount: int, memo: Optional[str] = None,
                  wallet: Optional[str] = None) -> Instruction:
    o, s = agent_addresses(owner), agent_addresses(spender)
    return Instruction("transferFrom", [
        writable(allowance_address(owner, spender)),
        writable(o.record),
        writable(s.record),
        writable(o.vault),
        writable(s.vault),
        signer(_signer(wallet)),
        readonly(TOKEN_PROGRAM_ID),
    ], {"amount": amount, "memo": memo})

def revoke_allowance(owner: str, spender: str, wallet: Optional[str] = None) -> Instruction:
    return Instruction("revokeAllowance", [
        writable(allowance_address(owner, spender)),
        signer(_signer(wallet)),
    ])

def increase_allowance(owner: str, spender: str, additional_amount: int,
                       wallet: Optional[str] = None) -> Instruction:
    return Instruction("increaseAllowance", [
        writable(allowance_address(owner, spender)),
        signer(_signer(wallet)),
    ], {"additionalAmount": additional_amount})

# -- invoices ----------------------------------------------------------------

def init_invoice_counter(wallet: Optional[str] = None) -> Instruction:
    return Instruction("initInvoiceCounter", [
        writable(invoice_counter_address()),
        signer(_signer(wallet), is_writable=True),
        readonly(SYSTEM_PROGRAM_ID),
    ])

def create_invoice(invoice_id: int, requester: str, payer: str, amount: int, memo: str,
                   expires_in_seconds: int = 0, wallet: Optional[str] = None) -> Instruction:
    return Instruction("createInvoice", [
        writable(invoice_address(invoice_id)),
        writable(invoice_counter_address()),
        readonly(agent_addresses(requester).record),
        readonly(agent_addresses(payer).record),
        signer(_signer(wallet)),
        signer(_signer(wallet), is_writable=True),
        readonly(SYSTEM_PROGRAM_ID),
    ], {"payerName": payer, "amount": amount, "memo": memo, "expiresInSeconds": expires_in_seconds})

def pay_invoice(invoice_id: int, requester: str, payer: str, wallet: Optional[str] = None) -> Instruction:
    p, r = agent_addresses(payer), agent_addresses(requester)
    return Instruction("payInvoice", [
        writable(invoice_address(invoice_id)),
        writable(p.record),
        writable(r.record),
        writable(p.vault),
        writable(r.vault),
        signer(_signer(wallet)),
        readonly(TOKEN_PROGRAM_ID),
    ])

def reject_invoice(invoice_id: int, payer: str, wallet: Optional[str] = None) -> Instruction:
    return Instruction("rejectInvoice", [
        writable(invoice_address(invoice_id)),
        readonly(agent_addresses(payer).record),
        signer(_signer(wallet)),
    ])

def cancel_invoice(invoice_id: int, wallet: Optional[str] = None) -> Instruction:
    return Instruction("cancelInvoice", [
        writable(invoice_address(invoice_id)),
        signer(_signer(wallet)),
    ])

REFUND_MEMO_MAX_BYTES = 128
REFUND_MEMO_TRUNCATE_BYTES = 120

def refund_memo(invoice_id: int, reason: Optional[str] = None) -> str:
    """Memo for a refund transfer, cut to 120 bytes + "..." when over 128 bytes"""
    memo = f"Refund: {reason} (ref: invoice#{invoice_id})" if reason else f"Refund (ref: invoice#{invoice_id})"
    encoded = memo.encode("utf-8")
    if len(encoded) > REFUND_MEMO_MAX_BYTES:
        memo = encoded[:REFUND_MEMO_TRUNCATE_BYTES].decode("utf-8", errors="ignore") + "..."
    return memo
