"""
State Reconstructor: typed, human-meaningful views over raw ledger records.

All lazy lifecycle transitions live here. ``effective_invoice_status`` is the
single place an invoice's pending -> expired transition is computed, and every
code path that surfaces an invoice goes through ``InvoiceView``.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, TypeVar

from solders.pubkey import Pubkey

from common.error_handling import NotFoundError, UpstreamUnavailable
from gateway_service import accounts
from gateway_service.accounts import (
    Agent, Allowance, Invoice, InvoiceCounter, Subscription, AccountDecodeError, to_display_units,
)
from gateway_service.addresses import (
    agent_addresses, allowance_address, invoice_address, invoice_counter_address, subscription_address,
)
from gateway_service.ledger import MemcmpFilter

logger = logging.getLogger(__name__)

T = TypeVar("T")

STATUS_PENDING = 0
STATUS_PAID = 1
STATUS_REJECTED = 2
STATUS_CANCELLED = 3
STATUS_EXPIRED = 4

INVOICE_STATUS_NAMES = ["pending", "paid", "rejected", "cancelled", "expired"]

def now_seconds() -> int:
    return int(time.time())

def status_name(code: int) -> str:
    if 0 <= code < len(INVOICE_STATUS_NAMES):
        return INVOICE_STATUS_NAMES[code]
    return "unknown"

def effective_invoice_status(invoice: Invoice, now: int) -> str:
    """Stored status, except a pending invoice past its expiry reads as expired"""
    if invoice.status == STATUS_PENDING and invoice.expires_at > 0 and now > invoice.expires_at:
        return "expired"
    return status_name(invoice.status)

def is_subscription_due(subscription: Subscription, now: int) -> bool:
    return subscription.is_active and subscription.next_due <= now

def overdue_seconds(subscription: Subscription, now: int) -> int:
    return now - subscription.next_due if is_subscription_due(subscription, now) else 0

def format_interval(seconds: int) -> str:
    if seconds < 60:
        return f"{seconds} seconds"
    if seconds < 3600:
        return f"{seconds // 60} minutes"
    if seconds < 86400:
        return f"{seconds // 3600} hours"
    return f"{seconds // 86400} days"

@dataclass(frozen=True)
class InvoiceView:
    """An invoice together with its status as of ``now``"""
    address: Pubkey
    invoice: Invoice
    status: str

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"

    def to_dict(self) -> Dict[str, Any]:
        inv = self.invoice
        return {
            "id": inv.id,
            "invoicePDA": str(self.address),
            "requester": inv.requester_name,
            "requesterPDA": str(inv.requester),
            "payer": inv.payer_name,
            "payerPDA": str(inv.payer),
            "amount": to_display_units(inv.amount),
            "amountRaw": inv.amount,
            "memo": inv.memo,
            "status": self.status,
            "statusCode": inv.status,
            "createdAt": inv.created_at,
            "expiresAt": inv.expires_at,
            "paidAt": inv.paid_at,
            "authority": str(inv.authority),
        }

def view_invoice(address: Pubkey, invoice: Invoice, now: int) -> InvoiceView:
    return InvoiceView(address=address, invoice=invoice, status=effective_invoice_status(invoice, now))

def agent_to_dict(agent: Agent) -> Dict[str, Any]:
    addrs = agent_addresses(agent.name)
    return {
        "name": agent.name,
        "agentRegistry": str(addrs.record),
        "authority": str(agent.authority),
        "vault": str(agent.vault),
        "totalSent": to_display_units(agent.total_sent),
        "totalReceived": to_display_units(agent.total_received),
        "createdAt": agent.created_at,
        "dailyLimit": to_display_units(agent.daily_limit or 0),
        "dailySpent": to_display_units(agent.daily_spent or 0),
        "hasSpendingCap": agent.has_spending_cap,
    }

def subscription_to_dict(subscription: Subscription, now: int) -> Dict[str, Any]:
    return {
        "senderName": subscription.sender_name,
        "receiverName": subscription.receiver_name,
        "amount": to_display_units(subscription.amount),
        "intervalSeconds": subscription.interval_seconds,
        "intervalHuman": format_interval(subscription.interval_seconds),
        "nextDue": subscription.next_due,
        "isActive": subscription.is_active,
        "isDue": is_subscription_due(subscription, now),
        "overdueSecs": overdue_seconds(subscription, now),
        "totalPaid": to_display_units(subscription.total_paid),
        "executionCount": subscription.execution_count,
    }

def allowance_to_dict(address: Pubkey, allowance: Allowance) -> Dict[str, Any]:
    return {
        "ownerName": allowance.owner_name,
        "spenderName": allowance.spender_name,
        "amount": to_display_units(allowance.amount),
        "totalPulled": to_display_units(allowance.total_pulled),
        "pullCount": allowance.pull_count,
        "isActive": allowance.is_active,
        "owner": str(allowance.owner),
        "spender": str(allowance.spender),
        "pda": str(address),
    }

class StateReconstructor:
    """Loads ledger records through a reader and decodes them into entities"""

    def __init__(self, reader):
        self.reader = reader

    async def _load(self, address: Pubkey, decoder: Callable[[bytes], T], not_found: str) -> T:
        data = await self.reader.fetch_raw(address)
        if data is None:
            raise NotFoundError(not_found)
        try:
            return decoder(data)
        except AccountDecodeError as e:
            logger.error(f"Undecodable record at {address}: {e}")
            raise UpstreamUnavailable("Ledger returned an unreadable record", original_error=e)

    async def _load_all(self, kind: str, filters=()) -> List[tuple]:
        decoder = accounts.DECODERS[kind]
        entities = []
        for address, data in await self.reader.fetch_all_of_kind(kind, filters):
            try:
                entities.append((address, decoder(data)))
            except AccountDecodeError as e:
                logger.warning(f"Skipping undecodable {kind} record {address}: {e}")
        return entities

    # -- agents --------------------------------------------------------------

    async def agent_exists(self, name: str) -> bool:
        return await self.reader.account_exists(agent_addresses(name).record)

    async def require_agent(self, name: str, role: Optional[str] = None) -> None:
        """Existence check only; raises NotFoundError naming the role"""
        if not await self.agent_exists(name):
            label = f"{role} agent" if role else "Agent"
            raise NotFoundError(f'{label} "{name}" not found')

    async def load_agent(self, name: str) -> Agent:
        return await self._load(agent_addresses(name).record, accounts.decode_agent, f'Agent "{name}" not found')

    async def load_agent_at(self, address: Pubkey) -> Agent:
        return await self._load(address, accounts.decode_agent, f"Agent record {address} not found")

    async def list_agents(self) -> List[Agent]:
        return [agent for _, agent in await self._load_all(accounts.AGENT_KIND)]

    async def vault_balance(self, name: str) -> int:
        try:
            return await self.reader.token_balance(agent_addresses(name).vault)
        except AccountDecodeError as e:
            raise UpstreamUnavailable("Ledger returned an unreadable vault", original_error=e)

    # -- invoices ------------------------------------------------------------

    async def load_invoice_counter(self) -> Optional[InvoiceCounter]:
        data = await self.reader.fetch_raw(invoice_counter_address())
        if data is None:
            return None
        try:
            return accounts.decode_invoice_counter(data)
        except AccountDecodeError as e:
            raise UpstreamUnavailable("Ledger returned an unreadable invoice counter", original_error=e)

    async def load_invoice(self, invoice_id: int, now: int) -> InvoiceView:
        address = invoice_address(invoice_id)
        invoice = await self._load(address, accounts.decode_invoice, f"Invoice #{invoice_id} not found")
        return view_invoice(address, invoice, now)

    async def invoices_as_requester(self, name: str, now: int) -> List[InvoiceView]:
        record = bytes(agent_addresses(name).record)
        rows = await self._load_all(accounts.INVOICE_KIND, [MemcmpFilter(accounts.INVOICE_REQUESTER_OFFSET, record)])
        return [view_invoice(address, inv, now) for address, inv in rows]

    async def invoices_as_payer(self, name: str, now: int) -> List[InvoiceView]:
        record = bytes(agent_addresses(name).record)
        rows = await self._load_all(accounts.INVOICE_KIND, [MemcmpFilter(accounts.INVOICE_PAYER_OFFSET, record)])
        return [view_invoice(address, inv, now) for address, inv in rows]

    # -- subscriptions -------------------------------------------------------

    async def subscription_exists(self, sender: str, receiver: str) -> bool:
        return await self.reader.account_exists(subscription_address(sender, receiver))

    async def load_subscription(self, sender: str, receiver: str) -> Subscription:
        return await self._load(
            subscription_address(sender, receiver), accounts.decode_subscription, "Subscription not found"
        )

    async def list_subscriptions(self, sender: Optional[str] = None) -> List[Subscription]:
        filters = []
        if sender:
            filters.append(MemcmpFilter(accounts.SUBSCRIPTION_SENDER_OFFSET, bytes(agent_addresses(sender).record)))
        return [sub for _, sub in await self._load_all(accounts.SUBSCRIPTION_KIND, filters)]

    async def list_due_subscriptions(self, now: int) -> List[Subscription]:
        return [sub for sub in await self.list_subscriptions() if is_subscription_due(sub, now)]

    # -- allowances ----------------------------------------------------------

    async def allowance_exists(self, owner: str, spender: str) -> bool:
        return await self.reader.account_exists(allowance_address(owner, spender))

    async def load_allowance(self, owner: str, spender: str) -> Allowance:
        return await self._load(
            allowance_address(owner, spender), accounts.decode_allowance,
            f'No allowance found from "{owner}" to "{spender}"',
        )

    async def list_allowances(self, owner: Optional[str] = None, spender: Optional[str] = None) -> List[tuple]:
        filters = []
        if owner:
            filters.append(MemcmpFilter(accounts.ALLOWANCE_OWNER_OFFSET, bytes(agent_addresses(owner).record)))
        rows = await self._load_all(accounts.ALLOWANCE_KIND, filters)
        if spender:
            rows = [(address, a) for address, a in rows if a.spender_name == spender]
        return rows
