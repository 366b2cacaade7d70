#!/usr/bin/env python3
"""
SolClaw Gateway Service
Name-based agent payments: address lookup, state reads, unsigned instructions, webhooks
"""
import functools
import logging
from decimal import Decimal
from typing import Any, Dict, Literal, Optional

from fastapi import Depends, FastAPI, Path, Query, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from common.circuit_breaker import get_all_circuit_breakers
from common.documentation import GATEWAY_DOCS, WEBHOOK_DOCS, create_custom_openapi
from common.error_handling import (
    ConflictError, NotFoundError, UpstreamUnavailable, ValidationError, add_error_handlers,
)
from common.schemas import (
    AllowanceRef, ApproveRequest, BatchPaymentRequest, CreateInvoiceRequest,
    CreateSubscriptionRequest, DailyLimitRequest, IncreaseAllowanceRequest, InitCounterRequest,
    InvoiceActionRequest, RefundRequest, RegisterAgentRequest, SplitPaymentRequest, SubscriptionRef,
    TransferFromRequest, TransferRequest, TOTAL_BPS, WebhookRegisterRequest, WebhookRemoveRequest,
    validate_agent_name,
)
from common.settings import settings
from common.tracing import gateway_tracer, tracing_middleware
from gateway_service import instructions as ix
from gateway_service import webhooks
from gateway_service.accounts import to_display_units
from gateway_service.addresses import (
    PROGRAM_ID, USDC_MINT, agent_addresses, invoice_address, invoice_counter_address, subscription_address,
)
from gateway_service.ledger import SolanaLedgerReader
from gateway_service.reputation import (
    compute_leaderboard_reputation, compute_reputation, gather_reputation_inputs,
)
from gateway_service.state import (
    STATUS_PAID, StateReconstructor, agent_to_dict, allowance_to_dict, format_interval, is_subscription_due,
    now_seconds, subscription_to_dict,
)

# Configure logging
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="SolClaw Gateway", version="1.0.0", description=GATEWAY_DOCS)

add_error_handlers(app)

# Add tracing middleware
@app.middleware("http")
async def add_tracing(request: Request, call_next):
    return await tracing_middleware(request, call_next, gateway_tracer)

app.openapi = lambda: create_custom_openapi(app, app.title, app.version, GATEWAY_DOCS + WEBHOOK_DOCS)

# -- dependencies --------------------------------------------------------------

@functools.lru_cache(maxsize=None)
def get_reader() -> SolanaLedgerReader:
    return SolanaLedgerReader()

def get_state(reader: SolanaLedgerReader = Depends(get_reader)) -> StateReconstructor:
    return StateReconstructor(reader)

@functools.lru_cache(maxsize=None)
def get_registry() -> webhooks.WebhookRegistry:
    return webhooks.WebhookRegistry(webhooks.create_store())

@functools.lru_cache(maxsize=None)
def get_notifier() -> webhooks.WebhookNotifier:
    return webhooks.WebhookNotifier(get_registry())

def get_now() -> int:
    return now_seconds()

@app.on_event("shutdown")
async def drain_webhooks():
    notifier = get_notifier()
    await notifier.drain()
    notifier.close()

# -- helpers -------------------------------------------------------------------

def _check_name(name: str, field: str = "name") -> str:
    try:
        return validate_agent_name(name)
    except ValueError as e:
        raise ValidationError(str(e), field=field)

def _minor_units(amount, field: str = "amount", allow_zero: bool = False) -> int:
    units = ix.to_minor_units(amount)
    if units <= 0 and not allow_zero:
        raise ValidationError("Amount is below the smallest unit (0.000001)", field=field)
    if units > ix.U64_MAX:
        raise ValidationError(
            f"Amount exceeds the maximum of {Decimal(ix.U64_MAX) / ix.MINOR_UNITS}", field=field,
            context={"maxUnits": str(ix.U64_MAX)},
        )
    return units

def _ready(message: str, instruction: ix.Instruction, **data) -> Dict[str, Any]:
    data["instruction"] = instruction.to_dict()
    return {"success": True, "message": message, "data": data}

async def _require_agents(state: StateReconstructor, *pairs) -> None:
    """``pairs`` are (role, name); checked in order so the first missing one is reported"""
    for role, name in pairs:
        await state.require_agent(name, role)

def _require_pending(view) -> None:
    if not view.is_pending:
        raise ValidationError(f"Invoice is not pending (status: {view.status})")

# -- read paths ----------------------------------------------------------------

@app.get("/")
async def root():
    """Service info"""
    return {
        "service": settings.service_name,
        "programId": str(PROGRAM_ID),
        "usdcMint": str(USDC_MINT),
        "docs": "/docs",
    }

@app.get("/api/health", tags=["Health"])
async def health(
    reader: SolanaLedgerReader = Depends(get_reader),
    registry: webhooks.WebhookRegistry = Depends(get_registry),
):
    """Ledger connectivity probe; the webhook store is reported but does not degrade health"""
    webhook_store = "ok" if await run_in_threadpool(registry.store.healthy) else "unavailable"
    try:
        slot = await reader.get_slot()
    except UpstreamUnavailable as e:
        logger.warning(f"Health check failed: {e.message}")
        return JSONResponse(status_code=503, content={
            "status": "degraded",
            "error": e.message,
            "webhookStore": webhook_store,
            "circuitBreakers": get_all_circuit_breakers(),
        })
    return {
        "status": "ok",
        "slot": slot,
        "webhookStore": webhook_store,
        "programId": str(PROGRAM_ID),
        "usdcMint": str(USDC_MINT),
        "circuitBreakers": get_all_circuit_breakers(),
    }

@app.get("/api/agents", tags=["Agents"])
async def list_agents(state: StateReconstructor = Depends(get_state)):
    agents = [agent_to_dict(agent) for agent in await state.list_agents()]
    return {"count": len(agents), "agents": agents}

@app.get("/api/resolve/{name}", tags=["Agents"])
async def resolve(name: str, state: StateReconstructor = Depends(get_state)):
    """Addresses and stats for a registered agent"""
    agent = await state.load_agent(_check_name(name))
    return agent_to_dict(agent)

@app.get("/api/balance/{name}", tags=["Agents"])
async def balance(name: str, state: StateReconstructor = Depends(get_state)):
    _check_name(name)
    minor = await state.vault_balance(name)
    return {
        "name": name,
        "vault": str(agent_addresses(name).vault),
        "balance": to_display_units(minor),
        "balanceRaw": minor,
        "currency": "USDC",
    }

@app.get("/api/reputation/{name}", tags=["Reputation"])
async def reputation(name: str, state: StateReconstructor = Depends(get_state), now: int = Depends(get_now)):
    """Full reputation score with breakdown"""
    inputs = await gather_reputation_inputs(state, _check_name(name), now)
    result = compute_reputation(inputs, now)
    return {
        "name": name,
        "score": result.score,
        "tier": result.tier,
        "badges": result.badges,
        "breakdown": result.breakdown,
    }

@app.get("/api/leaderboard", tags=["Reputation"])
async def leaderboard(
    sort: Literal["volume", "reputation", "sent", "received"] = "volume",
    limit: int = Query(10, ge=1, le=100),
    state: StateReconstructor = Depends(get_state),
    now: int = Depends(get_now),
):
    """All agents ranked, using the simplified reputation score"""
    rows = []
    for agent in await state.list_agents():
        rep = compute_leaderboard_reputation(agent, now)
        rows.append({
            "name": agent.name,
            "score": rep.score,
            "tier": rep.tier,
            "badges": rep.badges,
            "totalSent": to_display_units(agent.total_sent),
            "totalReceived": to_display_units(agent.total_received),
            "totalVolume": to_display_units(agent.total_sent + agent.total_received),
        })

    sort_keys = {"reputation": "score", "sent": "totalSent", "received": "totalReceived", "volume": "totalVolume"}
    rows.sort(key=lambda row: row[sort_keys[sort]], reverse=True)
    return {"sort": sort, "limit": limit, "leaderboard": rows[:limit]}

@app.get("/api/invoice/{invoice_id}", tags=["Invoices"])
async def get_invoice(
    invoice_id: int = Path(..., ge=0),
    state: StateReconstructor = Depends(get_state),
    now: int = Depends(get_now),
):
    view = await state.load_invoice(invoice_id, now)
    return view.to_dict()

@app.get("/api/invoices/{name}", tags=["Invoices"])
async def list_invoices(
    name: str,
    role: Literal["payer", "requester", "both"] = "both",
    status: Literal["pending", "paid", "rejected", "cancelled", "expired", "all"] = "all",
    state: StateReconstructor = Depends(get_state),
    now: int = Depends(get_now),
):
    """Invoices where the agent is requester and/or payer, newest first"""
    _check_name(name)
    rows = []
    if role in ("requester", "both"):
        rows.extend({**view.to_dict(), "role": "requester"} for view in await state.invoices_as_requester(name, now))
    if role in ("payer", "both"):
        rows.extend({**view.to_dict(), "role": "payer"} for view in await state.invoices_as_payer(name, now))

    if status != "all":
        rows = [row for row in rows if row["status"] == status]
    rows.sort(key=lambda row: row["createdAt"], reverse=True)
    return {"agent": name, "role": role, "statusFilter": status, "count": len(rows), "invoices": rows}

@app.get("/api/subscriptions", tags=["Subscriptions"])
async def list_subscriptions(
    sender: Optional[str] = None,
    state: StateReconstructor = Depends(get_state),
    now: int = Depends(get_now),
):
    if sender:
        _check_name(sender, "sender")
    subs = [subscription_to_dict(sub, now) for sub in await state.list_subscriptions(sender=sender)]
    return {"count": len(subs), "subscriptions": subs}

@app.get("/api/due", tags=["Subscriptions"])
async def due_subscriptions(state: StateReconstructor = Depends(get_state), now: int = Depends(get_now)):
    """Active subscriptions whose next payment is due now"""
    subs = [subscription_to_dict(sub, now) for sub in await state.list_due_subscriptions(now)]
    return {"count": len(subs), "now": now, "subscriptions": subs}

@app.get("/api/allowances", tags=["Allowances"])
async def list_allowances(
    owner: Optional[str] = None,
    spender: Optional[str] = None,
    state: StateReconstructor = Depends(get_state),
):
    if owner:
        _check_name(owner, "owner")
    if spender:
        _check_name(spender, "spender")
    rows = await state.list_allowances(owner=owner, spender=spender)
    allowances = [allowance_to_dict(address, allowance) for address, allowance in rows]
    return {"count": len(allowances), "allowances": allowances}

@app.get("/api/webhook", tags=["Webhooks"])
def get_webhook(name: str, registry: webhooks.WebhookRegistry = Depends(get_registry)):
    """Registration for an agent; the secret is never returned here"""
    subscription = registry.get(_check_name(name))
    if subscription is None:
        raise NotFoundError("No webhook registered for this agent", field="name")
    return subscription.to_public_dict()

# -- write paths: agents & payments --------------------------------------------

@app.post("/api/register", tags=["Agents"])
async def register(body: RegisterAgentRequest, state: StateReconstructor = Depends(get_state)):
    if await state.agent_exists(body.name):
        raise ConflictError("Name already registered", field="name")
    addrs = agent_addresses(body.name)
    return _ready(
        "Ready to register", ix.register_agent(body.name, body.wallet),
        name=body.name, agentRegistry=str(addrs.record), vault=str(addrs.vault),
    )

@app.post("/api/send", tags=["Payments"])
async def send(
    body: TransferRequest,
    state: StateReconstructor = Depends(get_state),
    notifier: webhooks.WebhookNotifier = Depends(get_notifier),
):
    """Transfer between two named agents"""
    units = _minor_units(body.amount)
    await _require_agents(state, ("Sender", body.sender), ("Receiver", body.to))

    instruction = ix.transfer_by_name(body.sender, body.to, units, body.memo, body.wallet)
    amount = to_display_units(units)
    notifier.dispatch([
        (body.sender, webhooks.PAYMENT_SENT, {"to": body.to, "amount": amount, "memo": body.memo}),
        (body.to, webhooks.PAYMENT_RECEIVED, {"from": body.sender, "amount": amount, "memo": body.memo}),
    ])
    return _ready(
        "Ready to transfer", instruction,
        **{"from": body.sender}, to=body.to, amount=amount, amountUnits=units, memo=body.memo,
        senderVault=str(agent_addresses(body.sender).vault), receiverVault=str(agent_addresses(body.to).vault),
    )

@app.post("/api/batch", tags=["Payments"])
async def batch(
    body: BatchPaymentRequest,
    state: StateReconstructor = Depends(get_state),
    notifier: webhooks.WebhookNotifier = Depends(get_notifier),
):
    """Pay up to ten agents in one instruction"""
    entries = [(p.to, _minor_units(p.amount, "payments.amount"), p.memo) for p in body.payments]
    await _require_agents(state, ("Sender", body.sender), *[("Recipient", to) for to, _, _ in entries])

    instruction = ix.batch_payment(body.sender, entries, body.wallet)
    payments = [
        {"to": to, "amount": to_display_units(units), "amountUnits": units, "memo": memo}
        for to, units, memo in entries
    ]
    total = to_display_units(sum(units for _, units, _ in entries))

    notifications = [(body.sender, webhooks.PAYMENT_SENT, {"payments": payments, "totalAmount": total})]
    notifications.extend(
        (p["to"], webhooks.PAYMENT_RECEIVED, {"from": body.sender, "amount": p["amount"], "memo": p["memo"]})
        for p in payments
    )
    notifier.dispatch(notifications)
    return _ready("Ready for batch payment", instruction, **{"from": body.sender}, payments=payments,
                  totalAmount=total)

@app.post("/api/split", tags=["Payments"])
async def split(
    body: SplitPaymentRequest,
    state: StateReconstructor = Depends(get_state),
    notifier: webhooks.WebhookNotifier = Depends(get_notifier),
):
    """Split one amount across 2-10 agents by basis points"""
    total_units = _minor_units(body.total_amount, "totalAmount")
    await _require_agents(state, ("Sender", body.sender), *[("Recipient", r.name) for r in body.recipients])

    recipients = [(r.name, r.share_bps) for r in body.recipients]
    instruction = ix.split_payment(body.sender, total_units, recipients, body.memo, body.wallet)
    total = to_display_units(total_units)
    shares = [
        {
            "name": name,
            "shareBps": bps,
            "percentage": f"{bps / 100:.2f}%",
            "estimatedAmount": to_display_units(total_units * bps // TOTAL_BPS),
        }
        for name, bps in recipients
    ]

    notifications = [(body.sender, webhooks.PAYMENT_SENT, {"split": shares, "totalAmount": total, "memo": body.memo})]
    notifications.extend(
        (s["name"], webhooks.PAYMENT_RECEIVED, {"from": body.sender, "amount": s["estimatedAmount"], "memo": body.memo})
        for s in shares
    )
    notifier.dispatch(notifications)
    return _ready("Ready for split payment", instruction, **{"from": body.sender}, totalAmount=total,
                  memo=body.memo, recipients=shares)

@app.post("/api/limit", tags=["Agents"])
async def set_daily_limit(body: DailyLimitRequest, state: StateReconstructor = Depends(get_state)):
    """Set the daily spending cap; 0 removes it"""
    limit_units = _minor_units(body.limit_usdc, "limitUsdc", allow_zero=True)
    await state.require_agent(body.name)
    message = "Ready to remove daily limit" if limit_units == 0 else "Ready to set daily limit"
    return _ready(message, ix.set_daily_limit(body.name, limit_units, body.wallet),
                  name=body.name, limitUsdc=to_display_units(limit_units), limitUnits=limit_units)

@app.post("/api/refund", tags=["Payments"])
async def refund(
    body: RefundRequest,
    state: StateReconstructor = Depends(get_state),
    now: int = Depends(get_now),
):
    """Reverse transfer for a paid invoice, issued by its requester"""
    view = await state.load_invoice(body.invoice_id, now)
    invoice = view.invoice
    if invoice.status != STATUS_PAID:
        raise ValidationError(f"Can only refund paid invoices (status: {view.status})", field="invoiceId")
    if invoice.requester_name != body.agent_name:
        raise ValidationError(
            f"Only {invoice.requester_name} (the payment receiver) can issue a refund", field="agentName"
        )

    units = _minor_units(body.amount) if body.amount is not None else invoice.amount
    if units > invoice.amount:
        raise ValidationError(
            f"Refund amount ({to_display_units(units)}) exceeds original payment ({to_display_units(invoice.amount)})",
            field="amount",
        )

    memo = ix.refund_memo(invoice.id, body.reason)
    instruction = ix.transfer_by_name(invoice.requester_name, invoice.payer_name, units, memo, body.wallet)
    return _ready(
        f"Ready to refund {to_display_units(units)} USDC from {invoice.requester_name} to {invoice.payer_name}",
        instruction,
        refund={
            "from": invoice.requester_name,
            "to": invoice.payer_name,
            "amount": to_display_units(units),
            "fullRefund": units == invoice.amount,
            "reason": body.reason,
            "originalInvoice": invoice.id,
            "memo": memo,
        },
    )

# -- write paths: subscriptions --------------------------------------------------

@app.post("/api/subscribe", tags=["Subscriptions"])
async def create_subscription(body: CreateSubscriptionRequest, state: StateReconstructor = Depends(get_state)):
    units = _minor_units(body.amount)
    await _require_agents(state, ("Sender", body.sender), ("Receiver", body.to))
    if await state.subscription_exists(body.sender, body.to):
        raise ConflictError("Subscription already exists between these agents")

    instruction = ix.create_subscription(body.sender, body.to, units, body.interval_seconds, body.wallet)
    return _ready(
        "Ready to create subscription", instruction,
        **{"from": body.sender}, to=body.to, amount=to_display_units(units),
        intervalSeconds=body.interval_seconds, intervalHuman=format_interval(body.interval_seconds),
        subscription=str(subscription_address(body.sender, body.to)),
    )

@app.delete("/api/subscribe", tags=["Subscriptions"])
async def cancel_subscription(body: SubscriptionRef, state: StateReconstructor = Depends(get_state)):
    if not await state.subscription_exists(body.sender, body.to):
        raise NotFoundError("Subscription not found")
    instruction = ix.cancel_subscription(body.sender, body.to, body.wallet)
    return _ready("Ready to cancel subscription", instruction, **{"from": body.sender}, to=body.to)

@app.post("/api/execute", tags=["Subscriptions"])
async def execute_subscription(
    body: SubscriptionRef,
    state: StateReconstructor = Depends(get_state),
    notifier: webhooks.WebhookNotifier = Depends(get_notifier),
    now: int = Depends(get_now),
):
    """Crank a due subscription; anyone may sign as cranker"""
    sub = await state.load_subscription(body.sender, body.to)
    if not sub.is_active:
        raise ValidationError("Subscription is not active")
    if not is_subscription_due(sub, now):
        raise ValidationError(f"Subscription is not due yet (next due in {sub.next_due - now} seconds)")

    instruction = ix.execute_subscription(body.sender, body.to, body.wallet)
    data = {
        "from": body.sender,
        "to": body.to,
        "amount": to_display_units(sub.amount),
        "executionCount": sub.execution_count + 1,
    }
    notifier.dispatch([
        (body.sender, webhooks.SUBSCRIPTION_EXECUTED, data),
        (body.to, webhooks.SUBSCRIPTION_EXECUTED, data),
    ])
    return _ready("Ready to execute subscription", instruction, **data)

# -- write paths: allowances -----------------------------------------------------

@app.post("/api/approve", tags=["Allowances"])
async def approve(body: ApproveRequest, state: StateReconstructor = Depends(get_state)):
    units = _minor_units(body.amount)
    await _require_agents(state, ("Owner", body.owner), ("Spender", body.spender))
    amount = to_display_units(units)
    return _ready(
        f"Ready to approve {body.spender} to pull up to {amount} USDC from {body.owner}",
        ix.approve(body.owner, body.spender, units, body.wallet),
        owner=body.owner, spender=body.spender, amount=amount, amountUnits=units,
    )

@app.post("/api/transfer-from", tags=["Allowances"])
async def transfer_from(
    body: TransferFromRequest,
    state: StateReconstructor = Depends(get_state),
    notifier: webhooks.WebhookNotifier = Depends(get_notifier),
):
    """Spender pulls from the owner's vault against an allowance"""
    units = _minor_units(body.amount)
    await _require_agents(state, ("Owner", body.owner), ("Spender", body.spender))
    allowance = await state.load_allowance(body.owner, body.spender)
    if not allowance.is_active:
        raise ValidationError(f'Allowance from "{body.owner}" to "{body.spender}" is not active')
    if units > allowance.amount:
        raise ValidationError(
            f"Amount exceeds remaining allowance ({to_display_units(allowance.amount)} USDC)", field="amount"
        )

    amount = to_display_units(units)
    instruction = ix.transfer_from(body.owner, body.spender, units, body.memo, body.wallet)
    notifier.dispatch([
        (body.owner, webhooks.ALLOWANCE_PULLED, {"spender": body.spender, "amount": amount, "memo": body.memo}),
    ])
    return _ready(
        f"Ready for {body.spender} to pull {amount} USDC from {body.owner}", instruction,
        owner=body.owner, spender=body.spender, amount=amount, amountUnits=units, memo=body.memo,
        remainingAfter=to_display_units(allowance.amount - units),
    )

@app.post("/api/revoke", tags=["Allowances"])
async def revoke(body: AllowanceRef, state: StateReconstructor = Depends(get_state)):
    await state.require_agent(body.owner, "Owner")
    await state.load_allowance(body.owner, body.spender)
    return _ready(
        f"Ready to revoke {body.spender}'s allowance from {body.owner}",
        ix.revoke_allowance(body.owner, body.spender, body.wallet),
        owner=body.owner, spender=body.spender,
    )

@app.post("/api/increase-allowance", tags=["Allowances"])
async def increase_allowance(body: IncreaseAllowanceRequest, state: StateReconstructor = Depends(get_state)):
    units = _minor_units(body.amount)
    allowance = await state.load_allowance(body.owner, body.spender)
    return _ready(
        f"Ready to increase {body.spender}'s allowance from {body.owner}",
        ix.increase_allowance(body.owner, body.spender, units, body.wallet),
        owner=body.owner, spender=body.spender, additionalAmount=to_display_units(units),
        newAmount=to_display_units(allowance.amount + units),
    )

# -- write paths: invoices ---------------------------------------------------------

@app.post("/api/init-counter", tags=["Invoices"])
async def init_counter(body: InitCounterRequest, state: StateReconstructor = Depends(get_state)):
    """One-time setup of the shared invoice counter"""
    counter = await state.load_invoice_counter()
    if counter is not None:
        return {
            "success": True,
            "message": "Invoice counter already initialized",
            "data": {"counter": str(invoice_counter_address()), "count": counter.count},
        }
    return _ready("Ready to initialize invoice counter", ix.init_invoice_counter(body.wallet),
                  counter=str(invoice_counter_address()))

@app.post("/api/invoice", tags=["Invoices"])
async def create_invoice(
    body: CreateInvoiceRequest,
    state: StateReconstructor = Depends(get_state),
    notifier: webhooks.WebhookNotifier = Depends(get_notifier),
    now: int = Depends(get_now),
):
    units = _minor_units(body.amount)
    await _require_agents(state, ("Requester", body.requester_name), ("Payer", body.payer_name))

    counter = await state.load_invoice_counter()
    if counter is None:
        raise UpstreamUnavailable("Invoice counter not initialized. Call POST /api/init-counter first.")

    invoice_id = counter.count
    instruction = ix.create_invoice(
        invoice_id, body.requester_name, body.payer_name, units, body.memo, body.expires_in_seconds, body.wallet,
    )
    expires_at = now + body.expires_in_seconds if body.expires_in_seconds > 0 else 0
    data = {
        "invoiceId": invoice_id,
        "invoice": str(invoice_address(invoice_id)),
        "requester": body.requester_name,
        "payer": body.payer_name,
        "amount": to_display_units(units),
        "memo": body.memo,
        "status": "pending",
        "expiresAt": expires_at,
        "expiresIn": f"{body.expires_in_seconds} seconds" if body.expires_in_seconds > 0 else "never",
    }
    notifier.dispatch([(body.payer_name, webhooks.INVOICE_CREATED, data)])
    return _ready("Ready to create invoice", instruction, **data)

@app.post("/api/invoice/{invoice_id}/pay", tags=["Invoices"])
async def pay_invoice(
    invoice_id: int = Path(..., ge=0),
    body: Optional[InvoiceActionRequest] = None,
    state: StateReconstructor = Depends(get_state),
    notifier: webhooks.WebhookNotifier = Depends(get_notifier),
    now: int = Depends(get_now),
):
    view = await state.load_invoice(invoice_id, now)
    _require_pending(view)
    inv = view.invoice

    instruction = ix.pay_invoice(inv.id, inv.requester_name, inv.payer_name, body.wallet if body else None)
    data = {"invoiceId": inv.id, "amount": to_display_units(inv.amount), "payer": inv.payer_name,
            "requester": inv.requester_name, "memo": inv.memo}
    notifier.dispatch([(inv.requester_name, webhooks.INVOICE_PAID, data)])
    return _ready(
        f"Ready to pay invoice #{inv.id}: {data['amount']} USDC to {inv.requester_name}", instruction, **data
    )

@app.post("/api/invoice/{invoice_id}/reject", tags=["Invoices"])
async def reject_invoice(
    invoice_id: int = Path(..., ge=0),
    body: Optional[InvoiceActionRequest] = None,
    state: StateReconstructor = Depends(get_state),
    notifier: webhooks.WebhookNotifier = Depends(get_notifier),
    now: int = Depends(get_now),
):
    view = await state.load_invoice(invoice_id, now)
    _require_pending(view)
    inv = view.invoice

    instruction = ix.reject_invoice(inv.id, inv.payer_name, body.wallet if body else None)
    data = {"invoiceId": inv.id, "payer": inv.payer_name, "requester": inv.requester_name,
            "amount": to_display_units(inv.amount), "memo": inv.memo}
    notifier.dispatch([(inv.requester_name, webhooks.INVOICE_REJECTED, data)])
    return _ready(f"Ready to reject invoice #{inv.id}", instruction, **data)

@app.post("/api/invoice/{invoice_id}/cancel", tags=["Invoices"])
async def cancel_invoice(
    invoice_id: int = Path(..., ge=0),
    body: Optional[InvoiceActionRequest] = None,
    state: StateReconstructor = Depends(get_state),
    now: int = Depends(get_now),
):
    view = await state.load_invoice(invoice_id, now)
    _require_pending(view)
    instruction = ix.cancel_invoice(view.invoice.id, body.wallet if body else None)
    return _ready(f"Ready to cancel invoice #{view.invoice.id}", instruction,
                  invoiceId=view.invoice.id, requester=view.invoice.requester_name)

# -- webhooks --------------------------------------------------------------------

# Store calls may block on Redis, so these are plain ``def`` handlers run in the threadpool

@app.post("/api/webhook", tags=["Webhooks"])
def register_webhook(body: WebhookRegisterRequest, registry: webhooks.WebhookRegistry = Depends(get_registry)):
    subscription = registry.register(body.agent_name, body.url, body.events)
    return {
        "success": True,
        "agent": subscription.agent_name,
        "url": subscription.url,
        "events": subscription.events,
        "secret": subscription.secret,
        "message": (
            "Save this secret, it will not be shown again. Use it to verify webhook signatures via the "
            f"{webhooks.SIGNATURE_HEADER} header (HMAC-SHA256 of the request body)."
        ),
        "validEvents": webhooks.VALID_EVENTS,
    }

@app.delete("/api/webhook", tags=["Webhooks"])
def remove_webhook(body: WebhookRemoveRequest, registry: webhooks.WebhookRegistry = Depends(get_registry)):
    registry.remove(body.agent_name)
    return {"success": True, "message": "Webhook removed"}

@app.get("/circuit-breakers", tags=["Health"])
async def get_circuit_breaker_status():
    """Get status of all circuit breakers"""
    return {"circuit_breakers": get_all_circuit_breakers()}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
