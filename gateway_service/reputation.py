"""
Reputation scoring for agents.

The score is the sum of five independently capped components, clamped to
0..100:

    volume        0-25   log10 of combined USDC volume
    tenure        0-15   linear up to 90 days
    reliability   0-25   share of decided invoices the agent paid as payer
    connections   0-15   distinct counterparties, linear up to 20
    activity      0-20   5 each for cap / subscription / allowance / decided invoice

The leaderboard variant skips the invoice, subscription and allowance scans
and gives flat bonuses instead, so it is cheap enough to run for every agent.
"""
import asyncio
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from gateway_service.accounts import Agent, to_display_units
from gateway_service.state import StateReconstructor

SECONDS_PER_DAY = 86400

VOLUME_CAP = 25
TENURE_CAP = 15
TENURE_FULL_DAYS = 90
RELIABILITY_WEIGHT = 25
CONNECTIONS_CAP = 15
CONNECTIONS_FULL = 20
ACTIVITY_POINTS = 5

LEADERBOARD_BASE_RELIABILITY = 25
LEADERBOARD_CAP_BONUS = 5
LEADERBOARD_VOLUME_BONUS = 10

def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)

def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))

def tier_for_score(score: int) -> str:
    if score >= 75:
        return "veteran"
    if score >= 50:
        return "trusted"
    if score >= 25:
        return "active"
    return "new"

def tenure_days(created_at: Optional[int], now: int) -> int:
    return (now - (created_at or now)) // SECONDS_PER_DAY

def volume_points(volume_usdc: float) -> int:
    return _clamp(round_half_up(math.log10(max(1.0, volume_usdc)) * 6.25), 0, VOLUME_CAP)

def tenure_points(days: int) -> int:
    return _clamp(round_half_up(days / TENURE_FULL_DAYS * TENURE_CAP), 0, TENURE_CAP)

def connection_points(connections: int) -> int:
    return _clamp(round_half_up(connections / CONNECTIONS_FULL * CONNECTIONS_CAP), 0, CONNECTIONS_CAP)

@dataclass
class ReputationInputs:
    total_sent: int = 0          # minor units
    total_received: int = 0      # minor units
    created_at: Optional[int] = None
    has_spending_cap: bool = False
    paid_as_payer: int = 0
    rejected_or_expired_as_payer: int = 0
    connections: int = 0
    active_subscriptions: int = 0
    active_allowances: int = 0

    @property
    def sent_usdc(self) -> float:
        return to_display_units(self.total_sent or 0)

    @property
    def received_usdc(self) -> float:
        return to_display_units(self.total_received or 0)

    @property
    def volume_usdc(self) -> float:
        return self.sent_usdc + self.received_usdc

    @property
    def decided_invoices(self) -> int:
        return self.paid_as_payer + self.rejected_or_expired_as_payer

    @property
    def reliability(self) -> float:
        if self.decided_invoices == 0:
            return 100.0
        return self.paid_as_payer / self.decided_invoices * 100

@dataclass
class Reputation:
    score: int
    tier: str
    badges: List[str] = field(default_factory=list)
    breakdown: Dict[str, Any] = field(default_factory=dict)

def _common_badges(inputs: ReputationInputs, days: int) -> List[str]:
    badges = []
    if 0 <= days <= 7:
        badges.append("early_adopter")
    if inputs.volume_usdc >= 100:
        badges.append("high_volume")
    if inputs.volume_usdc >= 1000:
        badges.append("whale")
    return badges

def compute_reputation(inputs: ReputationInputs, now: int) -> Reputation:
    """Full score from all five components"""
    days = tenure_days(inputs.created_at, now)
    # Whole percent, used for both the weighted points and the breakdown
    reliability = round_half_up(inputs.reliability)

    activity = 0
    if inputs.has_spending_cap:
        activity += ACTIVITY_POINTS
    if inputs.active_subscriptions > 0:
        activity += ACTIVITY_POINTS
    if inputs.active_allowances > 0:
        activity += ACTIVITY_POINTS
    if inputs.decided_invoices > 0:
        activity += ACTIVITY_POINTS

    score = (
        volume_points(inputs.volume_usdc)
        + tenure_points(days)
        + _clamp(round_half_up(reliability / 100 * RELIABILITY_WEIGHT), 0, RELIABILITY_WEIGHT)
        + connection_points(inputs.connections)
        + activity
    )
    score = _clamp(score, 0, 100)

    badges = _common_badges(inputs, days)
    if reliability >= 90 and inputs.decided_invoices >= 3:
        badges.append("reliable_payer")
    if inputs.has_spending_cap:
        badges.append("safety_conscious")
    if inputs.active_subscriptions >= 3:
        badges.append("subscriber")
    if inputs.connections >= 10:
        badges.append("well_connected")
    if inputs.active_allowances >= 1:
        badges.append("trusting")
    if inputs.sent_usdc > inputs.received_usdc * 1.5 and inputs.sent_usdc > 0:
        badges.append("generous")

    return Reputation(
        score=score,
        tier=tier_for_score(score),
        badges=badges,
        breakdown={
            "volume_usdc": round(inputs.volume_usdc, 2),
            "invoice_reliability": reliability,
            "connections": inputs.connections,
            "tenure_days": days,
            "has_spending_cap": inputs.has_spending_cap,
            "active_subscriptions": inputs.active_subscriptions,
            "allowances_granted": inputs.active_allowances,
        },
    )

def compute_leaderboard_reputation(agent: Agent, now: int) -> Reputation:
    """Cheap variant: agent record only, base reliability assumed"""
    inputs = ReputationInputs(
        total_sent=agent.total_sent,
        total_received=agent.total_received,
        created_at=agent.created_at,
        has_spending_cap=agent.has_spending_cap,
    )
    days = tenure_days(inputs.created_at, now)

    score = volume_points(inputs.volume_usdc) + tenure_points(days) + LEADERBOARD_BASE_RELIABILITY
    if inputs.has_spending_cap:
        score += LEADERBOARD_CAP_BONUS
    if inputs.volume_usdc > 0:
        score += LEADERBOARD_VOLUME_BONUS
    score = _clamp(score, 0, 100)

    badges = _common_badges(inputs, days)
    if inputs.has_spending_cap:
        badges.append("safety_conscious")
    if inputs.sent_usdc > inputs.received_usdc * 1.5 and inputs.sent_usdc > 0:
        badges.append("generous")

    return Reputation(score=score, tier=tier_for_score(score), badges=badges)

async def gather_reputation_inputs(state: StateReconstructor, name: str, now: int) -> ReputationInputs:
    """Collect everything the full score needs for ``name``"""
    agent = await state.load_agent(name)

    as_payer, as_requester, subscriptions, allowances = await asyncio.gather(
        state.invoices_as_payer(name, now),
        state.invoices_as_requester(name, now),
        state.list_subscriptions(sender=name),
        state.list_allowances(owner=name),
    )

    paid = sum(1 for view in as_payer if view.status == "paid")
    rejected_or_expired = sum(1 for view in as_payer if view.status in ("rejected", "expired"))

    counterparties = set()
    counterparties.update(view.invoice.requester_name for view in as_payer)
    counterparties.update(view.invoice.payer_name for view in as_requester)
    counterparties.update(sub.receiver_name for sub in subscriptions)
    counterparties.update(allowance.spender_name for _, allowance in allowances)
    counterparties.discard(name)

    return ReputationInputs(
        total_sent=agent.total_sent,
        total_received=agent.total_received,
        created_at=agent.created_at,
        has_spending_cap=agent.has_spending_cap,
        paid_as_payer=paid,
        rejected_or_expired_as_payer=rejected_or_expired,
        connections=len(counterparties),
        active_subscriptions=sum(1 for sub in subscriptions if sub.is_active),
        active_allowances=sum(1 for _, allowance in allowances if allowance.is_active),
    )
