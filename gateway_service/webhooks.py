"""
Webhook registry and notifier.

Registrations live in an injected ``WebhookStore``: ``InMemoryWebhookStore``
for tests and single-process deployments, ``RedisWebhookStore`` when
registrations must survive restarts. Deliveries are at-most-once: one POST,
a hard total deadline, failures logged and dropped. Deliveries and store
lookups run on the notifier's own thread pool.
"""
import asyncio
import functools
import hashlib
import hmac
import json
import logging
import secrets
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

import requests

from common.error_handling import DeliveryFailure, NotFoundError, ServiceError, ValidationError
from common.redis_client import RedisClient
from common.settings import settings
from common.tracing import gateway_tracer, get_trace_headers

logger = logging.getLogger(__name__)

PAYMENT_RECEIVED = "payment_received"
PAYMENT_SENT = "payment_sent"
INVOICE_CREATED = "invoice_created"
INVOICE_PAID = "invoice_paid"
INVOICE_REJECTED = "invoice_rejected"
ALLOWANCE_PULLED = "allowance_pulled"
SUBSCRIPTION_EXECUTED = "subscription_executed"

VALID_EVENTS = [
    PAYMENT_RECEIVED,
    PAYMENT_SENT,
    INVOICE_CREATED,
    INVOICE_PAID,
    INVOICE_REJECTED,
    ALLOWANCE_PULLED,
    SUBSCRIPTION_EXECUTED,
]
DEFAULT_EVENTS = [PAYMENT_RECEIVED, INVOICE_CREATED, INVOICE_PAID]

SIGNATURE_HEADER = "X-SolClaw-Signature"
EVENT_HEADER = "X-SolClaw-Event"

Notification = Tuple[str, str, Dict[str, Any]]

@dataclass
class WebhookSubscription:
    agent_name: str
    url: str
    secret: str
    events: List[str] = field(default_factory=list)
    created_at: int = 0

    def to_public_dict(self) -> Dict[str, Any]:
        """Registration as shown to callers; never includes the secret"""
        return {
            "agentName": self.agent_name,
            "url": self.url,
            "events": list(self.events),
            "createdAt": self.created_at,
        }

def serialize_payload(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

def sign_body(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of the delivered body"""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()

def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    return hmac.compare_digest(sign_body(secret, body), signature)

# -- stores ------------------------------------------------------------------

class WebhookStore(ABC):
    """Mapping of agent name -> registration, last writer wins"""

    @abstractmethod
    def get(self, agent_name: str) -> Optional[WebhookSubscription]:
        ...

    @abstractmethod
    def put(self, subscription: WebhookSubscription) -> None:
        ...

    @abstractmethod
    def delete(self, agent_name: str) -> bool:
        ...

    def healthy(self) -> bool:
        return True

class InMemoryWebhookStore(WebhookStore):
    """Process-local store; cleared on restart"""

    def __init__(self):
        self._entries: Dict[str, WebhookSubscription] = {}
        self._lock = threading.Lock()

    def get(self, agent_name: str) -> Optional[WebhookSubscription]:
        with self._lock:
            return self._entries.get(agent_name)

    def put(self, subscription: WebhookSubscription) -> None:
        with self._lock:
            self._entries[subscription.agent_name] = subscription

    def delete(self, agent_name: str) -> bool:
        with self._lock:
            return self._entries.pop(agent_name, None) is not None

class RedisWebhookStore(WebhookStore):
    """Durable store backed by Redis, one key per agent"""

    def __init__(self, client: Optional[RedisClient] = None):
        self.client = client or RedisClient()

    def get(self, agent_name: str) -> Optional[WebhookSubscription]:
        record = self.client.get_webhook(agent_name)
        if record is None:
            return None
        return WebhookSubscription(**record)

    def put(self, subscription: WebhookSubscription) -> None:
        self.client.set_webhook(subscription.agent_name, asdict(subscription))

    def delete(self, agent_name: str) -> bool:
        return self.client.delete_webhook(agent_name)

    def healthy(self) -> bool:
        return self.client.ping()

def create_store(kind: str = None) -> WebhookStore:
    kind = (kind or settings.webhook_store).lower()
    if kind == "redis":
        return RedisWebhookStore()
    if kind == "memory":
        return InMemoryWebhookStore()
    raise ValueError(f"Unknown webhook store: {kind}")

# -- registry ----------------------------------------------------------------

class WebhookRegistry:
    def __init__(self, store: WebhookStore, clock: Callable[[], int] = lambda: int(time.time())):
        self.store = store
        self.clock = clock

    def register(self, agent_name: str, url: str, events: Optional[Iterable[str]] = None) -> WebhookSubscription:
        """Create or overwrite the registration. A fresh secret is generated every time."""
        selected = list(events) if events is not None else list(DEFAULT_EVENTS)
        invalid = [e for e in selected if e not in VALID_EVENTS]
        if invalid:
            raise ValidationError(f"Invalid events: {', '.join(invalid)}", field="events",
                                  context={"valid_events": VALID_EVENTS})

        subscription = WebhookSubscription(
            agent_name=agent_name,
            url=url,
            secret=secrets.token_hex(32),
            events=selected,
            created_at=self.clock(),
        )
        self.store.put(subscription)
        logger.info(f"Webhook registered for {agent_name} -> {url} ({', '.join(selected)})")
        return subscription

    def remove(self, agent_name: str) -> None:
        if not self.store.delete(agent_name):
            raise NotFoundError("No webhook found for this agent", field="agentName")
        logger.info(f"Webhook removed for {agent_name}")

    def get(self, agent_name: str) -> Optional[WebhookSubscription]:
        return self.store.get(agent_name)

# -- notifier ----------------------------------------------------------------

class WebhookNotifier:
    """Signs and delivers event payloads to registered webhook URLs"""

    def __init__(self, registry: WebhookRegistry, timeout: float = None,
                 clock: Callable[[], int] = lambda: int(time.time()),
                 executor: Optional[ThreadPoolExecutor] = None):
        self.registry = registry
        self.timeout = timeout or settings.webhook_timeout_seconds
        self.clock = clock
        # Deliveries never share the loop's default pool, which serves ledger reads
        self.executor = executor or ThreadPoolExecutor(
            max_workers=settings.webhook_max_workers, thread_name_prefix="webhook"
        )
        self._pending: Set[asyncio.Task] = set()

    def _deliver(self, url: str, body: bytes, headers: Dict[str, str], agent_name: str) -> None:
        try:
            response = requests.post(url, data=body, headers=headers, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise DeliveryFailure(f"Webhook delivery failed for {agent_name}", original_error=e)

    async def _send(self, url: str, body: bytes, headers: Dict[str, str], agent_name: str) -> None:
        """One POST under a total deadline"""
        loop = asyncio.get_running_loop()
        call = loop.run_in_executor(self.executor, functools.partial(self._deliver, url, body, headers, agent_name))
        try:
            await asyncio.wait_for(call, self.timeout)
        except asyncio.TimeoutError as e:
            raise DeliveryFailure(f"Webhook delivery timed out for {agent_name} after {self.timeout}s",
                                  original_error=e)

    async def notify(self, agent_name: str, event: str, data: Dict[str, Any]) -> bool:
        """Deliver ``event`` to ``agent_name`` once. Returns True if the endpoint accepted it."""
        loop = asyncio.get_running_loop()
        try:
            subscription = await loop.run_in_executor(self.executor, self.registry.get, agent_name)
        except ServiceError as e:
            logger.warning(f"Webhook lookup failed for {agent_name}: {e.message}")
            return False
        if subscription is None or event not in subscription.events:
            return False

        body = serialize_payload({
            "event": event,
            "agent": agent_name,
            "data": data,
            "timestamp": self.clock(),
        })
        with gateway_tracer.start_child_span("webhook.deliver") as span:
            span.add_tag("webhook.event", event).add_tag("webhook.agent", agent_name)
            headers = {
                "Content-Type": "application/json",
                SIGNATURE_HEADER: sign_body(subscription.secret, body),
                EVENT_HEADER: event,
                **get_trace_headers(),
            }
            try:
                await self._send(subscription.url, body, headers, agent_name)
            except DeliveryFailure as e:
                span.set_error(e)
                logger.warning(f"{e.message}: {e.original_error}", extra={"event": event, "url": subscription.url})
                return False

        logger.debug(f"Webhook {event} delivered to {agent_name}")
        return True

    async def notify_many(self, notifications: Iterable[Notification]) -> List[bool]:
        """Concurrent, independent deliveries; waits for all of them"""
        notifications = list(notifications)
        results = await asyncio.gather(
            *(self.notify(agent, event, data) for agent, event, data in notifications),
            return_exceptions=True,
        )
        outcomes = []
        for (agent, event, _), result in zip(notifications, results):
            if isinstance(result, BaseException):
                logger.warning(f"Webhook {event} for {agent} raised {type(result).__name__}: {result}")
                outcomes.append(False)
            else:
                outcomes.append(result)
        return outcomes

    def dispatch(self, notifications: Iterable[Notification]) -> Optional[asyncio.Task]:
        """Start delivery in a detached task and return without waiting"""
        notifications = list(notifications)
        if not notifications:
            return None
        task = asyncio.get_running_loop().create_task(self.notify_many(notifications))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for every dispatched delivery; used on shutdown and in tests"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def close(self) -> None:
        """Release the delivery pool without waiting on POSTs already past their deadline"""
        self.executor.shutdown(wait=False)
