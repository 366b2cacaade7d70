"""
Webhook stores and endpoints for tests: a store that reports where it was
called from, and a blocking POST that stands in for a hung recipient
"""
import asyncio
import threading
from unittest.mock import MagicMock

from gateway_service.webhooks import InMemoryWebhookStore

def on_event_loop() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True

class LoopCheckingStore(InMemoryWebhookStore):
    """Records, per call, whether it ran on an event loop thread"""

    def __init__(self):
        super().__init__()
        self.calls = []

    def _record(self, operation):
        self.calls.append((operation, on_event_loop()))

    def get(self, agent_name):
        self._record("get")
        return super().get(agent_name)

    def put(self, subscription):
        self._record("put")
        super().put(subscription)

    def delete(self, agent_name):
        self._record("delete")
        return super().delete(agent_name)

    def healthy(self):
        self._record("healthy")
        return True

class HangingEndpoints:
    """``requests.post`` replacement: URLs containing ``slow`` block until released"""

    def __init__(self, hold_seconds=10):
        self.released = threading.Event()
        self.hold_seconds = hold_seconds
        self.delivered = []
        self._lock = threading.Lock()

    def __call__(self, url, **kwargs):
        if "slow" in url:
            self.released.wait(self.hold_seconds)
        with self._lock:
            self.delivered.append(url)
        return MagicMock()

    def release(self):
        self.released.set()
