"""
Redis client utilities backing the durable webhook store
"""
import json
import redis
from typing import Optional, Dict, Any
from .settings import settings
from .error_handling import UpstreamUnavailable

class RedisClient:
    """Redis client wrapper with utility methods"""

    def __init__(self, url: str = None, key_prefix: str = None, client: Optional[redis.Redis] = None):
        self.client = client or redis.Redis.from_url(url or settings.redis_url, decode_responses=True)
        self.key_prefix = key_prefix or settings.webhook_key_prefix

    def ping(self) -> bool:
        """Check Redis connectivity"""
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False

    def _webhook_key(self, agent_name: str) -> str:
        return f"{self.key_prefix}:{agent_name}"

    # Webhook registrations
    def set_webhook(self, agent_name: str, record: Dict[str, Any]) -> None:
        """Store (overwrite) the registration for an agent"""
        try:
            self.client.set(self._webhook_key(agent_name), json.dumps(record))
        except redis.RedisError as e:
            raise UpstreamUnavailable("Webhook store unavailable", original_error=e)

    def get_webhook(self, agent_name: str) -> Optional[Dict[str, Any]]:
        """Retrieve the registration for an agent"""
        try:
            value = self.client.get(self._webhook_key(agent_name))
        except redis.RedisError as e:
            raise UpstreamUnavailable("Webhook store unavailable", original_error=e)
        if value:
            return json.loads(value)
        return None

    def delete_webhook(self, agent_name: str) -> bool:
        """Delete the registration for an agent. Returns False when none existed."""
        try:
            return bool(self.client.delete(self._webhook_key(agent_name)))
        except redis.RedisError as e:
            raise UpstreamUnavailable("Webhook store unavailable", original_error=e)

