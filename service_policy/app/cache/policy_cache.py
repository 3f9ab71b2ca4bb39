"""
Redis caching layer for policy decisions, with an in-process fallback.
"""

import hashlib
import json
import time
from collections import OrderedDict
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple
from urllib.parse import quote

import redis.asyncio as redis

from shared.errors import ConfigurationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..rules.models import Decision, Outcome


NO_TENANT = "_"


def tenant_segment(tenant_id: Optional[str]) -> str:
    """Leading key segment for a tenant.

    Percent-encoded, so it never holds ":" or a Redis glob metacharacter.
    """
    return quote(tenant_id, safe="") if tenant_id else NO_TENANT


def fingerprint(
    catalog_version: str,
    tenant_id: Optional[str],
    identity_digest: str,
    resource: str,
    action: str,
    context: Mapping[str, Any],
    relevant_keys: Sequence[str] = ("targetTenantId",),
) -> str:
    """Cache key for one (identity, resource, action, relevant context) triple.

    Layout is ``tenant:catalog_version:identity_digest:request_hash``. The
    resource, action and relevant context are hashed together as one JSON
    array, so separators inside them cannot shift field boundaries.
    """
    relevant = {k: context.get(k) for k in relevant_keys if context.get(k) is not None}
    request_hash = hashlib.sha256(
        json.dumps([resource, action, relevant], sort_keys=True, default=str).encode()
    ).hexdigest()[:24]
    return ":".join([
        tenant_segment(tenant_id),
        catalog_version,
        identity_digest,
        request_hash,
    ])


class LocalDecisionCache:
    """Bounded in-process TTL map used while Redis is unreachable."""

    def __init__(self, max_size: int = 1000, max_ttl: int = 60):
        self.max_size = max_size
        self.max_ttl = max_ttl
        self._entries: "OrderedDict[str, Tuple[float, str]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, payload = entry
        if expires_at <= time.monotonic():
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return payload

    def set(self, key: str, payload: str, ttl: int) -> None:
        if key in self._entries:
            self._entries.move_to_end(key)
        self._entries[key] = (time.monotonic() + min(ttl, self.max_ttl), payload)
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def delete_prefix(self, prefix: str) -> int:
        doomed = [k for k in self._entries if k.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()


class PolicyCache:
    """Decision cache: Redis first, local map when Redis is unavailable.

    Nothing here raises to callers. A Redis failure marks the remote store
    unavailable for ``retry_interval`` seconds, after which the next
    operation tries it again.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        enabled: bool = True,
        positive_ttl: int = 300,
        negative_ttl: int = 60,
        prefix: str = "policy:",
        local_cache_size: int = 1000,
        local_cache_ttl: int = 60,
        retry_interval: float = 30.0,
        metrics: Optional[MetricsCollector] = None,
        redis_client: Optional[redis.Redis] = None,
    ):
        if negative_ttl >= positive_ttl:
            raise ConfigurationError(
                "Negative cache TTL must be shorter than positive TTL",
                details={"positive_ttl": positive_ttl, "negative_ttl": negative_ttl}
            )

        self.redis_url = redis_url
        self.enabled = enabled
        self.positive_ttl = positive_ttl
        self.negative_ttl = negative_ttl
        self.prefix = prefix
        self.retry_interval = retry_interval
        self.metrics = metrics
        self.logger = get_logger("policy.cache")

        self.redis: Optional[redis.Redis] = redis_client
        self.local = LocalDecisionCache(local_cache_size, local_cache_ttl)
        self._redis_available = redis_client is not None
        self._retry_at = 0.0
        self._stats = {"hits": 0, "local_hits": 0, "misses": 0, "writes": 0, "errors": 0}

    async def start(self):
        """Connect to Redis. Failure leaves the cache in local-only mode."""
        if not self.enabled:
            self.logger.info("Policy cache disabled")
            return

        if self.redis is None:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=2,
                socket_timeout=2,
                health_check_interval=30
            )

        try:
            await self.redis.ping()
            self._mark_available()
            self.logger.info("Policy cache connected to Redis")
        except Exception as e:
            self._mark_unavailable(e)

    async def stop(self):
        if self.redis is not None:
            try:
                await self.redis.aclose()
            except Exception as e:
                self.logger.warning("Error closing Redis connection", error=str(e))
            self.logger.info("Policy cache stopped")

    def ttl_for(self, decision: Decision) -> int:
        """Positive TTL for PERMIT, the shorter negative TTL for DENY."""
        return self.positive_ttl if decision.outcome == Outcome.PERMIT else self.negative_ttl

    async def get(self, key: str) -> Optional[Decision]:
        if not self.enabled:
            return None

        payload = None
        if self._use_redis():
            try:
                payload = await self.redis.get(self.prefix + key)
            except Exception as e:
                self._mark_unavailable(e)
            else:
                if payload is not None:
                    self._stats["hits"] += 1
                    self._record("redis", "hit")
                    return self._decode(key, payload)

        payload = self.local.get(key)
        if payload is not None:
            self._stats["local_hits"] += 1
            self._record("local", "hit")
            return self._decode(key, payload)

        self._stats["misses"] += 1
        self._record("any", "miss")
        return None

    async def set(self, key: str, decision: Decision, ttl: Optional[int] = None) -> bool:
        """Store a decision. Returns whether Redis accepted it."""
        if not self.enabled:
            return False

        ttl = ttl if ttl is not None else self.ttl_for(decision)
        payload = json.dumps(decision.to_dict())
        self.local.set(key, payload, ttl)
        self._stats["writes"] += 1

        if not self._use_redis():
            return False
        try:
            await self.redis.setex(self.prefix + key, ttl, payload)
            self.logger.debug("Cached policy decision", cache_key=key, ttl=ttl)
            return True
        except Exception as e:
            self._mark_unavailable(e)
            return False

    async def delete(self, key: str) -> bool:
        removed = self.local.delete(key)
        if self._use_redis():
            try:
                removed = bool(await self.redis.delete(self.prefix + key)) or removed
            except Exception as e:
                self._mark_unavailable(e)
        return removed

    async def clear(self, tenant_id: Optional[str] = None) -> int:
        """Remove all entries, or only those of one tenant. Returns keys removed."""
        if tenant_id:
            segment = tenant_segment(tenant_id) + ":"
            pattern = f"{self.prefix}{segment}*"
            removed = self.local.delete_prefix(segment)
        else:
            pattern = f"{self.prefix}*"
            removed = len(self.local)
            self.local.clear()

        if self._use_redis():
            try:
                keys = [k async for k in self.redis.scan_iter(match=pattern, count=500)]
                if keys:
                    await self.redis.delete(*keys)
                removed = max(removed, len(keys))
            except Exception as e:
                self._mark_unavailable(e)

        self.logger.info("Policy cache cleared", tenant_id=tenant_id, removed=removed)
        return removed

    async def get_stats(self) -> Dict[str, Any]:
        lookups = self._stats["hits"] + self._stats["local_hits"] + self._stats["misses"]
        stats: Dict[str, Any] = {
            "enabled": self.enabled,
            "redis_connected": False,
            "local_cache_size": len(self.local),
            "positive_ttl": self.positive_ttl,
            "negative_ttl": self.negative_ttl,
            "hit_rate": ((self._stats["hits"] + self._stats["local_hits"]) / lookups) if lookups else 0.0,
            **self._stats,
        }

        if self._use_redis():
            try:
                info = await self.redis.info("memory")
                stats["redis_connected"] = True
                stats["redis_memory"] = info.get("used_memory_human")
            except Exception as e:
                self._mark_unavailable(e)
                stats["redis_error"] = str(e)

        return stats

    async def health_check(self) -> bool:
        if not self.enabled or self.redis is None:
            return False
        try:
            await self.redis.ping()
            self._mark_available()
            return True
        except Exception as e:
            self._mark_unavailable(e)
            return False

    def _use_redis(self) -> bool:
        if not self.enabled or self.redis is None:
            return False
        if self._redis_available:
            return True
        return time.monotonic() >= self._retry_at

    def _mark_available(self):
        if not self._redis_available:
            self.logger.info("Redis available for policy caching")
        self._redis_available = True
        if self.metrics:
            self.metrics.set_gauge("cache_redis_available", 1)

    def _mark_unavailable(self, error: Exception):
        self._stats["errors"] += 1
        if self._redis_available or self._retry_at == 0.0:
            self.logger.warning("Redis unavailable, using local policy cache", error=str(error))
        self._redis_available = False
        self._retry_at = time.monotonic() + self.retry_interval
        if self.metrics:
            self.metrics.set_gauge("cache_redis_available", 0)

    def _decode(self, key: str, payload: str) -> Optional[Decision]:
        try:
            return Decision.from_dict(json.loads(payload))
        except (ValueError, KeyError, TypeError) as e:
            self.logger.warning("Discarding unreadable cache entry", cache_key=key, error=str(e))
            self.local.delete(key)
            return None

    def _record(self, tier: str, result: str):
        if self.metrics:
            self.metrics.increment_counter("policy_cache_requests_total", tier=tier, result=result)
