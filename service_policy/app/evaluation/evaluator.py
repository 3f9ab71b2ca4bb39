"""
Policy evaluator: identity, cache, catalog and rule pipeline wired together.
"""

import asyncio
import math
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Set

from shared.config import PolicyServiceConfig
from shared.errors import CatalogUnavailableError, IdentityError
from shared.logging import get_logger, set_request_id, set_user_context
from shared.metrics import MetricsCollector
from shared.tracing import trace_operation
from ..cache.policy_cache import PolicyCache, fingerprint
from ..catalog.loader import CatalogLoader, build_catalog_source
from ..identity.resolver import IdentityResolver, identity_hash, sanitize_context
from ..rules.engine import PolicyEngine
from ..rules.models import (
    Decision, EffectivePermissionsResponse, EvaluationRequest, IdentitySource,
    Outcome, PolicyResult, ReasonCode, Subject, WILDCARD_PERMISSION
)
from .batch import BatchEvaluator
from .timeout import TimeoutGuard


# Decisions that describe a fault rather than the subject are never cached
UNCACHEABLE_REASONS = frozenset({
    ReasonCode.EVALUATION_ERROR,
    ReasonCode.EVALUATION_TIMEOUT,
    ReasonCode.CATALOG_UNAVAILABLE,
})


class PolicyEvaluator:
    """Single entry point for policy decisions."""

    def __init__(
        self,
        loader: CatalogLoader,
        cache: PolicyCache,
        resolver: IdentityResolver,
        engine: PolicyEngine,
        metrics: Optional[MetricsCollector] = None,
        timeout_seconds: float = 3.0,
        batch_max_size: int = 50,
        policy_version: str = "1.0.0",
    ):
        self.loader = loader
        self.cache = cache
        self.resolver = resolver
        self.engine = engine
        self.metrics = metrics
        self.policy_version = policy_version
        self.logger = get_logger("policy.evaluator")

        self.guard = TimeoutGuard(timeout_seconds, metrics=metrics)
        self.batch = BatchEvaluator(self.evaluate, self._error_decision, max_size=batch_max_size)
        self._pending_writes: Set[asyncio.Task] = set()

    async def start(self):
        await self.cache.start()
        await self.loader.start()

    async def stop(self):
        await self.drain()
        await self.loader.stop()
        await self.cache.stop()

    async def evaluate(self, request: EvaluationRequest) -> Decision:
        """Evaluate one request. Always returns a decision."""
        start_time = time.time()
        if request.correlation_id:
            set_request_id(request.correlation_id)

        with trace_operation("policy.evaluate", resource=request.resource, action=request.action) as span:
            try:
                decision = await self.guard.run(
                    self._evaluate(request),
                    on_timeout=lambda: self._system_decision(request, ReasonCode.EVALUATION_TIMEOUT)
                )
            except Exception as e:
                self.logger.error(
                    "Policy evaluation error",
                    resource=request.resource,
                    action=request.action,
                    error=str(e),
                    exc_info=True
                )
                if self.metrics:
                    self.metrics.record_error(type(e).__name__)
                decision = self._error_decision(request, e)

            span.set_attribute("policy.decision", decision.outcome.value)
            span.set_attribute("policy.reason", decision.reason.value)
            span.set_attribute("policy.cached", decision.cached)

        duration = time.time() - start_time
        if self.metrics:
            self.metrics.record_decision(decision.outcome.value, decision.reason.value, duration, decision.cached)

        self.logger.info(
            "Policy decision",
            decision=decision.outcome.value,
            reason=decision.reason.value,
            resource=request.resource,
            action=request.action,
            user_id=decision.subject_snapshot.id if decision.subject_snapshot else None,
            cached=decision.cached,
            duration_ms=round(duration * 1000, 2)
        )
        return decision

    async def evaluate_batch(self, requests: Sequence[EvaluationRequest]) -> List[Decision]:
        """Evaluate independent requests concurrently, preserving order."""
        return await self.batch.evaluate(requests)

    async def _evaluate(self, request: EvaluationRequest) -> Decision:
        context = sanitize_context(request.context)
        digest = identity_hash(request.identity_source)

        subject: Optional[Subject] = None
        result: Optional[PolicyResult] = None
        try:
            subject = self.resolver.resolve(request.identity_source)
            set_user_context(subject.id, subject.tenant_id)
        except IdentityError as e:
            result = PolicyResult.deny(ReasonCode(e.reason), message=e.message)

        tenant_id = subject.tenant_id if subject else None
        lookup_version = self.loader.version
        cache_key = fingerprint(lookup_version, tenant_id, digest, request.resource, request.action, context)

        cached = await self.cache.get(cache_key)
        if cached is not None and (cached.expires_at is None or cached.expires_at > datetime.now(timezone.utc)):
            return cached.with_request_metadata(request.correlation_id, cached=True)

        catalog_version = self.loader.version
        if result is None:
            try:
                snapshot = await self.loader.get_snapshot()
            except CatalogUnavailableError as e:
                self.logger.error("Catalog unavailable for evaluation", error=e.message)
                return self._system_decision(request, ReasonCode.CATALOG_UNAVAILABLE, subject)

            result = self.engine.evaluate(subject, request.resource, request.action, context, snapshot)
            catalog_version = snapshot.version

        if catalog_version != lookup_version:
            # Snapshot changed underneath the lookup, store under the version that decided
            cache_key = fingerprint(catalog_version, tenant_id, digest, request.resource, request.action, context)

        decision = self._stamp(request, result, subject, catalog_version)
        self._schedule_cache_write(cache_key, decision)
        return decision

    async def effective_permissions(self, identity_source: IdentitySource,
                                    resource: str) -> EffectivePermissionsResponse:
        """Permissions the subject holds that apply to ``resource``."""
        try:
            subject = self.resolver.resolve(identity_source)
        except IdentityError as e:
            return EffectivePermissionsResponse(
                success=False,
                resource=resource,
                reason=ReasonCode(e.reason).value,
                error=e.message
            )

        try:
            snapshot = await self.loader.get_snapshot()
        except CatalogUnavailableError as e:
            return EffectivePermissionsResponse(
                success=False,
                resource=resource,
                reason=ReasonCode.CATALOG_UNAVAILABLE.value,
                error=e.message
            )

        if snapshot.roles.is_super_user(subject.roles):
            permissions = [WILDCARD_PERMISSION]
        else:
            permissions = snapshot.permissions.effective_permissions(subject.permissions, resource)

        return EffectivePermissionsResponse(
            success=True,
            resource=resource,
            permissions=permissions,
            roles=sorted(subject.roles),
            user_type=subject.user_type,
            tenant_id=subject.tenant_id
        )

    async def catalog_info(self) -> Dict[str, Any]:
        snapshot = await self.loader.get_snapshot()
        info = snapshot.describe()
        info["policyVersion"] = self.policy_version
        info["roles"] = [{"code": code, "level": level} for code, level in snapshot.roles.sorted_levels()]
        return info

    async def invalidate(self, tenant_id: Optional[str] = None) -> int:
        """Drop cached decisions for one tenant, or all of them."""
        removed = await self.cache.clear(tenant_id)
        self.logger.info("Policy decisions invalidated", tenant_id=tenant_id, removed=removed)
        return removed

    async def cache_stats(self) -> Dict[str, Any]:
        stats = await self.cache.get_stats()
        stats["pending_writes"] = len(self._pending_writes)
        stats["catalog"] = self.loader.get_status()
        return stats

    async def clear_cache(self) -> int:
        return await self.invalidate(None)

    async def delete_cache_entry(self, key: str) -> bool:
        return await self.cache.delete(key)

    async def drain(self):
        """Wait for in-flight cache writes."""
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

    def _schedule_cache_write(self, key: str, decision: Decision):
        if not self.cache.enabled or decision.reason in UNCACHEABLE_REASONS:
            return
        ttl = self.cache.ttl_for(decision)
        if decision.expires_at is not None:
            # A decision never outlives the token it was made for
            remaining = math.ceil((decision.expires_at - datetime.now(timezone.utc)).total_seconds())
            if remaining <= 0:
                return
            ttl = min(ttl, remaining)

        task = asyncio.create_task(self.cache.set(key, decision, ttl=ttl))
        self._pending_writes.add(task)
        task.add_done_callback(self._cache_write_done)

    def _cache_write_done(self, task: asyncio.Task):
        self._pending_writes.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.warning("Background cache write failed", error=str(error))

    def _stamp(self, request: EvaluationRequest, result: PolicyResult,
               subject: Optional[Subject], catalog_version: str) -> Decision:
        now = datetime.now(timezone.utc)
        ttl = self.cache.positive_ttl if result.outcome == Outcome.PERMIT else self.cache.negative_ttl
        expires_at = now + timedelta(seconds=ttl)
        if subject and subject.expires_at and subject.expires_at < expires_at:
            expires_at = subject.expires_at

        return Decision(
            outcome=result.outcome,
            reason=result.reason,
            resource=request.resource,
            action=request.action,
            policy_version=f"{self.policy_version}+{catalog_version}",
            subject_snapshot=subject.snapshot() if subject else None,
            evaluated_at=now,
            expires_at=expires_at,
            correlation_id=request.correlation_id,
            details=dict(result.details),
        )

    def _system_decision(self, request: EvaluationRequest, reason: ReasonCode,
                         subject: Optional[Subject] = None, **details) -> Decision:
        return Decision(
            outcome=Outcome.DENY,
            reason=reason,
            resource=request.resource,
            action=request.action,
            policy_version=f"{self.policy_version}+{self.loader.version}",
            subject_snapshot=subject.snapshot() if subject else None,
            correlation_id=request.correlation_id,
            details=details,
        )

    def _error_decision(self, request: EvaluationRequest, error: BaseException) -> Decision:
        return self._system_decision(request, ReasonCode.EVALUATION_ERROR, error=type(error).__name__)


def build_evaluator(config: PolicyServiceConfig, metrics: Optional[MetricsCollector] = None,
                    cache: Optional[PolicyCache] = None,
                    loader: Optional[CatalogLoader] = None) -> PolicyEvaluator:
    """Assemble an evaluator from configuration."""
    if cache is None:
        cache = PolicyCache(
            config.redis_url,
            enabled=config.cache_enabled,
            positive_ttl=config.cache_positive_ttl,
            negative_ttl=config.cache_negative_ttl,
            prefix=config.cache_prefix,
            local_cache_size=config.local_cache_size,
            local_cache_ttl=config.local_cache_ttl,
            retry_interval=config.redis_retry_interval,
            metrics=metrics,
        )
    if loader is None:
        loader = CatalogLoader(
            build_catalog_source(config.catalog_url, config.catalog_path, config.catalog_token),
            refresh_interval=config.catalog_refresh_seconds,
            metrics=metrics,
        )

    return PolicyEvaluator(
        loader=loader,
        cache=cache,
        resolver=IdentityResolver(
            jwt_secret=config.jwt_secret,
            algorithms=config.jwt_algorithms,
            gateway_auth_source=config.gateway_auth_source,
        ),
        engine=PolicyEngine(bypass=config.authorization_bypass),
        metrics=metrics,
        timeout_seconds=config.evaluation_timeout_seconds,
        batch_max_size=config.batch_max_size,
        policy_version=config.policy_version,
    )
