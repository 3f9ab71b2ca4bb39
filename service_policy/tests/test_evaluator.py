"""
Unit tests for the policy evaluator.
"""

import asyncio
import time

import pytest
from unittest.mock import AsyncMock, patch

from shared.config import get_config
from shared.errors import ConfigurationError, ValidationError
from service_policy.app.cache.policy_cache import PolicyCache
from service_policy.app.catalog.loader import CatalogLoader, StaticCatalogSource
from service_policy.app.evaluation.evaluator import PolicyEvaluator, build_evaluator
from service_policy.app.identity.resolver import IdentityResolver
from service_policy.app.rules.engine import PolicyEngine
from service_policy.app.rules.models import EvaluationRequest, HeaderBundle, Outcome, ReasonCode

from shared.test_helpers import gateway_headers, make_token, test_data_factory

catalog_document = test_data_factory.create_catalog_document


def _request(token=None, resource="portal", action="read", **context) -> EvaluationRequest:
    return EvaluationRequest(token if token is not None else make_token(), resource, action, context)


class TestEvaluate:
    """Test cases for single evaluations."""

    @pytest.mark.asyncio
    async def test_member_reads_portal(self, evaluator):
        decision = await evaluator.evaluate(_request(correlationId="corr-1"))

        assert decision.outcome == Outcome.PERMIT
        assert decision.reason == ReasonCode.POLICY_SATISFIED
        assert decision.subject_snapshot.id == "user-123"
        assert decision.correlation_id == "corr-1"
        assert decision.cached is False
        assert decision.policy_version == f"1.0.0+{evaluator.loader.version}"

    @pytest.mark.asyncio
    async def test_member_cannot_delete_admin(self, evaluator):
        decision = await evaluator.evaluate(_request(resource="admin", action="delete"))

        assert decision.outcome == Outcome.DENY
        assert decision.reason == ReasonCode.INSUFFICIENT_ROLE_LEVEL
        assert decision.details["requiredLevel"] == 60

    @pytest.mark.asyncio
    async def test_missing_tenant_claim_is_cached_with_negative_ttl(self, evaluator):
        token = make_token({"sub": "user-123", "roles": ["MEMBER"]})

        with patch.object(evaluator.cache, "set", wraps=evaluator.cache.set) as spy:
            decision = await evaluator.evaluate(_request(token))
            await evaluator.drain()

        assert decision.reason == ReasonCode.MISSING_TENANT_ID
        assert decision.subject_snapshot is None
        spy.assert_called_once()
        cache_key, cached_decision = spy.call_args.args
        assert cache_key.split(":")[0] == "_"
        assert evaluator.cache.ttl_for(cached_decision) == evaluator.cache.negative_ttl == 60
        assert spy.call_args.kwargs["ttl"] == 60

    @pytest.mark.asyncio
    async def test_cache_ttl_capped_at_token_expiry(self, evaluator):
        with patch.object(evaluator.cache, "set", wraps=evaluator.cache.set) as spy:
            decision = await evaluator.evaluate(_request(make_token(expires_in=30)))
            await evaluator.drain()

        assert decision.reason == ReasonCode.POLICY_SATISFIED
        assert spy.call_args.kwargs["ttl"] <= 30

    @pytest.mark.asyncio
    async def test_raw_token_never_in_decision(self, evaluator):
        token = make_token()
        decision = await evaluator.evaluate(_request(token))

        assert token not in str(decision.to_dict())

    @pytest.mark.asyncio
    async def test_header_path(self, evaluator):
        request = EvaluationRequest(HeaderBundle(gateway_headers()), "portal", "read")

        decision = await evaluator.evaluate(request)

        assert decision.reason == ReasonCode.POLICY_SATISFIED

    @pytest.mark.asyncio
    async def test_header_path_missing_tenant(self, evaluator):
        headers = gateway_headers()
        del headers["x-tenant-id"]

        decision = await evaluator.evaluate(EvaluationRequest(HeaderBundle(headers), "portal", "read"))

        assert decision.reason == ReasonCode.MISSING_TENANT_CONTEXT

    @pytest.mark.asyncio
    async def test_context_cannot_override_identity(self, evaluator):
        decision = await evaluator.evaluate(
            _request(resource="admin", action="delete", roles=["SU"], permissions=["*"], tenantId="tenant-2")
        )

        assert decision.reason == ReasonCode.INSUFFICIENT_ROLE_LEVEL
        assert decision.subject_snapshot.roles == ("MEMBER",)

    @pytest.mark.asyncio
    async def test_cross_tenant_target(self, evaluator):
        decision = await evaluator.evaluate(_request(targetTenantId="tenant-2"))
        assert decision.reason == ReasonCode.TENANT_MISMATCH

    @pytest.mark.asyncio
    async def test_super_user(self, evaluator):
        token = make_token(roles=["SU"], permissions=[])
        decision = await evaluator.evaluate(_request(token, resource="crm", action="delete", targetTenantId="tenant-9"))

        assert decision.reason == ReasonCode.SUPER_USER_BYPASS

    @pytest.mark.asyncio
    async def test_expires_at_follows_outcome_ttl(self, evaluator):
        permit = await evaluator.evaluate(_request())
        deny = await evaluator.evaluate(_request(resource="admin", action="delete"))

        assert 299 <= (permit.expires_at - permit.evaluated_at).total_seconds() <= 300
        assert 59 <= (deny.expires_at - deny.evaluated_at).total_seconds() <= 60

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_deny(self, evaluator):
        with patch.object(evaluator.engine, "evaluate", side_effect=RuntimeError("boom")):
            decision = await evaluator.evaluate(_request())

        assert decision.outcome == Outcome.DENY
        assert decision.reason == ReasonCode.EVALUATION_ERROR
        assert decision.details == {"error": "RuntimeError"}

    @pytest.mark.asyncio
    async def test_catalog_unavailable(self, local_cache):
        loader = CatalogLoader(StaticCatalogSource({"roles": []}))
        evaluator = PolicyEvaluator(loader, local_cache, IdentityResolver(), PolicyEngine())

        with patch.object(evaluator, "_schedule_cache_write") as schedule:
            decision = await evaluator.evaluate(_request())

        assert decision.reason == ReasonCode.CATALOG_UNAVAILABLE
        schedule.assert_not_called()

    @pytest.mark.asyncio
    async def test_records_metrics(self, evaluator, metrics):
        await evaluator.evaluate(_request())

        assert metrics.registry.get_sample_value(
            "policy_decisions_total", {"outcome": "PERMIT", "reason": "POLICY_SATISFIED"}
        ) == 1.0


class TestCaching:
    """Test cases for decision caching."""

    @pytest.mark.asyncio
    async def test_second_call_served_from_cache(self, evaluator):
        request = _request(correlationId="first")
        first = await evaluator.evaluate(request)
        await evaluator.drain()

        with patch.object(evaluator.loader, "get_snapshot", new_callable=AsyncMock) as get_snapshot, \
                patch.object(evaluator.engine, "evaluate") as engine_evaluate:
            second = await evaluator.evaluate(_request(request.identity_source, correlationId="second"))

        get_snapshot.assert_not_called()
        engine_evaluate.assert_not_called()
        assert second.cached is True
        assert second.correlation_id == "second"
        assert (second.outcome, second.reason) == (first.outcome, first.reason)

    @pytest.mark.asyncio
    async def test_cache_write_does_not_block(self, evaluator):
        gate = asyncio.Event()

        async def slow_set(key, decision, ttl=None):
            await gate.wait()
            return True

        with patch.object(evaluator.cache, "set", side_effect=slow_set):
            decision = await evaluator.evaluate(_request())
            assert decision.reason == ReasonCode.POLICY_SATISFIED
            assert len(evaluator._pending_writes) == 1
            gate.set()
            await evaluator.drain()

        assert not evaluator._pending_writes

    @pytest.mark.asyncio
    async def test_cache_write_failure_is_swallowed(self, evaluator):
        with patch.object(evaluator.cache, "set", new_callable=AsyncMock) as cache_set:
            cache_set.side_effect = RuntimeError("redis exploded")
            decision = await evaluator.evaluate(_request())
            await evaluator.drain()

        assert decision.reason == ReasonCode.POLICY_SATISFIED

    @pytest.mark.asyncio
    async def test_invalidate_tenant(self, evaluator):
        await evaluator.evaluate(_request())
        await evaluator.evaluate(_request(make_token(tenantId="tenant-2")))
        await evaluator.drain()

        removed = await evaluator.invalidate("tenant-1")

        assert removed == 1
        assert len(evaluator.cache.local) == 1

    @pytest.mark.asyncio
    async def test_mixed_case_headers_keep_subjects_apart(self, evaluator):
        gateway = {"X-JWT-Verified": "true", "X-Auth-Source": "gateway", "X-Tenant-Id": "tenant-1"}
        admin = {**gateway, "X-User-Id": "admin-1", "X-User-Type": "STAFF", "X-User-Roles": "SU"}
        member = {
            **gateway, "X-User-Id": "member-2", "X-User-Type": "MEMBER",
            "X-User-Roles": "MEMBER", "X-User-Permissions": "PORTAL_ACCESS",
        }

        first = await evaluator.evaluate(EvaluationRequest(admin, "admin", "delete"))
        await evaluator.drain()
        second = await evaluator.evaluate(EvaluationRequest(member, "admin", "delete"))

        assert first.outcome == Outcome.PERMIT
        assert second.cached is False
        assert second.outcome == Outcome.DENY
        assert second.subject_snapshot.id == "member-2"

    @pytest.mark.asyncio
    async def test_correlation_header_does_not_defeat_cache(self, evaluator):
        first = EvaluationRequest(HeaderBundle(gateway_headers(**{"x-correlation-id": "a"})), "portal", "read")
        second = EvaluationRequest(HeaderBundle(gateway_headers(**{"x-correlation-id": "b"})), "portal", "read")

        await evaluator.evaluate(first)
        await evaluator.drain()
        decision = await evaluator.evaluate(second)

        assert decision.cached is True
        assert decision.reason == ReasonCode.POLICY_SATISFIED

    @pytest.mark.asyncio
    async def test_colons_in_resource_or_action_do_not_share_entries(self, evaluator):
        token = make_token()
        first = await evaluator.evaluate(_request(token, resource="portal", action="read:x"))
        await evaluator.drain()
        second = await evaluator.evaluate(_request(token, resource="portal:read", action="x"))

        assert first.reason == ReasonCode.UNKNOWN_ACTION
        assert second.cached is False
        assert second.reason == ReasonCode.UNKNOWN_RESOURCE

    @pytest.mark.asyncio
    async def test_catalog_change_misses_cache(self, evaluator):
        await evaluator.evaluate(_request())
        await evaluator.drain()

        document = catalog_document()
        document["actions"]["read"] = 5
        evaluator.loader.source = StaticCatalogSource(document)
        await evaluator.loader.refresh()

        decision = await evaluator.evaluate(_request())

        assert decision.cached is False
        assert decision.reason == ReasonCode.INSUFFICIENT_ROLE_LEVEL


class TestTimeout:
    """Test cases for the evaluation deadline."""

    @pytest.mark.asyncio
    async def test_slow_catalog_times_out(self, evaluator):
        async def slow_snapshot():
            await asyncio.sleep(5)

        with patch.object(evaluator.loader, "get_snapshot", side_effect=slow_snapshot), \
                patch.object(evaluator.cache, "set", new_callable=AsyncMock) as cache_set:
            start = time.monotonic()
            decision = await evaluator.evaluate(_request(correlationId="slow"))
            elapsed = time.monotonic() - start
            await evaluator.drain()

        assert decision.outcome == Outcome.DENY
        assert decision.reason == ReasonCode.EVALUATION_TIMEOUT
        assert decision.correlation_id == "slow"
        assert elapsed < evaluator.guard.timeout_seconds + 0.1
        cache_set.assert_not_called()


class TestBatch:
    """Test cases for batch evaluation."""

    @pytest.mark.asyncio
    async def test_order_preserved(self, evaluator):
        requests = [
            _request(resource="portal", action="read"),
            _request(resource="admin", action="delete"),
            _request(resource="billing", action="read"),
        ]

        decisions = await evaluator.evaluate_batch(requests)

        assert [d.reason for d in decisions] == [
            ReasonCode.POLICY_SATISFIED,
            ReasonCode.INSUFFICIENT_ROLE_LEVEL,
            ReasonCode.UNKNOWN_RESOURCE,
        ]

    @pytest.mark.asyncio
    async def test_failure_isolated(self, evaluator):
        real_evaluate = evaluator.engine.evaluate

        def flaky(subject, resource, action, context, snapshot):
            if resource == "admin":
                raise RuntimeError("boom")
            return real_evaluate(subject, resource, action, context, snapshot)

        with patch.object(evaluator.engine, "evaluate", side_effect=flaky):
            decisions = await evaluator.evaluate_batch([
                _request(resource="portal"),
                _request(resource="admin", action="delete"),
                _request(resource="portal"),
            ])

        assert [d.reason for d in decisions] == [
            ReasonCode.POLICY_SATISFIED,
            ReasonCode.EVALUATION_ERROR,
            ReasonCode.POLICY_SATISFIED,
        ]

    @pytest.mark.asyncio
    async def test_batch_item_exception_becomes_deny(self, evaluator):
        with patch.object(evaluator, "evaluate", new_callable=AsyncMock) as mock_evaluate:
            mock_evaluate.side_effect = RuntimeError("boom")
            evaluator.batch._evaluate = mock_evaluate
            decisions = await evaluator.evaluate_batch([_request(), _request()])

        assert all(d.reason == ReasonCode.EVALUATION_ERROR for d in decisions)

    @pytest.mark.asyncio
    async def test_oversize_batch_rejected_before_evaluation(self, evaluator):
        with patch.object(evaluator, "evaluate", new_callable=AsyncMock) as mock_evaluate:
            evaluator.batch._evaluate = mock_evaluate
            with pytest.raises(ValidationError):
                await evaluator.evaluate_batch([_request()] * 51)

        mock_evaluate.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_batch(self, evaluator):
        assert await evaluator.evaluate_batch([]) == []


class TestEffectivePermissions:
    """Test cases for effective permission queries."""

    @pytest.mark.asyncio
    async def test_member_permissions(self, evaluator):
        result = await evaluator.effective_permissions(make_token(), "portal")

        assert result.success is True
        assert result.permissions == ["PORTAL_ACCESS"]
        assert result.roles == ["MEMBER"]
        assert result.tenant_id == "tenant-1"

    @pytest.mark.asyncio
    async def test_super_user_gets_wildcard(self, evaluator):
        result = await evaluator.effective_permissions(make_token(roles=["SU"]), "crm")
        assert result.permissions == ["*"]

    @pytest.mark.asyncio
    async def test_invalid_identity(self, evaluator):
        result = await evaluator.effective_permissions("garbage", "portal")

        assert result.success is False
        assert result.reason == "INVALID_TOKEN"


class TestBuildEvaluator:
    """Test cases for wiring from configuration."""

    def test_build_from_config(self):
        config = get_config(
            cache_positive_ttl=120,
            cache_negative_ttl=30,
            evaluation_timeout_seconds=1.5,
            batch_max_size=10,
            authorization_bypass=True
        )

        evaluator = build_evaluator(config)

        assert evaluator.cache.positive_ttl == 120
        assert evaluator.cache.negative_ttl == 30
        assert evaluator.guard.timeout_seconds == 1.5
        assert evaluator.batch.max_size == 10
        assert evaluator.engine.bypass is True

    def test_inverted_ttls_rejected(self):
        with pytest.raises(ConfigurationError):
            build_evaluator(get_config(cache_positive_ttl=30, cache_negative_ttl=60))

    def test_injected_cache_is_used(self):
        cache = PolicyCache("redis://localhost:6379/0")
        assert build_evaluator(get_config(), cache=cache).cache is cache
