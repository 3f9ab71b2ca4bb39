"""
Policy Decision Point service.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from shared.base_service import BaseService
from shared.config import PolicyServiceConfig
from shared.errors import ValidationError

from .evaluation.evaluator import PolicyEvaluator, build_evaluator
from .identity.resolver import IDENTITY_HEADERS
from .rules.models import (
    BatchEvaluateRequestModel, Decision, EffectivePermissionsResponse,
    EvaluateRequestModel, EvaluationRequest, HeaderBundle, IdentitySource,
    InvalidateRequestModel
)


class PolicyService(BaseService):
    """Policy service implementation."""

    def __init__(self, config: Optional[PolicyServiceConfig] = None,
                 evaluator: Optional[PolicyEvaluator] = None):
        super().__init__("policy", config)

        self.evaluator = evaluator or build_evaluator(self.config, metrics=self.metrics)

        self._setup_policy_routes()

    def _identity_source(self, request: Request, body_token: Optional[str] = None) -> Optional[IdentitySource]:
        """Gateway headers win, then the Authorization header, then a token in the body."""
        headers = request.headers
        if headers.get("x-jwt-verified") == "true" and headers.get("x-auth-source"):
            return HeaderBundle({k: headers[k] for k in IDENTITY_HEADERS if k in headers})

        authorization = headers.get("authorization")
        if authorization and authorization.lower().startswith("bearer "):
            return authorization

        return body_token or None

    def _decision_response(self, decision: Decision) -> JSONResponse:
        body = decision.to_dict()
        body["success"] = decision.permitted
        body["authorized"] = decision.permitted
        return JSONResponse(
            status_code=200 if decision.permitted else 403,
            content=body,
            headers={"X-Policy-Version": decision.policy_version}
        )

    def _setup_policy_routes(self):
        """Set up policy-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "policy",
                "message": "Policy Decision Point",
                "version": "1.0.0",
                "capabilities": ["evaluation", "batch_evaluation", "decision_cache", "effective_permissions"]
            }

        @self.app.post("/policy/evaluate")
        async def evaluate(body: EvaluateRequestModel, request: Request):
            """Evaluate a single authorization request."""
            identity = self._identity_source(request, body.token)
            if identity is None:
                raise ValidationError("Missing required field: token (or gateway headers)")

            context = dict(body.context)
            context["correlationId"] = request.headers.get("x-correlation-id") or str(uuid.uuid4())

            decision = await self.evaluator.evaluate(
                EvaluationRequest(identity, body.resource, body.action, context)
            )
            return self._decision_response(decision)

        @self.app.post("/policy/evaluate-batch")
        async def evaluate_batch(body: BatchEvaluateRequestModel, request: Request):
            """Evaluate multiple authorization requests in one call."""
            correlation_id = request.headers.get("x-correlation-id") or str(uuid.uuid4())
            default_identity = self._identity_source(request)

            requests = []
            for index, raw in enumerate(body.requests):
                try:
                    item = EvaluateRequestModel.model_validate(raw)
                except PydanticValidationError as e:
                    raise ValidationError(
                        f"Invalid batch request at index {index}",
                        details={"errors": e.errors(include_url=False)}
                    )
                identity = item.token or default_identity
                if identity is None:
                    raise ValidationError(f"Missing identity for batch request at index {index}")
                context = dict(item.context)
                context.setdefault("correlationId", f"{correlation_id}:{index}")
                requests.append(EvaluationRequest(identity, item.resource, item.action, context))

            decisions = await self.evaluator.evaluate_batch(requests)

            return {
                "results": [d.to_dict() for d in decisions],
                "count": len(decisions),
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "policyVersion": self.evaluator.policy_version,
                "correlationId": correlation_id
            }

        @self.app.get("/policy/permissions/{resource}", response_model=EffectivePermissionsResponse)
        async def get_effective_permissions(resource: str, request: Request):
            """Permissions the caller holds for a resource."""
            identity = self._identity_source(request)
            if identity is None:
                raise HTTPException(status_code=401, detail="Authorization header required")

            result = await self.evaluator.effective_permissions(identity, resource)
            if not result.success:
                raise HTTPException(status_code=401, detail=result.error)
            return result

        @self.app.get("/policy/check/{resource}/{action}")
        async def check(resource: str, action: str, request: Request):
            """Quick authorization check using the caller's own identity."""
            identity = self._identity_source(request)
            if identity is None:
                raise HTTPException(status_code=401, detail="Authorization header required")

            context: Dict[str, Any] = dict(request.query_params)
            context["correlationId"] = request.headers.get("x-correlation-id") or str(uuid.uuid4())

            decision = await self.evaluator.evaluate(EvaluationRequest(identity, resource, action, context))
            return self._decision_response(decision)

        @self.app.get("/policy/info")
        async def info():
            """Resources, actions and role levels of the active catalog."""
            return await self.evaluator.catalog_info()

        @self.app.get("/policy/cache/stats")
        async def cache_stats():
            """Decision cache statistics."""
            return {
                "success": True,
                "stats": await self.evaluator.cache_stats(),
                "timestamp": datetime.now(timezone.utc).isoformat()
            }

        @self.app.delete("/policy/cache")
        async def clear_cache():
            """Clear every cached decision."""
            removed = await self.evaluator.clear_cache()
            return {
                "success": True,
                "message": "Policy cache cleared",
                "removed": removed,
                "timestamp": datetime.now(timezone.utc).isoformat()
            }

        @self.app.delete("/policy/cache/{key}")
        async def delete_cache_entry(key: str):
            """Clear one cached decision."""
            removed = await self.evaluator.delete_cache_entry(key)
            return {
                "success": True,
                "message": f"Cache entry {key} cleared",
                "removed": removed,
                "timestamp": datetime.now(timezone.utc).isoformat()
            }

        @self.app.post("/policy/invalidate")
        async def invalidate(body: InvalidateRequestModel):
            """Drop cached decisions after role or permission changes."""
            removed = await self.evaluator.invalidate(body.tenant_id)
            return {
                "success": True,
                "tenantId": body.tenant_id,
                "removed": removed,
                "timestamp": datetime.now(timezone.utc).isoformat()
            }

    async def _check_dependencies(self):
        """Check policy service dependencies."""
        dependencies = {}

        if self.evaluator.cache.enabled:
            dependencies["redis"] = "ok" if await self.evaluator.cache.health_check() else "degraded"

        status = self.evaluator.loader.get_status()
        if not status["loaded"]:
            dependencies["catalog"] = "error"
        else:
            # Serving a stale snapshot after a failed refresh
            dependencies["catalog"] = "degraded" if status["last_error"] else "ok"

        return dependencies

    async def start(self):
        """Start policy service components."""
        await self.evaluator.start()
        self.logger.info(
            "Policy service started",
            catalog_version=self.evaluator.loader.version,
            bypass=self.evaluator.engine.bypass
        )

    async def stop(self):
        """Stop policy service components."""
        await self.evaluator.stop()
        self.logger.info("Policy service stopped")


def create_app(config: Optional[PolicyServiceConfig] = None, evaluator: Optional[PolicyEvaluator] = None):
    """Create policy service application."""
    service = PolicyService(config, evaluator)
    return service.app


def main():
    """Run the policy service with configuration from the environment."""
    PolicyService().run()


if __name__ == "__main__":
    main()
