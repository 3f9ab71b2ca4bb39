"""
Policy rule pipeline.
"""

from typing import Any, Mapping, Optional

from shared.logging import get_logger
from ..catalog.permissions import UNKNOWN_CATEGORY
from ..catalog.snapshot import CatalogSnapshot
from .models import PolicyResult, ReasonCode, Subject


class PolicyEngine:
    """Ordered, short-circuiting evaluation of one authorization question.

    Stages run in a fixed order and the first one that produces a result
    ends the evaluation. The engine holds no state between calls; every
    lookup goes through the catalog snapshot it is handed.
    """

    def __init__(self, bypass: bool = False):
        self.bypass = bypass
        self.logger = get_logger("policy.engine")
        if bypass:
            self.logger.warning("Authorization bypass enabled, every resolved subject is permitted")

    def evaluate(self, subject: Subject, resource: str, action: str,
                 context: Mapping[str, Any], snapshot: CatalogSnapshot) -> PolicyResult:
        stages = (
            self._bypass_stage,
            self._super_user_stage,
            self._tenant_context_stage,
            self._tenant_isolation_stage,
            self._resource_stage,
            self._action_stage,
            self._permission_stage,
        )
        for stage in stages:
            result = stage(subject, resource, action, context, snapshot)
            if result is not None:
                self.logger.debug(
                    "Policy stage decided",
                    stage=stage.__name__.strip("_"),
                    outcome=result.outcome.value,
                    reason=result.reason.value,
                    resource=resource,
                    action=action
                )
                return result

        return PolicyResult.permit(ReasonCode.POLICY_SATISFIED)

    def _bypass_stage(self, subject, resource, action, context, snapshot) -> Optional[PolicyResult]:
        if self.bypass:
            return PolicyResult.permit(ReasonCode.AUTHORIZATION_BYPASS)
        return None

    def _super_user_stage(self, subject, resource, action, context, snapshot) -> Optional[PolicyResult]:
        if snapshot.roles.is_super_user(subject.roles):
            return PolicyResult.permit(ReasonCode.SUPER_USER_BYPASS)
        return None

    def _tenant_context_stage(self, subject, resource, action, context, snapshot) -> Optional[PolicyResult]:
        if not subject.tenant_id:
            return PolicyResult.deny(ReasonCode.MISSING_TENANT_CONTEXT)
        return None

    def _tenant_isolation_stage(self, subject, resource, action, context, snapshot) -> Optional[PolicyResult]:
        target = context.get("targetTenantId")
        crosses_tenant = target is not None and str(target) != subject.tenant_id
        scoped_admin = snapshot.roles.is_scoped_admin(subject.roles)

        if crosses_tenant:
            # The foreign tenant id is not echoed back
            if scoped_admin:
                return PolicyResult.deny(ReasonCode.TENANT_SCOPE_VIOLATION)
            return PolicyResult.deny(ReasonCode.TENANT_MISMATCH)

        if scoped_admin and snapshot.tenant_admin_resource and resource == snapshot.tenant_admin_resource:
            return PolicyResult.permit(ReasonCode.SCOPED_ADMIN_OWN_TENANT, tenantId=subject.tenant_id)
        return None

    def _resource_stage(self, subject, resource, action, context, snapshot) -> Optional[PolicyResult]:
        catalog = snapshot.permissions
        if not catalog.is_known_resource(resource):
            return PolicyResult.deny(ReasonCode.UNKNOWN_RESOURCE)

        candidates = catalog.permissions_for_resource(resource)
        if not catalog.has_any(subject.permissions, candidates):
            return PolicyResult.deny(
                ReasonCode.INSUFFICIENT_RESOURCE_PERMISSION,
                availablePermissions=sorted(candidates)
            )

        category = catalog.category_for(subject.user_type)
        allowed = catalog.allowed_categories(resource)
        if category == UNKNOWN_CATEGORY or category not in allowed:
            return PolicyResult.deny(
                ReasonCode.INVALID_USER_TYPE,
                userCategory=category,
                allowedCategories=sorted(allowed)
            )
        return None

    def _action_stage(self, subject, resource, action, context, snapshot) -> Optional[PolicyResult]:
        required = snapshot.permissions.min_level_for(action)
        if required is None:
            return PolicyResult.deny(ReasonCode.UNKNOWN_ACTION)

        level = snapshot.roles.highest_level(subject.roles)
        if level < required:
            return PolicyResult.deny(
                ReasonCode.INSUFFICIENT_ROLE_LEVEL,
                requiredLevel=required,
                userLevel=level
            )
        return None

    def _permission_stage(self, subject, resource, action, context, snapshot) -> Optional[PolicyResult]:
        catalog = snapshot.permissions
        required = catalog.permission_for(resource, action)
        if required is None:
            return PolicyResult.deny(ReasonCode.PERMISSION_NOT_DEFINED)

        if not catalog.has_any(subject.permissions, (required,)):
            return PolicyResult.deny(
                ReasonCode.MISSING_PERMISSION,
                requiredPermission=required,
                userPermissions=catalog.effective_permissions(subject.permissions, resource)
            )
        return None
