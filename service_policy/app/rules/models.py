"""
Policy data models: subjects, requests, decisions and their wire shapes.
"""

from types import MappingProxyType
from typing import Dict, Any, Optional, List, Union, Mapping, FrozenSet
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class Outcome(str, Enum):
    """Decision outcomes."""
    PERMIT = "PERMIT"
    DENY = "DENY"


class ReasonCode(str, Enum):
    """Closed set of decision reasons."""
    # Permit reasons
    AUTHORIZATION_BYPASS = "AUTHORIZATION_BYPASS"
    SUPER_USER_BYPASS = "SUPER_USER_BYPASS"
    SCOPED_ADMIN_OWN_TENANT = "SCOPED_ADMIN_OWN_TENANT"
    POLICY_SATISFIED = "POLICY_SATISFIED"

    # Identity
    INVALID_TOKEN = "INVALID_TOKEN"
    INVALID_HEADERS = "INVALID_HEADERS"
    INVALID_USER_DATA = "INVALID_USER_DATA"
    MISSING_TENANT_ID = "MISSING_TENANT_ID"
    MISSING_TENANT_CONTEXT = "MISSING_TENANT_CONTEXT"

    # Isolation
    TENANT_MISMATCH = "TENANT_MISMATCH"
    TENANT_SCOPE_VIOLATION = "TENANT_SCOPE_VIOLATION"

    # Resource
    UNKNOWN_RESOURCE = "UNKNOWN_RESOURCE"
    INSUFFICIENT_RESOURCE_PERMISSION = "INSUFFICIENT_RESOURCE_PERMISSION"
    INVALID_USER_TYPE = "INVALID_USER_TYPE"

    # Action
    UNKNOWN_ACTION = "UNKNOWN_ACTION"
    INSUFFICIENT_ROLE_LEVEL = "INSUFFICIENT_ROLE_LEVEL"

    # Permission
    PERMISSION_NOT_DEFINED = "PERMISSION_NOT_DEFINED"
    MISSING_PERMISSION = "MISSING_PERMISSION"

    # System
    EVALUATION_ERROR = "EVALUATION_ERROR"
    EVALUATION_TIMEOUT = "EVALUATION_TIMEOUT"
    CATALOG_UNAVAILABLE = "CATALOG_UNAVAILABLE"


WILDCARD_PERMISSION = "*"


class HeaderBundle(dict):
    """Identity headers forwarded by the gateway after it verified the token.

    Keys are normalised to lower case on construction.
    """

    def __init__(self, headers: Optional[Mapping[str, Any]] = None, **kwargs):
        merged = dict(headers or {}, **kwargs)
        super().__init__({str(k).lower(): v for k, v in merged.items()})


IdentitySource = Union[str, HeaderBundle]


@dataclass(frozen=True)
class Subject:
    """Canonical identity a decision is evaluated for."""
    id: str
    tenant_id: Optional[str]
    user_type: Optional[str] = None
    roles: FrozenSet[str] = frozenset()
    permissions: FrozenSet[str] = frozenset()
    email: Optional[str] = None
    expires_at: Optional[datetime] = None

    def snapshot(self) -> "SubjectSnapshot":
        return SubjectSnapshot(
            id=self.id,
            tenant_id=self.tenant_id,
            user_type=self.user_type,
            roles=tuple(sorted(self.roles)),
            permissions=tuple(sorted(self.permissions)),
        )


@dataclass(frozen=True)
class SubjectSnapshot:
    """Denormalized subject kept on a decision for audit."""
    id: str
    tenant_id: Optional[str]
    user_type: Optional[str]
    roles: tuple = ()
    permissions: tuple = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenantId": self.tenant_id,
            "userType": self.user_type,
            "roles": list(self.roles),
            "permissions": list(self.permissions),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SubjectSnapshot":
        return cls(
            id=data["id"],
            tenant_id=data.get("tenantId"),
            user_type=data.get("userType"),
            roles=tuple(data.get("roles", [])),
            permissions=tuple(data.get("permissions", [])),
        )


@dataclass(frozen=True)
class EvaluationRequest:
    """One authorization question."""
    identity_source: IdentitySource
    resource: str
    action: str
    context: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "context", MappingProxyType(dict(self.context or {})))

    @property
    def correlation_id(self) -> Optional[str]:
        return self.context.get("correlationId")


@dataclass(frozen=True)
class PolicyResult:
    """Outcome of the rule pipeline before it is stamped into a decision."""
    outcome: Outcome
    reason: ReasonCode
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def permitted(self) -> bool:
        return self.outcome == Outcome.PERMIT

    @classmethod
    def permit(cls, reason: ReasonCode, **details) -> "PolicyResult":
        return cls(Outcome.PERMIT, reason, details)

    @classmethod
    def deny(cls, reason: ReasonCode, **details) -> "PolicyResult":
        return cls(Outcome.DENY, reason, details)


@dataclass(frozen=True)
class Decision:
    """Authoritative answer returned to the caller."""
    outcome: Outcome
    reason: ReasonCode
    resource: str
    action: str
    policy_version: str
    subject_snapshot: Optional[SubjectSnapshot] = None
    evaluated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: Optional[datetime] = None
    correlation_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    cached: bool = False

    @property
    def permitted(self) -> bool:
        return self.outcome == Outcome.PERMIT

    def with_request_metadata(self, correlation_id: Optional[str], cached: bool) -> "Decision":
        """Copy carrying the current caller's correlation id."""
        return replace(self, correlation_id=correlation_id, cached=cached)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision": self.outcome.value,
            "reason": self.reason.value,
            "user": self.subject_snapshot.to_dict() if self.subject_snapshot else None,
            "resource": self.resource,
            "action": self.action,
            "timestamp": self.evaluated_at.isoformat(),
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "policyVersion": self.policy_version,
            "correlationId": self.correlation_id,
            "details": dict(self.details),
            "cached": self.cached,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Decision":
        user = data.get("user")
        return cls(
            outcome=Outcome(data["decision"]),
            reason=ReasonCode(data["reason"]),
            resource=data["resource"],
            action=data["action"],
            policy_version=data["policyVersion"],
            subject_snapshot=SubjectSnapshot.from_dict(user) if user else None,
            evaluated_at=datetime.fromisoformat(data["timestamp"]),
            expires_at=datetime.fromisoformat(data["expiresAt"]) if data.get("expiresAt") else None,
            correlation_id=data.get("correlationId"),
            details=data.get("details") or {},
            cached=bool(data.get("cached", False)),
        )


# HTTP request and response models

class EvaluateRequestModel(BaseModel):
    """Request body for a single evaluation."""
    token: Optional[str] = Field(None, description="Bearer token; omitted when gateway headers are used")
    resource: str = Field(..., min_length=1, description="Resource being accessed")
    action: str = Field(..., min_length=1, description="Action being performed")
    context: Dict[str, Any] = Field(default_factory=dict, description="Additional context")


class BatchEvaluateRequestModel(BaseModel):
    """Request body for a batch evaluation."""
    requests: List[Dict[str, Any]] = Field(..., description="Evaluation requests")

    @field_validator("requests")
    @classmethod
    def _not_empty(cls, value: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if not value:
            raise ValueError("requests must not be empty")
        return value


class InvalidateRequestModel(BaseModel):
    """Request body for cache invalidation."""
    tenant_id: Optional[str] = Field(None, alias="tenantId", description="Tenant to invalidate; all when omitted")

    model_config = {"populate_by_name": True}


class EffectivePermissionsResponse(BaseModel):
    """Permissions a subject holds for one resource."""
    success: bool
    resource: str
    permissions: List[str] = Field(default_factory=list)
    roles: List[str] = Field(default_factory=list)
    user_type: Optional[str] = Field(None, alias="userType")
    tenant_id: Optional[str] = Field(None, alias="tenantId")
    reason: Optional[str] = None
    error: Optional[str] = None

    model_config = {"populate_by_name": True}
