"""
Identity resolution: bearer tokens and gateway header bundles to subjects.
"""

import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError

from shared.errors import IdentityError
from shared.logging import get_logger
from ..rules.models import HeaderBundle, IdentitySource, ReasonCode, Subject


TENANT_CLAIMS = ("tenantId", "tid", "extension_tenantId", "tenant_id")
SUBJECT_CLAIMS = ("sub", "id", "oid")
USER_TYPE_CLAIMS = ("userType", "user_type", "extension_userType")

# Keys that describe who the caller is; they may only come from the identity source
IDENTITY_CONTEXT_KEYS = frozenset({
    "user", "userId", "user_id", "sub",
    "tenantId", "tenant_id", "tid",
    "roles", "permissions", "userType", "user_type",
    "email", "userEmail",
})

GATEWAY_VERIFIED_HEADER = "x-jwt-verified"
GATEWAY_SOURCE_HEADER = "x-auth-source"

# Gateway headers that determine the resolved subject
IDENTITY_HEADERS = (
    GATEWAY_VERIFIED_HEADER,
    GATEWAY_SOURCE_HEADER,
    "x-user-id",
    "x-tenant-id",
    "x-user-type",
    "x-user-roles",
    "x-user-permissions",
    "x-user-email",
)


def normalize_roles(raw: Any) -> frozenset:
    """Flatten roles given as codes or ``{"code": ...}`` objects."""
    if raw is None:
        return frozenset()
    if isinstance(raw, (str, dict)):
        raw = [raw]
    if not isinstance(raw, Iterable):
        return frozenset()

    codes = set()
    for role in raw:
        if isinstance(role, str):
            code = role.strip()
        elif isinstance(role, Mapping):
            code = str(role.get("code") or "").strip()
        else:
            code = ""
        if code:
            codes.add(code)
    return frozenset(codes)


def normalize_permissions(raw: Any) -> frozenset:
    if raw is None:
        return frozenset()
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, Iterable):
        return frozenset()
    return frozenset(p.strip() for p in raw if isinstance(p, str) and p.strip())


def identity_hash(identity_source: IdentitySource) -> str:
    """Short, non-reversible digest of an identity source."""
    if isinstance(identity_source, Mapping):
        bundle = identity_source if isinstance(identity_source, HeaderBundle) else HeaderBundle(identity_source)
        material = json.dumps(
            {k: bundle[k] for k in IDENTITY_HEADERS if k in bundle},
            sort_keys=True,
            default=str,
        )
    else:
        material = _strip_bearer(str(identity_source or ""))
    return hashlib.sha256(material.encode()).hexdigest()[:16]


def _strip_bearer(token: str) -> str:
    token = token.strip()
    if token[:7].lower() == "bearer ":
        return token[7:].strip()
    return token


def _first(claims: Mapping[str, Any], names: Sequence[str]) -> Optional[Any]:
    for name in names:
        value = claims.get(name)
        if value not in (None, ""):
            return value
    return None


class IdentityResolver:
    """Normalizes identity sources into canonical subjects.

    Tokens are parsed, not authenticated: signature verification happens
    upstream unless ``jwt_secret`` is configured. Gateway headers are
    authoritative over anything else in the request.
    """

    def __init__(self, jwt_secret: Optional[str] = None, algorithms: Optional[List[str]] = None,
                 gateway_auth_source: str = "gateway"):
        self.jwt_secret = jwt_secret
        self.algorithms = algorithms or ["HS256"]
        self.gateway_auth_source = gateway_auth_source
        self.logger = get_logger("policy.identity")

    def resolve(self, identity_source: IdentitySource) -> Subject:
        """Resolve a subject or raise ``IdentityError``."""
        if isinstance(identity_source, Mapping):
            return self.resolve_headers(identity_source)
        if isinstance(identity_source, str):
            return self.resolve_token(identity_source)
        raise IdentityError(ReasonCode.INVALID_TOKEN, "Unsupported identity source")

    def resolve_token(self, token: str) -> Subject:
        token = _strip_bearer(token)
        if not token:
            raise IdentityError(ReasonCode.INVALID_TOKEN, "Token is empty")

        claims = self._decode(token)

        exp = claims.get("exp")
        expires_at = None
        if exp is not None:
            try:
                expires_at = datetime.fromtimestamp(int(exp), tz=timezone.utc)
            except (TypeError, ValueError, OverflowError):
                raise IdentityError(ReasonCode.INVALID_TOKEN, "Token exp claim is malformed")
            if expires_at <= datetime.now(timezone.utc):
                raise IdentityError(ReasonCode.INVALID_TOKEN, "Token expired")

        subject_id = _first(claims, SUBJECT_CLAIMS)
        if subject_id is None:
            raise IdentityError(ReasonCode.INVALID_USER_DATA, "User data is missing or invalid")

        tenant_id = _first(claims, TENANT_CLAIMS)
        if tenant_id is None:
            raise IdentityError(ReasonCode.MISSING_TENANT_ID, "Token missing tenantId field")

        return Subject(
            id=str(subject_id),
            tenant_id=str(tenant_id),
            user_type=_first(claims, USER_TYPE_CLAIMS),
            roles=normalize_roles(claims.get("roles")),
            permissions=normalize_permissions(claims.get("permissions")),
            email=claims.get("email"),
            expires_at=expires_at,
        )

    def _decode(self, token: str) -> Dict[str, Any]:
        try:
            if self.jwt_secret:
                # exp is checked by the caller so both paths report it the same way
                return jwt.decode(
                    token,
                    self.jwt_secret,
                    algorithms=self.algorithms,
                    options={"verify_aud": False, "verify_exp": False},
                )
            return jwt.get_unverified_claims(token)
        except ExpiredSignatureError:
            raise IdentityError(ReasonCode.INVALID_TOKEN, "Token expired")
        except JWTError as e:
            raise IdentityError(ReasonCode.INVALID_TOKEN, f"Invalid token: {e}")

    def resolve_headers(self, headers: Mapping[str, Any]) -> Subject:
        bundle = headers if isinstance(headers, HeaderBundle) else HeaderBundle(headers)

        verified = str(bundle.get(GATEWAY_VERIFIED_HEADER, "")).lower() == "true"
        source = bundle.get(GATEWAY_SOURCE_HEADER)
        if not verified or source != self.gateway_auth_source:
            raise IdentityError(ReasonCode.INVALID_HEADERS, "Headers were not asserted by the gateway")

        user_id = bundle.get("x-user-id")
        if not user_id:
            raise IdentityError(ReasonCode.INVALID_HEADERS, "Missing required authentication headers")

        return Subject(
            id=str(user_id),
            tenant_id=bundle.get("x-tenant-id") or None,
            user_type=bundle.get("x-user-type") or None,
            roles=normalize_roles(self._parse_list_header(bundle, "x-user-roles")),
            permissions=normalize_permissions(self._parse_list_header(bundle, "x-user-permissions")),
            email=bundle.get("x-user-email") or None,
        )

    def _parse_list_header(self, bundle: Mapping[str, Any], name: str) -> List[Any]:
        raw = bundle.get(name)
        if raw is None or raw == "":
            return []
        if isinstance(raw, (list, tuple)):
            return list(raw)

        text = str(raw).strip()
        if text.startswith("["):
            try:
                parsed = json.loads(text)
            except json.JSONDecodeError as e:
                self.logger.warning("Failed to parse identity header", header=name, error=str(e))
                return []
            return parsed if isinstance(parsed, list) else []
        return [part for part in (p.strip() for p in text.split(",")) if part]


def sanitize_context(context: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Drop identity-shaped keys from evaluation context."""
    if not context:
        return {}
    dropped = sorted(k for k in context if k in IDENTITY_CONTEXT_KEYS)
    if dropped:
        get_logger("policy.identity").warning(
            "Ignoring identity fields supplied in request context",
            fields=dropped
        )
    return {k: v for k, v in context.items() if k not in IDENTITY_CONTEXT_KEYS}
