"""
Versioned, validated snapshot of the role and permission catalog.
"""

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from shared.errors import CatalogError
from .permissions import PermissionCatalog, PermissionDefinition, ResourceDefinition, UNKNOWN_CATEGORY
from .roles import RoleHierarchy


class _CatalogModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class RoleDocument(_CatalogModel):
    code: str = Field(..., min_length=1)
    level: int = Field(..., ge=0)
    name: Optional[str] = None


class PermissionDocument(_CatalogModel):
    code: str = Field(..., min_length=1)
    resource: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1)
    category: Optional[str] = None
    level: int = Field(0, ge=0)


class ResourceDocument(_CatalogModel):
    categories: List[str] = Field(default_factory=list)
    permissions: List[str] = Field(default_factory=list)
    description: Optional[str] = None


class CatalogDocument(_CatalogModel):
    """Wire shape of a catalog, as read from a file or the catalog service."""
    super_user_role: str = "SU"
    scoped_admin_role: Optional[str] = None
    tenant_admin_resource: Optional[str] = None
    roles: List[RoleDocument]
    categories: List[str]
    user_types: Dict[str, str] = Field(default_factory=dict)
    actions: Dict[str, int]
    resources: Dict[str, ResourceDocument]
    permissions: List[PermissionDocument] = Field(default_factory=list)


@dataclass(frozen=True)
class CatalogSnapshot:
    """Everything the rule pipeline reads, pinned to one catalog version."""
    version: str
    roles: RoleHierarchy
    permissions: PermissionCatalog
    tenant_admin_resource: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CatalogSnapshot":
        try:
            document = CatalogDocument.model_validate(data)
        except PydanticValidationError as e:
            raise CatalogError("Catalog document is malformed", details={"errors": e.errors()}) from e
        return cls.from_document(document)

    @classmethod
    def from_document(cls, document: CatalogDocument) -> "CatalogSnapshot":
        _validate(document)

        hierarchy = RoleHierarchy(
            {role.code: role.level for role in document.roles},
            super_user_code=document.super_user_role,
            scoped_admin_code=document.scoped_admin_role,
        )
        catalog = PermissionCatalog(
            resources={
                name: ResourceDefinition(
                    name=name,
                    categories=frozenset(c.upper() for c in resource.categories),
                    permissions=frozenset(resource.permissions),
                    description=resource.description,
                )
                for name, resource in document.resources.items()
            },
            permissions={
                p.code: PermissionDefinition(
                    code=p.code,
                    resource=p.resource,
                    action=p.action,
                    category=p.category.upper() if p.category else None,
                    min_level=p.level,
                )
                for p in document.permissions
            },
            action_levels=dict(document.actions),
            categories=frozenset(c.upper() for c in document.categories),
            user_type_categories={k.upper(): v.upper() for k, v in document.user_types.items()},
        )

        return cls(
            version=_document_version(document),
            roles=hierarchy,
            permissions=catalog,
            tenant_admin_resource=document.tenant_admin_resource,
        )

    def describe(self) -> Dict[str, Any]:
        """Public summary of resources and actions."""
        return {
            "version": self.version,
            "resources": {
                name: {
                    "description": resource.description,
                    "actions": sorted(
                        p.action for p in self.permissions.permissions.values() if p.resource == name
                    ),
                    "categories": sorted(resource.categories),
                    "permissions": [
                        {"code": p.code, "action": p.action, "category": p.category, "minLevel": p.min_level}
                        for p in sorted(self.permissions.permissions.values(), key=lambda p: p.code)
                        if p.resource == name
                    ],
                }
                for name, resource in sorted(self.permissions.resources.items())
            },
            "actions": {
                action: {"minRoleLevel": level}
                for action, level in sorted(self.permissions.action_levels.items(), key=lambda item: item[1])
            },
        }


def _validate(document: CatalogDocument) -> None:
    role_codes = {role.code for role in document.roles}
    categories = {c.upper() for c in document.categories}
    problems: List[str] = []

    if UNKNOWN_CATEGORY in categories:
        problems.append(f"category '{UNKNOWN_CATEGORY}' is reserved")
    if document.super_user_role not in role_codes:
        problems.append(f"super user role '{document.super_user_role}' is not a declared role")
    if document.scoped_admin_role and document.scoped_admin_role not in role_codes:
        problems.append(f"scoped admin role '{document.scoped_admin_role}' is not a declared role")
    if document.tenant_admin_resource and document.tenant_admin_resource not in document.resources:
        problems.append(f"tenant admin resource '{document.tenant_admin_resource}' is not a declared resource")

    for user_type, category in document.user_types.items():
        if category.upper() not in categories:
            problems.append(f"user type '{user_type}' maps to undeclared category '{category}'")

    for name, resource in document.resources.items():
        for category in resource.categories:
            if category.upper() not in categories:
                problems.append(f"resource '{name}' allows undeclared category '{category}'")

    for permission in document.permissions:
        if permission.resource not in document.resources:
            problems.append(f"permission '{permission.code}' targets undeclared resource '{permission.resource}'")
        if permission.action not in document.actions:
            problems.append(f"permission '{permission.code}' uses undeclared action '{permission.action}'")

    if problems:
        raise CatalogError("Catalog document failed validation", details={"problems": problems})


def _document_version(document: CatalogDocument) -> str:
    canonical = json.dumps(document.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode()).hexdigest()[:12]
