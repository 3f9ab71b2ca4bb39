"""
Permission catalog resolution.
"""

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from ..rules.models import WILDCARD_PERMISSION

UNKNOWN_CATEGORY = "UNKNOWN"


@dataclass(frozen=True)
class PermissionDefinition:
    """A permission code, the (resource, action) it grants, and its catalog category and level."""
    code: str
    resource: str
    action: str
    category: Optional[str] = None
    min_level: int = 0


@dataclass(frozen=True)
class ResourceDefinition:
    """A protected resource."""
    name: str
    categories: FrozenSet[str] = frozenset()
    permissions: FrozenSet[str] = frozenset()
    description: Optional[str] = None


@dataclass
class PermissionCatalog:
    """Read-only lookups over the permission catalog snapshot."""
    resources: Dict[str, ResourceDefinition]
    permissions: Dict[str, PermissionDefinition]
    action_levels: Dict[str, int]
    categories: FrozenSet[str] = frozenset()
    user_type_categories: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        self._by_resource_action: Dict[Tuple[str, str], str] = {}
        self._resource_permissions: Dict[str, FrozenSet[str]] = {}

        for definition in sorted(self.permissions.values(), key=lambda p: p.code):
            # First code wins when two definitions share a (resource, action)
            self._by_resource_action.setdefault((definition.resource, definition.action), definition.code)

        for name, resource in self.resources.items():
            defined = {p.code for p in self.permissions.values() if p.resource == name}
            self._resource_permissions[name] = frozenset(defined | set(resource.permissions))

    def is_known_resource(self, resource: str) -> bool:
        return resource in self.resources

    def permissions_for_resource(self, resource: str) -> FrozenSet[str]:
        """Permission codes that grant access to ``resource``."""
        return self._resource_permissions.get(resource, frozenset())

    def allowed_categories(self, resource: str) -> FrozenSet[str]:
        definition = self.resources.get(resource)
        return definition.categories if definition else frozenset()

    def permission_for(self, resource: str, action: str) -> Optional[str]:
        """Exact permission code required for ``action`` on ``resource``."""
        return self._by_resource_action.get((resource, action))

    def min_level_for(self, action: str) -> Optional[int]:
        return self.action_levels.get(action)

    def category_for(self, user_type: Optional[str]) -> str:
        """Map a user type onto a declared category, ``UNKNOWN`` otherwise."""
        if not user_type:
            return UNKNOWN_CATEGORY
        key = user_type.strip().upper()
        category = self.user_type_categories.get(key, key)
        return category if category in self.categories else UNKNOWN_CATEGORY

    @staticmethod
    def has_any(subject_codes: Iterable[str], candidate_codes: Iterable[str]) -> bool:
        codes = set(subject_codes)
        if WILDCARD_PERMISSION in codes:
            return True
        return not codes.isdisjoint(candidate_codes)

    def effective_permissions(self, subject_codes: Iterable[str], resource: str) -> List[str]:
        """Subject permissions applicable to ``resource``."""
        codes = set(subject_codes)
        candidates = self.permissions_for_resource(resource)
        if WILDCARD_PERMISSION in codes:
            return sorted(candidates)
        return sorted(codes & candidates)
