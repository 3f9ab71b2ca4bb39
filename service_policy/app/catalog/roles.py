"""
Role hierarchy resolution.
"""

from typing import Dict, Iterable, List, Optional, Tuple


class RoleHierarchy:
    """Maps role codes to privilege levels.

    Higher numbers mean more privilege. The level table, the super-user code
    and the tenant-scoped admin code all come from the role catalog.
    """

    def __init__(self, levels: Dict[str, int], super_user_code: str,
                 scoped_admin_code: Optional[str] = None):
        self._levels = dict(levels)
        self.super_user_code = super_user_code
        self.scoped_admin_code = scoped_admin_code

    @property
    def levels(self) -> Dict[str, int]:
        return dict(self._levels)

    def level_of(self, role_code: str) -> int:
        """Level of a single role, 0 when unknown."""
        return self._levels.get(role_code, 0)

    def highest_level(self, roles: Iterable[str]) -> int:
        """Highest level across ``roles``, 0 if none resolve."""
        return max((self.level_of(code) for code in roles), default=0)

    def is_super_user(self, roles: Iterable[str]) -> bool:
        return self.super_user_code in set(roles)

    def is_scoped_admin(self, roles: Iterable[str]) -> bool:
        if not self.scoped_admin_code:
            return False
        return self.scoped_admin_code in set(roles)

    def has_minimum_role(self, roles: Iterable[str], min_role: str) -> bool:
        return self.highest_level(roles) >= self.level_of(min_role)

    def roles_at_or_above(self, level: int) -> List[str]:
        return sorted(code for code, lvl in self._levels.items() if lvl >= level)

    def sorted_levels(self) -> List[Tuple[str, int]]:
        """Roles ordered from most to least privileged."""
        return sorted(self._levels.items(), key=lambda item: (-item[1], item[0]))
