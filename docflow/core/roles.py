"""
Role membership collaborator.
The engine asks "does this user hold this role?" and never decides trust itself.
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional
import structlog

logger = structlog.get_logger()


class RoleResolver(ABC):
    """Capability check used for step and counter-approval permissions"""

    @abstractmethod
    def has_role(self, user_id: str, role: str) -> bool:
        ...

    def has_any_role(self, user_id: str, roles: Iterable[str]) -> bool:
        return any(self.has_role(user_id, role) for role in roles)


class StaticRoleResolver(RoleResolver):
    """
    Resolves roles from a fixed user -> roles mapping, typically loaded from
    ROLE_ASSIGNMENTS.
    """

    def __init__(self, assignments: Optional[Dict[str, List[str]]] = None):
        self._assignments: Dict[str, set] = {
            user_id: set(roles) for user_id, roles in (assignments or {}).items()
        }

    def has_role(self, user_id: str, role: str) -> bool:
        return role in self._assignments.get(user_id, ())

    def assign(self, user_id: str, *roles: str):
        self._assignments.setdefault(user_id, set()).update(roles)
        logger.info("roles_assigned", user_id=user_id, roles=list(roles))

    def roles_for(self, user_id: str) -> List[str]:
        return sorted(self._assignments.get(user_id, ()))


class AllowAllRoleResolver(RoleResolver):
    """Every user holds every role. Only for demos and local development."""

    def __init__(self):
        logger.warning(
            "allow_all_role_resolver_enabled",
            message="Role checks are disabled - every user can act on every step"
        )

    def has_role(self, user_id: str, role: str) -> bool:
        return True
