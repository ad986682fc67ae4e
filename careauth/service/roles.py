from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Protocol, Tuple

from careauth.storage.common import AuthStore, dedupe_preserving_order
from careauth.storage.models import RoleAssignment, UserRole


@dataclass
class ResolvedRoles:
    roles: List[UserRole] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)

    def assignments(self) -> List[RoleAssignment]:
        return [
            RoleAssignment(
                role_id=r.role_id,
                role_name=r.role_name,
                section=r.section,
                section_id=r.section_id,
            )
            for r in self.roles
        ]

    def primary_context(self) -> Tuple[Optional[str], Optional[str]]:
        """Organization id and ``section:role`` of the first effective role."""
        if not self.roles:
            return None, None
        primary = self.roles[0]
        return primary.section_id, f"{primary.section}:{primary.role_name}"


class RoleResolver(Protocol):
    def resolve(self, user_id: str) -> ResolvedRoles: ...


class StoreRoleResolver:
    """Reads effective role assignments and the permissions they grant.

    Roles and permissions are opaque strings here; they only populate
    access-token claims and profile views.
    """

    def __init__(self, store: AuthStore) -> None:
        self.store = store

    def resolve(self, user_id: str) -> ResolvedRoles:
        now = datetime.now(timezone.utc)
        roles = [r for r in self.store.list_user_roles(user_id) if r.is_effective(now)]
        role_ids = dedupe_preserving_order(r.role_id for r in roles)
        permissions = self.store.list_permissions_for_roles(role_ids) if role_ids else []
        return ResolvedRoles(roles=roles, permissions=sorted(set(permissions)))
