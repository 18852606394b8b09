from __future__ import annotations

from typing import FrozenSet, Iterable, List, Protocol, Tuple

from iamcore.storage.models import Permission, Role


class RolePermissionStore(Protocol):
    def get_user_roles(self, user_id: str) -> List[Role]: ...

    def get_role_permissions(self, role_id: str) -> List[Permission]: ...


class PermissionResolver:
    """Aggregates permission codes granted through a user's roles.

    The relation is flat (role -> permission); roles never imply other roles.
    Both login and refresh resolve through here so their claims cannot drift.
    """

    def __init__(self, store: RolePermissionStore) -> None:
        self.store = store

    def resolve(self, roles: Iterable[Role]) -> FrozenSet[str]:
        codes: set[str] = set()
        for role in roles:
            codes.update(p.code for p in self.store.get_role_permissions(role.id))
        return frozenset(codes)

    def resolve_for_user(self, user_id: str) -> Tuple[List[Role], FrozenSet[str]]:
        roles = self.store.get_user_roles(user_id)
        return roles, self.resolve(roles)
