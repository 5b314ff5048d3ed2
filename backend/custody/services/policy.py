from __future__ import annotations
from dataclasses import dataclass, field
from typing import FrozenSet, Optional, Sequence, Set
from flask_jwt_extended import get_jwt, get_jwt_identity
from sqlalchemy import select
from custody.models.authz import UserRole, RolePermission, GroupRole, UserGroup, Permission, Role, Group, User
from custody.constants.permissions import OVERRIDE_PERMISSION
from custody.services.errors import Forbidden
from custody import get_db


@dataclass(frozen=True)
class Actor:
    """Who is acting, as supplied by the authorization layer.

    The lifecycle services trust this value; they only check domain permissions
    (e.g. ADMIN.OVERRIDE) and organization scope.
    """
    user_id: int
    perms: FrozenSet[str] = field(default_factory=frozenset)
    org_ids: Sequence[int] = ()

    def can(self, code: str) -> bool:
        return code in self.perms

    @property
    def is_override(self) -> bool:
        return self.can(OVERRIDE_PERMISSION)


SYSTEM_ACTOR = Actor(user_id=0, perms=frozenset({OVERRIDE_PERMISSION}))


def current_actor() -> Actor:
    claims = get_jwt()
    ident = get_jwt_identity()
    return Actor(
        user_id=int(ident) if ident is not None else 0,
        perms=frozenset(claims.get('perms', [])),
        org_ids=tuple(claims.get('org_ids') or ()),
    )


def current_permissions() -> Set[str]:
    claims = get_jwt()
    return set(claims.get('perms', []))


def require_override(actor: Actor, action: str, **context) -> None:
    if not actor.is_override:
        raise Forbidden(f'{action} requires {OVERRIDE_PERMISSION}', required=OVERRIDE_PERMISSION, **context)


def assert_org_access(actor: Actor, organization_id: Optional[int]) -> None:
    if not actor.org_ids or organization_id is None:
        return  # No scoping
    if organization_id not in actor.org_ids:
        raise Forbidden('Organization access denied', organization_id=organization_id)


def _group_ids(session, user_id: int):
    return list(session.execute(select(UserGroup.group_id).where(UserGroup.user_id == user_id)).scalars())


def compute_effective_permissions(user_id: int):
    """Roles held directly or through groups, and the permission codes they grant.

    The Owner preset is a wildcard and expands to every permission on record.
    """
    session = get_db()
    group_ids = _group_ids(session, user_id)
    role_ids = set(session.execute(select(UserRole.role_id).where(UserRole.user_id == user_id)).scalars())
    if group_ids:
        role_ids.update(session.execute(select(GroupRole.role_id).where(GroupRole.group_id.in_(group_ids))).scalars())
    if not role_ids:
        return {'roles': [], 'perms': [], 'groups': group_ids}
    owner_id = session.execute(select(Role.id).where(Role.name == 'Owner')).scalar_one_or_none()
    stmt = select(Permission.code)
    if owner_id not in role_ids:
        stmt = stmt.join(RolePermission, RolePermission.permission_id == Permission.id).where(RolePermission.role_id.in_(role_ids))
    return {
        'roles': sorted(role_ids),
        'perms': sorted(set(session.execute(stmt).scalars())),
        'groups': group_ids,
    }


def compute_org_ids(user_id: int):
    """Organizations the user may see: group scopes plus the user's home organization.

    An empty list means unscoped (repair-center staff).
    """
    session = get_db()
    org_ids = set()
    group_ids = _group_ids(session, user_id)
    if group_ids:
        for grp in session.execute(select(Group).where(Group.id.in_(group_ids))).scalars():
            org_ids.update(grp.allowed_org_ids())
    home = session.execute(select(User.organization_id).where(User.id == user_id)).scalar_one_or_none()
    if home is not None:
        org_ids.add(home)
    return sorted(org_ids)


def scope_to_orgs(query, column, actor: Actor):
    """Limit a listing query to the actor's organizations (no-op when unscoped)."""
    if actor.org_ids:
        return query.filter(column.in_(actor.org_ids))
    return query
