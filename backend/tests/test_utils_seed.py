"""Seeding helpers shared by the test modules.

Accounts are created straight through the ORM (idempotent by natural key), and
custody records that a test only needs as a starting point are inserted without
going through the lifecycle rules.
"""
import itertools
from typing import Iterable, Dict, List, Optional
from custody import get_db
from custody.models.authz import User, Role, Permission, RolePermission, Group, GroupRole, UserGroup, UserRole
from custody.models.asset import Asset
from custody.services.policy import Actor
from custody.constants.permissions import ALL_PERMISSION_CODES

_serials = itertools.count(1)


def _get_or_add(session, model, defaults=None, **key):
    obj = session.query(model).filter_by(**key).one_or_none()
    if obj is None:
        obj = model(**key, **(defaults or {}))
        session.add(obj)
        session.flush()
    return obj


def ensure_permissions(codes: Iterable[str]) -> Dict[str, Permission]:
    """code -> Permission, creating missing rows."""
    session = get_db()
    out: Dict[str, Permission] = {}
    for code in codes:
        service, _, action = code.partition('.')
        if not action:
            raise ValueError(f"Permission code '{code}' missing SERVICE.ACTION pattern")
        out[code] = _get_or_add(session, Permission, code=code, defaults={'service': service, 'action': action, 'description': code})
    session.commit()
    return out


def ensure_user(email: str, name: Optional[str] = None, password: str = 'pw', organization_id: Optional[int] = None) -> User:
    session = get_db()
    user = session.query(User).filter_by(email=email).one_or_none()
    if user is None:
        user = User(name=name or email.split('@')[0], email=email, organization_id=organization_id)
        user.set_password(password)
        session.add(user)
        session.commit()
    return user


def ensure_role(name: str, perm_codes: Iterable[str] = ()) -> Role:
    session = get_db()
    perms = ensure_permissions(perm_codes) if perm_codes else {}
    role = _get_or_add(session, Role, name=name, defaults={'is_system': False})
    for p in perms.values():
        _get_or_add(session, RolePermission, role_id=role.id, permission_id=p.id)
    session.commit()
    return role


def ensure_user_role_assignment(user: User, role: Role):
    session = get_db()
    _get_or_add(session, UserRole, user_id=user.id, role_id=role.id)
    session.commit()


def ensure_group(name: str, role: Role, org_ids: List[int], kind: str = Group.KIND_OPERATOR) -> Group:
    session = get_db()
    group = _get_or_add(session, Group, name=name, defaults={'kind': kind, 'org_scope': {'allow': list(org_ids)} if org_ids else None})
    _get_or_add(session, GroupRole, group_id=group.id, role_id=role.id)
    session.commit()
    return group


def ensure_user_group_membership(user: User, group: Group):
    session = get_db()
    _get_or_add(session, UserGroup, user_id=user.id, group_id=group.id)
    session.commit()


def seed_user_with_role_and_group(email: str, role_name: str, perm_codes: Iterable[str], group_name: str, org_ids: List[int]):
    """User holding ``role_name`` through a group scoped to ``org_ids``."""
    user = ensure_user(email)
    role = ensure_role(role_name, perm_codes)
    ensure_user_role_assignment(user, role)
    group = ensure_group(group_name, role, org_ids)
    ensure_user_group_membership(user, group)
    return user, role, group


# ---------------- Custody records ---------------- #
def unique_serial(prefix: str = 'CST') -> str:
    return f"{prefix}-{next(_serials):05d}"


def make_asset(serial: str = None, organization_id: int = 1, status: str = Asset.STATUS_OK, asset_type: str = 'cassette') -> Asset:
    """Insert an asset directly, bypassing the lifecycle rules.

    A non-OK ``status`` simulates data written before the current rules existed.
    """
    session = get_db()
    asset = Asset(serial_number=serial or unique_serial(), organization_id=organization_id, status=status, asset_type=asset_type)
    session.add(asset)
    session.commit()
    return asset


def admin_actor(user_id: int = 1, org_ids=()) -> Actor:
    return Actor(user_id=user_id, perms=frozenset(ALL_PERMISSION_CODES), org_ids=tuple(org_ids))


__all__ = [
    'ensure_permissions', 'ensure_user', 'ensure_role', 'ensure_user_role_assignment', 'ensure_group',
    'ensure_user_group_membership', 'seed_user_with_role_and_group', 'unique_serial', 'make_asset', 'admin_actor',
]
