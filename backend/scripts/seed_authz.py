#!/usr/bin/env python
"""Seed permission codes, the role presets, the repair-center group and the first Owner.

Safe to re-run: existing rows are left alone and missing preset permissions are
attached to their system roles.

Usage:
    python backend/scripts/seed_authz.py                      # seed
    python backend/scripts/seed_authz.py --show-roles         # seed, then print role -> permission counts
    python backend/scripts/seed_authz.py --dry-run            # seed inside a rolled back transaction
    python backend/scripts/seed_authz.py --admin-email a@b.c  # Owner account e-mail (else SEED_ADMIN_EMAIL)
"""
from __future__ import annotations
import os, sys, argparse
from typing import Dict, Optional
from sqlalchemy import select

# Allow running from repo root
sys.path.append(os.path.abspath('backend'))

from custody import create_app, get_db  # type: ignore
from custody.models.authz import Base, Group, GroupRole, Permission, Role, RolePermission, User, UserRole
from custody.constants.permissions import SERVICE_ACTIONS, ROLE_PRESETS, build_all_permission_codes

REPAIR_CENTER_GROUP = 'Repair Center'
REPAIR_CENTER_ROLE = 'Technician'


def ensure_permissions(session) -> int:
    known = set(session.execute(select(Permission.code)).scalars())
    created = 0
    for svc, actions in SERVICE_ACTIONS.items():
        for act in actions:
            code = f"{svc}.{act}"
            if code in known:
                continue
            session.add(Permission(code=code, service=svc, action=act, description=code.replace('.', ' - ')))
            created += 1
    session.flush()
    return created


def ensure_roles(session) -> int:
    roles = {r.name: r for r in session.execute(select(Role)).scalars()}
    created = 0
    for name in ROLE_PRESETS:
        if name not in roles:
            roles[name] = Role(name=name, is_system=True)
            session.add(roles[name])
            created += 1
    session.flush()

    every_code = set(build_all_permission_codes())
    by_code = {p.code: p for p in session.execute(select(Permission)).scalars()}
    for name, codes in ROLE_PRESETS.items():
        role = roles[name]
        wanted = every_code if '*' in codes else set(codes)
        have = set(role.permission_codes)
        for code in sorted(wanted - have):
            perm = by_code.get(code)
            if perm is None:
                print(f"[WARN] Role {name} references unknown permission {code}")
                continue
            session.add(RolePermission(role=role, permission=perm))
    session.flush()
    return created


def ensure_repair_center_group(session) -> bool:
    """Unscoped group for repair-center staff; returns True when created."""
    if session.execute(select(Group).where(Group.name == REPAIR_CENTER_GROUP)).scalar_one_or_none():
        return False
    role = session.execute(select(Role).where(Role.name == REPAIR_CENTER_ROLE)).scalar_one()
    group = Group(name=REPAIR_CENTER_GROUP, kind=Group.KIND_REPAIR_CENTER, org_scope=None)
    session.add(group)
    session.flush()
    session.add(GroupRole(group_id=group.id, role_id=role.id))
    session.flush()
    return True


def ensure_initial_admin(session, email: str, password: str) -> bool:
    owner = session.execute(select(Role).where(Role.name == 'Owner')).scalar_one_or_none()
    if owner is None:
        print('[WARN] Owner role missing; skipping admin user creation')
        return False
    if session.execute(select(User).where(User.email == email)).scalar_one_or_none():
        return False
    user = User(name='Owner', email=email)
    user.set_password(password)
    session.add(user)
    session.flush()
    session.add(UserRole(user_id=user.id, role_id=owner.id))
    session.flush()
    print(f"[INFO] Created initial admin user {email} with temporary password.")
    return True


def seed(session, admin_email: Optional[str] = None, admin_password: Optional[str] = None) -> Dict[str, int]:
    """Run every step in the caller's transaction; returns what was created."""
    return {
        'permissions': ensure_permissions(session),
        'roles': ensure_roles(session),
        'groups': int(ensure_repair_center_group(session)),
        'admins': int(ensure_initial_admin(
            session,
            admin_email or os.getenv('SEED_ADMIN_EMAIL', 'admin@example.com'),
            admin_password or os.getenv('SEED_ADMIN_PASSWORD', 'ChangeMe123!'),
        )),
    }


def print_role_summary(session):
    roles = session.execute(select(Role).order_by(Role.name)).scalars().all()
    if not roles:
        print("[INFO] No roles present.")
        return
    width = max(len(r.name) for r in roles)
    print(f"{'Role'.ljust(width)} | Count | Sample (up to 8)")
    print('-' * (width + 40))
    for role in roles:
        codes = role.permission_codes
        print(f"{role.name.ljust(width)} | {str(len(codes)).rjust(5)} | {', '.join(codes[:8])}")


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Seed RBAC permissions, roles and the first Owner account")
    p.add_argument('--show-roles', action='store_true', help='Print role permission counts after seeding')
    p.add_argument('--dry-run', action='store_true', help='Rollback after operations (no commit)')
    p.add_argument('--create-schema', action='store_true', help='Create missing tables first (bootstrap; prefer alembic upgrade)')
    p.add_argument('--admin-email', help='Owner account e-mail')
    return p.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    app = create_app()
    with app.app_context():
        session = get_db()
        if args.create_schema:
            Base.metadata.create_all(session.get_bind())
        try:
            summary = seed(session, admin_email=args.admin_email)
            if args.dry_run:
                session.rollback()
                print(f"[DRY-RUN] (rolled back) would create: {summary}")
            else:
                session.commit()
                print(f"[DONE] created: {summary}")
            if args.show_roles:
                print('\nRole Permission Summary:')
                print_role_summary(session)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


if __name__ == '__main__':
    main()
