from __future__ import annotations
from flask import Blueprint, request
from flask_jwt_extended import create_access_token, jwt_required, get_jwt_identity
from sqlalchemy import select, delete
from werkzeug.exceptions import Unauthorized

from custody import get_db
from custody.decorators.audit import audit_log
from custody.decorators.auth import require_permissions
from custody.models.audit import AuditLog
from custody.models.authz import User, Role, UserRole, Group, GroupRole, UserGroup
from custody.services.errors import Conflict, NotFound, ValidationError
from custody.services.policy import compute_effective_permissions, compute_org_ids
from custody.utils.clock import isoformat, utcnow
from custody.utils.listing import apply_filters, list_response
from custody.utils.validation import coerce_id_list, coerce_int, require_fields, validate_status

iam_bp = Blueprint('iam', __name__)


def _claims_for(user: User):
    eff = compute_effective_permissions(user.id)
    return {
        'roles': eff['roles'],
        'perms': eff['perms'],
        'groups': eff['groups'],
        'org_ids': compute_org_ids(user.id),
    }


def _user_json(user: User):
    return {
        'id': user.id,
        'name': user.name,
        'email': user.email,
        'organization_id': user.organization_id,
        'is_active': user.is_active,
        'last_login_at': isoformat(user.last_login_at),
    }


def _load_user(session, user_id: int) -> User:
    user = session.get(User, user_id)
    if not user:
        raise NotFound('User not found', user_id=user_id)
    return user


def _roles_by_name(session, names):
    if not isinstance(names, list):
        raise ValidationError('roles must be a list of role names', field='roles')
    roles = session.execute(select(Role).where(Role.name.in_(names))).scalars().all() if names else []
    missing = sorted(set(names) - {r.name for r in roles})
    if missing:
        raise ValidationError('Unknown roles', field='roles', missing=missing)
    return roles


# --- Auth ---

@iam_bp.post('/auth/login')
def login():
    data = request.json or {}
    require_fields(data, 'email', 'password')
    session = get_db()
    user = session.execute(select(User).where(User.email == data['email'])).scalar_one_or_none()
    if not user or not user.is_active or not user.verify_password(data['password']):
        raise Unauthorized(description='invalid credentials')
    user.last_login_at = utcnow()
    session.commit()
    # JWT identity must be a string (flask-jwt-extended v4 requirement)
    token = create_access_token(identity=str(user.id), additional_claims=_claims_for(user))
    return {'access_token': token}


@iam_bp.get('/auth/me')
@jwt_required()
def me():
    user = _load_user(get_db(), int(get_jwt_identity()))
    return {**_user_json(user), **_claims_for(user)}


# --- Users ---

@iam_bp.post('/users')
@require_permissions('ADMIN.USER.MANAGE')
@audit_log('USER.CREATE', entity='User', entity_id_key='id', meta_keys=['email', 'roles', 'organization_id'])
def create_user():
    data = request.json or {}
    require_fields(data, 'name', 'email', 'password')
    session = get_db()
    if session.execute(select(User).where(User.email == data['email'])).scalar_one_or_none():
        raise Conflict('email already registered', email=data['email'])
    roles = _roles_by_name(session, data.get('roles') or [])
    org_id = data.get('organization_id')
    user = User(
        name=data['name'], email=data['email'],
        organization_id=coerce_int(org_id, 'organization_id') if org_id is not None else None,
    )
    user.set_password(data['password'])
    session.add(user)
    session.flush()
    for r in roles:
        session.add(UserRole(user_id=user.id, role_id=r.id))
    session.commit()
    return {**_user_json(user), 'roles': [r.name for r in roles]}, 201


@iam_bp.post('/users/<int:user_id>/deactivate')
@require_permissions('ADMIN.USER.MANAGE')
@audit_log('USER.DEACTIVATE', entity='User', entity_id_key='id')
def deactivate_user(user_id: int):
    session = get_db()
    user = _load_user(session, user_id)
    user.is_active = False
    session.commit()
    return _user_json(user)


@iam_bp.put('/users/<int:user_id>/roles')
@require_permissions('ADMIN.USER.MANAGE')
@audit_log('USER.ROLES.SET', entity='User', entity_id_key='user_id', meta_keys=['roles'])
def set_user_roles(user_id: int):
    session = get_db()
    user = _load_user(session, user_id)
    roles = _roles_by_name(session, (request.json or {}).get('roles') or [])
    session.execute(delete(UserRole).where(UserRole.user_id == user.id))
    for r in roles:
        session.add(UserRole(user_id=user.id, role_id=r.id))
    session.commit()
    return {'user_id': user.id, 'roles': sorted(r.name for r in roles)}


@iam_bp.put('/users/<int:user_id>/groups')
@require_permissions('ADMIN.USER.MANAGE')
@audit_log('USER.GROUPS.SET', entity='User', entity_id_key='user_id', meta_keys=['group_ids'])
def set_user_groups(user_id: int):
    session = get_db()
    user = _load_user(session, user_id)
    raw = (request.json or {}).get('group_ids') or []
    group_ids = set(coerce_id_list(raw, 'group_ids')) if raw else set()
    found = set(session.execute(select(Group.id).where(Group.id.in_(group_ids))).scalars()) if group_ids else set()
    missing = group_ids - found
    if missing:
        raise ValidationError('Unknown group ids', field='group_ids', missing=sorted(missing))
    session.execute(delete(UserGroup).where(UserGroup.user_id == user.id))
    for gid in sorted(group_ids):
        session.add(UserGroup(user_id=user.id, group_id=gid))
    session.commit()
    return {'user_id': user.id, 'group_ids': sorted(group_ids), 'org_ids': compute_org_ids(user.id)}


# --- Roles & groups ---

@iam_bp.get('/roles')
@require_permissions('ADMIN.USER.MANAGE')
def list_roles():
    roles = get_db().execute(select(Role).order_by(Role.name)).scalars().all()
    return {'data': [
        {'id': r.id, 'name': r.name, 'is_system': r.is_system, 'permissions': r.permission_codes}
        for r in roles
    ]}


@iam_bp.post('/groups')
@require_permissions('ADMIN.USER.MANAGE')
@audit_log('GROUP.CREATE', entity='Group', entity_id_key='id', meta_keys=['name', 'kind', 'org_ids', 'roles'])
def create_group():
    data = request.json or {}
    require_fields(data, 'name')
    session = get_db()
    if session.execute(select(Group).where(Group.name == data['name'])).scalar_one_or_none():
        raise Conflict('group name already used', name=data['name'])
    kind = validate_status(data.get('kind') or Group.KIND_OPERATOR, Group.KINDS, 'kind')
    raw_orgs = data.get('org_ids') or []
    org_ids = coerce_id_list(raw_orgs, 'org_ids') if raw_orgs else []
    if kind == Group.KIND_OPERATOR and not org_ids:
        raise ValidationError('operator groups need at least one organization', field='org_ids')
    roles = _roles_by_name(session, data.get('roles') or [])
    group = Group(name=data['name'], kind=kind, org_scope={'allow': org_ids} if org_ids else None)
    session.add(group)
    session.flush()
    for r in roles:
        session.add(GroupRole(group_id=group.id, role_id=r.id))
    session.commit()
    return {
        'id': group.id, 'name': group.name, 'kind': group.kind,
        'org_ids': group.allowed_org_ids(), 'roles': [r.name for r in roles],
    }, 201


# --- Audit Log Listing ---

AUDIT_FILTERS = {
    'actor_user_id': lambda q, v: q.filter(AuditLog.actor_user_id == coerce_int(v, 'actor_user_id')),
    'action': lambda q, v: q.filter(AuditLog.action == v),
    'entity': lambda q, v: q.filter(AuditLog.entity == v),
    'entity_id': lambda q, v: q.filter(AuditLog.entity_id == v),
}


def _audit_json(r: AuditLog):
    return {
        'id': r.id,
        'actor_user_id': r.actor_user_id,
        'action': r.action,
        'entity': r.entity,
        'entity_id': r.entity_id,
        'meta': r.meta,
        'created_at': isoformat(r.created_at),
    }


@iam_bp.get('/audit/logs')
@require_permissions('ADMIN.AUDIT.READ')
def list_audit_logs():
    q = apply_filters(get_db().query(AuditLog), AUDIT_FILTERS, request.args)
    return list_response(
        q, _audit_json, {'created_at': AuditLog.created_at, 'id': AuditLog.id}, AuditLog.id, updated_col='created_at',
    )
