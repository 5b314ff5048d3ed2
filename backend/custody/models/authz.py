from __future__ import annotations
"""Accounts behind the token issuer.

Permissions are ``SERVICE.ACTION`` codes granted through roles, either directly
to a user or through a group. Groups also carry the organization scope: an
operator team sees only the organizations listed in ``org_scope['allow']``,
while a repair-center team usually has no scope and sees everything.
"""
from datetime import datetime
from typing import Optional, Dict, Any, List

from sqlalchemy.orm import declarative_base, relationship, Mapped, mapped_column
from sqlalchemy import String, Integer, Boolean, ForeignKey, JSON, UniqueConstraint, DateTime
from werkzeug.security import generate_password_hash, check_password_hash

from custody.utils.clock import utcnow

Base = declarative_base()


class Permission(Base):
    __tablename__ = 'permissions'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    service: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(255))


class Role(Base):
    __tablename__ = 'roles'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    # presets from constants.permissions are system roles; the seed script owns them
    is_system: Mapped[bool] = mapped_column(Boolean, default=False)
    permissions = relationship('RolePermission', back_populates='role', cascade='all, delete-orphan')
    user_roles = relationship('UserRole', back_populates='role', cascade='all, delete-orphan')
    group_roles = relationship('GroupRole', back_populates='role', cascade='all, delete-orphan')

    @property
    def permission_codes(self) -> List[str]:
        return sorted(rp.permission.code for rp in self.permissions)


class RolePermission(Base):
    __tablename__ = 'role_permissions'
    __table_args__ = (UniqueConstraint('role_id', 'permission_id', name='uq_role_permission'),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    role_id: Mapped[int] = mapped_column(ForeignKey('roles.id', ondelete='CASCADE'), nullable=False)
    permission_id: Mapped[int] = mapped_column(ForeignKey('permissions.id', ondelete='CASCADE'), nullable=False)
    role = relationship('Role', back_populates='permissions')
    permission = relationship('Permission')


class Group(Base):
    __tablename__ = 'groups'
    KIND_OPERATOR = 'OPERATOR'
    KIND_REPAIR_CENTER = 'REPAIR_CENTER'
    KINDS = (KIND_OPERATOR, KIND_REPAIR_CENTER)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False, default=KIND_OPERATOR)
    org_scope: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    roles = relationship('GroupRole', back_populates='group', cascade='all, delete-orphan')
    user_groups = relationship('UserGroup', back_populates='group', cascade='all, delete-orphan')

    def allowed_org_ids(self) -> List[int]:
        scope = self.org_scope if isinstance(self.org_scope, dict) else {}
        allow = scope.get('allow')
        if not isinstance(allow, list):
            return []
        return [o for o in allow if isinstance(o, int)]


class GroupRole(Base):
    __tablename__ = 'group_roles'
    __table_args__ = (UniqueConstraint('group_id', 'role_id', name='uq_group_role'),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    group_id: Mapped[int] = mapped_column(ForeignKey('groups.id', ondelete='CASCADE'), nullable=False)
    role_id: Mapped[int] = mapped_column(ForeignKey('roles.id', ondelete='CASCADE'), nullable=False)
    group = relationship('Group', back_populates='roles')
    role = relationship('Role', back_populates='group_roles')


class User(Base):
    __tablename__ = 'users'
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    email: Mapped[str] = mapped_column(String(128), unique=True, index=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False, default='')
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    # home organization of field staff; repair-center staff have none
    organization_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    user_groups = relationship('UserGroup', back_populates='user', cascade='all, delete-orphan')
    user_roles = relationship('UserRole', back_populates='user', cascade='all, delete-orphan')

    def set_password(self, raw: str):
        self.password_hash = generate_password_hash(raw)

    def verify_password(self, raw: str) -> bool:
        return bool(self.password_hash) and check_password_hash(self.password_hash, raw)


class UserGroup(Base):
    __tablename__ = 'user_groups'
    __table_args__ = (UniqueConstraint('user_id', 'group_id', name='uq_user_group'),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    group_id: Mapped[int] = mapped_column(ForeignKey('groups.id', ondelete='CASCADE'), nullable=False)
    user = relationship('User', back_populates='user_groups')
    group = relationship('Group', back_populates='user_groups')


class UserRole(Base):
    __tablename__ = 'user_roles'
    __table_args__ = (UniqueConstraint('user_id', 'role_id', name='uq_user_role'),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    role_id: Mapped[int] = mapped_column(ForeignKey('roles.id', ondelete='CASCADE'), nullable=False)
    user = relationship('User', back_populates='user_roles')
    role = relationship('Role', back_populates='user_roles')
