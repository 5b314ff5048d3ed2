"""initial custody schema: RBAC, audit, assets, tickets, work-orders, shipments, maintenance

Revision ID: 0001_initial_schema
Revises: 
Create Date: 2026-10-18
"""
from __future__ import annotations
from alembic import op
import sqlalchemy as sa

revision = '0001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    ]


def upgrade():
    # --- RBAC ---
    op.create_table('permissions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('code', sa.String(length=64), nullable=False, unique=True),
        sa.Column('service', sa.String(length=32), nullable=False),
        sa.Column('action', sa.String(length=32), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=True)
    )
    op.create_index('ix_permissions_code', 'permissions', ['code'])
    op.create_index('ix_permissions_service', 'permissions', ['service'])

    op.create_table('roles',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=64), nullable=False, unique=True),
        sa.Column('is_system', sa.Boolean(), nullable=False, server_default=sa.text('0'))
    )

    op.create_table('groups',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=64), nullable=False, unique=True),
        sa.Column('kind', sa.String(length=16), nullable=False, server_default='OPERATOR'),
        sa.Column('org_scope', sa.JSON(), nullable=True)
    )

    op.create_table('users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('email', sa.String(length=128), nullable=False, unique=True),
        sa.Column('password_hash', sa.String(length=255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('1')),
        sa.Column('organization_id', sa.Integer(), nullable=True),
        sa.Column('last_login_at', sa.DateTime(), nullable=True),
        *_timestamps()
    )
    op.create_index('ix_users_email', 'users', ['email'])
    op.create_index('ix_users_organization_id', 'users', ['organization_id'])

    op.create_table('role_permissions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('role_id', sa.Integer(), sa.ForeignKey('roles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('permission_id', sa.Integer(), sa.ForeignKey('permissions.id', ondelete='CASCADE'), nullable=False),
        sa.UniqueConstraint('role_id', 'permission_id', name='uq_role_permission')
    )
    op.create_table('group_roles',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('group_id', sa.Integer(), sa.ForeignKey('groups.id', ondelete='CASCADE'), nullable=False),
        sa.Column('role_id', sa.Integer(), sa.ForeignKey('roles.id', ondelete='CASCADE'), nullable=False),
        sa.UniqueConstraint('group_id', 'role_id', name='uq_group_role')
    )
    op.create_table('user_groups',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('group_id', sa.Integer(), sa.ForeignKey('groups.id', ondelete='CASCADE'), nullable=False),
        sa.UniqueConstraint('user_id', 'group_id', name='uq_user_group')
    )
    op.create_table('user_roles',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('role_id', sa.Integer(), sa.ForeignKey('roles.id', ondelete='CASCADE'), nullable=False),
        sa.UniqueConstraint('user_id', 'role_id', name='uq_user_role')
    )

    op.create_table('audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('actor_user_id', sa.Integer(), nullable=False),
        sa.Column('action', sa.String(length=64), nullable=False),
        sa.Column('entity', sa.String(length=64)),
        sa.Column('entity_id', sa.String(length=64)),
        sa.Column('perms_snapshot', sa.JSON(), nullable=True),
        sa.Column('meta', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP'))
    )
    op.create_index('ix_audit_logs_actor_user_id', 'audit_logs', ['actor_user_id'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_entity', 'audit_logs', ['entity'])
    op.create_index('ix_audit_logs_created_at', 'audit_logs', ['created_at'])

    # --- Custody ---
    op.create_table('assets',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('serial_number', sa.String(length=64), nullable=False, unique=True),
        sa.Column('asset_type', sa.String(length=64)),
        sa.Column('organization_id', sa.Integer()),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='OK'),
        sa.Column('replaces_asset_id', sa.Integer(), sa.ForeignKey('assets.id', ondelete='SET NULL')),
        sa.Column('replaced_by_asset_id', sa.Integer(), sa.ForeignKey('assets.id', ondelete='SET NULL')),
        sa.Column('replacement_ticket_id', sa.Integer()),
        sa.Column('notes', sa.String(length=500)),
        *_timestamps()
    )
    op.create_index('ix_assets_serial_number', 'assets', ['serial_number'])
    op.create_index('ix_assets_organization_id', 'assets', ['organization_id'])
    op.create_index('ix_assets_status', 'assets', ['status'])

    op.create_table('service_tickets',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('ticket_number', sa.String(length=32), nullable=False, unique=True),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='OPEN'),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('description', sa.Text()),
        sa.Column('priority', sa.String(length=16), nullable=False, server_default='MEDIUM'),
        sa.Column('repair_location', sa.String(length=16), nullable=False, server_default='REPAIR_CENTER'),
        sa.Column('organization_id', sa.Integer()),
        sa.Column('reported_by', sa.Integer(), nullable=False),
        sa.Column('resolution_notes', sa.Text()),
        *_timestamps(),
        sa.Column('resolved_at', sa.DateTime()),
        sa.Column('closed_at', sa.DateTime()),
        sa.Column('deleted_at', sa.DateTime()),
        sa.Column('deleted_by', sa.Integer()),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1')
    )
    op.create_index('ix_service_tickets_ticket_number', 'service_tickets', ['ticket_number'])
    op.create_index('ix_service_tickets_status', 'service_tickets', ['status'])
    op.create_index('ix_service_tickets_organization_id', 'service_tickets', ['organization_id'])
    op.create_index('ix_service_tickets_created_at', 'service_tickets', ['created_at'])
    op.create_index('ix_service_tickets_deleted_at', 'service_tickets', ['deleted_at'])

    # assets <-> service_tickets reference each other; add the back edge once both exist
    with op.batch_alter_table('assets') as batch_op:
        batch_op.create_foreign_key(
            'fk_assets_replacement_ticket', 'service_tickets', ['replacement_ticket_id'], ['id'], ondelete='SET NULL',
        )

    op.create_table('ticket_asset_details',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('ticket_id', sa.Integer(), sa.ForeignKey('service_tickets.id', ondelete='CASCADE'), nullable=False),
        sa.Column('asset_id', sa.Integer(), sa.ForeignKey('assets.id', ondelete='CASCADE'), nullable=False),
        sa.Column('request_replacement', sa.Boolean(), nullable=False, server_default=sa.text('0')),
        sa.Column('replacement_reason', sa.String(length=500)),
        sa.Column('issue_notes', sa.String(length=500)),
        sa.UniqueConstraint('ticket_id', 'asset_id', name='uq_ticket_asset')
    )
    op.create_index('ix_ticket_asset_details_ticket_id', 'ticket_asset_details', ['ticket_id'])
    op.create_index('ix_ticket_asset_details_asset_id', 'ticket_asset_details', ['asset_id'])

    op.create_table('maintenance_tasks',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('task_number', sa.String(length=32), nullable=False, unique=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='SCHEDULED'),
        sa.Column('maintenance_type', sa.String(length=16), nullable=False, server_default='ROUTINE'),
        sa.Column('title', sa.String(length=200)),
        sa.Column('organization_id', sa.Integer()),
        sa.Column('scheduled_date', sa.DateTime(), nullable=False),
        sa.Column('actual_start', sa.DateTime()),
        sa.Column('completed_at', sa.DateTime()),
        sa.Column('duration_minutes', sa.Integer()),
        sa.Column('assigned_to', sa.Integer()),
        sa.Column('interval_days', sa.Integer()),
        sa.Column('next_due_date', sa.DateTime()),
        sa.Column('auto_schedule', sa.Boolean(), nullable=False, server_default=sa.text('0')),
        sa.Column('successor_task_id', sa.Integer(), sa.ForeignKey('maintenance_tasks.id', ondelete='SET NULL')),
        sa.Column('cancel_reason', sa.String(length=500)),
        sa.Column('findings', sa.Text()),
        sa.Column('notes', sa.Text()),
        sa.Column('created_by', sa.Integer()),
        *_timestamps(),
        sa.Column('deleted_at', sa.DateTime()),
        sa.Column('deleted_by', sa.Integer())
    )
    op.create_index('ix_maintenance_tasks_task_number', 'maintenance_tasks', ['task_number'])
    op.create_index('ix_maintenance_tasks_status', 'maintenance_tasks', ['status'])
    op.create_index('ix_maintenance_tasks_organization_id', 'maintenance_tasks', ['organization_id'])
    op.create_index('ix_maintenance_tasks_next_due_date', 'maintenance_tasks', ['next_due_date'])
    op.create_index('ix_maintenance_tasks_deleted_at', 'maintenance_tasks', ['deleted_at'])

    op.create_table('maintenance_asset_details',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('task_id', sa.Integer(), sa.ForeignKey('maintenance_tasks.id', ondelete='CASCADE'), nullable=False),
        sa.Column('asset_id', sa.Integer(), sa.ForeignKey('assets.id', ondelete='CASCADE'), nullable=False),
        sa.Column('notes', sa.String(length=500)),
        sa.UniqueConstraint('task_id', 'asset_id', name='uq_task_asset')
    )
    op.create_index('ix_maintenance_asset_details_task_id', 'maintenance_asset_details', ['task_id'])
    op.create_index('ix_maintenance_asset_details_asset_id', 'maintenance_asset_details', ['asset_id'])

    op.create_table('repair_work_orders',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('asset_id', sa.Integer(), sa.ForeignKey('assets.id', ondelete='CASCADE'), nullable=False),
        sa.Column('ticket_id', sa.Integer(), sa.ForeignKey('service_tickets.id', ondelete='SET NULL')),
        sa.Column('maintenance_id', sa.Integer(), sa.ForeignKey('maintenance_tasks.id', ondelete='SET NULL')),
        sa.Column('repair_type', sa.String(length=16), nullable=False, server_default='ON_DEMAND'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='RECEIVED'),
        sa.Column('assigned_to', sa.Integer()),
        sa.Column('qc_passed', sa.Boolean()),
        sa.Column('parts_replaced', sa.JSON()),
        sa.Column('repair_notes', sa.Text()),
        sa.Column('warranty_days', sa.Integer()),
        sa.Column('warranty_start', sa.DateTime()),
        sa.Column('warranty_end', sa.DateTime()),
        sa.Column('created_by', sa.Integer()),
        sa.Column('repaired_by', sa.Integer()),
        *_timestamps(),
        sa.Column('completed_at', sa.DateTime()),
        sa.Column('deleted_at', sa.DateTime()),
        sa.Column('deleted_by', sa.Integer())
    )
    op.create_index('ix_repair_work_orders_asset_id', 'repair_work_orders', ['asset_id'])
    op.create_index('ix_repair_work_orders_ticket_id', 'repair_work_orders', ['ticket_id'])
    op.create_index('ix_repair_work_orders_maintenance_id', 'repair_work_orders', ['maintenance_id'])
    op.create_index('ix_repair_work_orders_status', 'repair_work_orders', ['status'])
    op.create_index('ix_repair_work_orders_created_at', 'repair_work_orders', ['created_at'])
    op.create_index('ix_repair_work_orders_deleted_at', 'repair_work_orders', ['deleted_at'])

    for table, received in (('delivery_records', 'received_at_center'), ('return_records', 'received_in_field')):
        op.create_table(table,
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('ticket_id', sa.Integer(), sa.ForeignKey('service_tickets.id', ondelete='CASCADE'), nullable=False, unique=True),
            sa.Column('method', sa.String(length=16), nullable=False),
            sa.Column('courier_service', sa.String(length=64)),
            sa.Column('tracking_number', sa.String(length=64)),
            sa.Column('shipped_at', sa.DateTime(), nullable=False),
            sa.Column('sent_by', sa.Integer()),
            sa.Column(received, sa.DateTime()),
            sa.Column('received_by', sa.Integer()),
            sa.Column('notes', sa.String(length=500)),
            sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
            sa.Column('deleted_at', sa.DateTime())
        )


def downgrade():
    with op.batch_alter_table('assets') as batch_op:
        batch_op.drop_constraint('fk_assets_replacement_ticket', type_='foreignkey')
    for tbl in [
        'return_records', 'delivery_records', 'repair_work_orders', 'maintenance_asset_details',
        'maintenance_tasks', 'ticket_asset_details', 'service_tickets', 'assets',
        'audit_logs', 'user_roles', 'user_groups', 'group_roles', 'role_permissions', 'users', 'groups', 'roles', 'permissions',
    ]:
        op.drop_table(tbl)
