from __future__ import annotations
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import select, update, func, or_

from custody import get_db
from custody.config.settings import setting
from custody.models.asset import Asset
from custody.models.maintenance import MaintenanceTask, MaintenanceAssetDetail
from custody.services import availability, notifications
from custody.services.errors import Conflict, NotFound, PreconditionFailed, ValidationError
from custody.services.lifecycle import MAINTENANCE_FSM, StatusChange
from custody.services.policy import Actor, assert_org_access, require_override
from custody.services.sync_engine import SyncResult, dispatch
from custody.services.transactions import transaction
from custody.utils.clock import resolve_now
from custody.utils.validation import coerce_id_list, coerce_int, parse_datetime, require_fields, validate_status

logger = logging.getLogger(__name__)


def generate_task_number(session, now: datetime) -> str:
    prefix = f"PM-{now:%y%m%d}-"
    count = session.execute(
        select(func.count(MaintenanceTask.id)).where(MaintenanceTask.task_number.like(prefix + '%'))
    ).scalar_one()
    return f"{prefix}{count + 1:04d}"


def get_task(task_id: int, session=None) -> MaintenanceTask:
    session = session or get_db()
    task = session.get(MaintenanceTask, task_id)
    if task is None or task.deleted_at is not None:
        raise NotFound('Maintenance task not found', task_id=task_id)
    return task


def _transition(result: SyncResult, task: MaintenanceTask, target: str, now: datetime):
    before = task.status
    MAINTENANCE_FSM.assert_can_transition(before, target, entity_id=task.id)
    task.status = target
    task.updated_at = now
    result.changes.append(StatusChange('MaintenanceTask', task.id, before, target, result.event))


def build_task(session, *, asset_ids, scheduled_date: datetime, maintenance_type: str, now: datetime,
               created_by: int, title: Optional[str] = None, organization_id: Optional[int] = None,
               interval_days: Optional[int] = None, auto_schedule: bool = False, notes: Optional[str] = None) -> MaintenanceTask:
    """New SCHEDULED task with one detail row per asset; caller has checked availability."""
    task = MaintenanceTask(
        task_number=generate_task_number(session, now),
        status=MaintenanceTask.STATUS_SCHEDULED,
        maintenance_type=maintenance_type,
        title=title,
        organization_id=organization_id,
        scheduled_date=scheduled_date,
        interval_days=interval_days,
        auto_schedule=auto_schedule,
        notes=notes,
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )
    for asset_id in asset_ids:
        task.details.append(MaintenanceAssetDetail(asset_id=asset_id))
    session.add(task)
    session.flush()
    return task


def create_task(data: Dict[str, Any], actor: Actor, now: Optional[datetime] = None) -> MaintenanceTask:
    now = resolve_now(now)
    require_fields(data, 'scheduled_date')
    asset_ids = coerce_id_list(data.get('asset_ids'), 'asset_ids', setting('MAX_TICKET_ASSETS'))
    mtype = validate_status(data.get('maintenance_type') or MaintenanceTask.TYPE_ROUTINE, MaintenanceTask.ALL_TYPES, 'maintenance_type')
    scheduled = parse_datetime(data['scheduled_date'], 'scheduled_date')
    auto_schedule = bool(data.get('auto_schedule'))
    if auto_schedule and mtype != MaintenanceTask.TYPE_ROUTINE:
        raise ValidationError('auto_schedule applies to ROUTINE tasks only', field='auto_schedule')
    interval = data.get('interval_days')
    if interval is not None:
        interval = coerce_int(interval, 'interval_days')
        if interval <= 0:
            raise ValidationError('interval_days must be positive', field='interval_days')
    elif mtype == MaintenanceTask.TYPE_ROUTINE:
        interval = setting('MAINTENANCE_INTERVAL_DAYS')
    with transaction() as session:
        org_id = data.get('organization_id')
        for asset_id in asset_ids:
            asset = session.get(Asset, asset_id)
            if asset is None:
                raise NotFound('Asset not found', asset_id=asset_id)
            assert_org_access(actor, asset.organization_id)
            info = availability.assess(session, asset)
            if not info['available']:
                raise PreconditionFailed(
                    'Asset is not available for maintenance',
                    asset_id=asset.id, current_status=asset.status, reason=info['reason'],
                    ticket_id=(info['active_ticket'] or {}).get('id'),
                    task_id=(info['active_maintenance'] or {}).get('id'),
                    order_id=(info['active_repair'] or {}).get('id'),
                )
            if org_id is None:
                org_id = asset.organization_id
        task = build_task(
            session, asset_ids=asset_ids, scheduled_date=scheduled, maintenance_type=mtype, now=now,
            created_by=actor.user_id, title=data.get('title'), organization_id=org_id,
            interval_days=interval, auto_schedule=auto_schedule, notes=data.get('notes'),
        )
    notifications.publish(notifications.MAINTENANCE_SCHEDULED, {
        'task_id': task.id, 'task_number': task.task_number, 'scheduled_date': task.scheduled_date.isoformat(),
    })
    return task


def start_task(task_id: int, actor: Actor, now: Optional[datetime] = None) -> MaintenanceTask:
    now = resolve_now(now)
    result = SyncResult(event='MaintenanceStarted')
    with transaction() as session:
        task = get_task(task_id, session=session)
        assert_org_access(actor, task.organization_id)
        if task.assigned_to is not None and task.assigned_to != actor.user_id:
            raise Conflict('Task is assigned to another technician', task_id=task.id, assigned_to=task.assigned_to)
        _transition(result, task, MaintenanceTask.STATUS_IN_PROGRESS, now)
        task.actual_start = now
        task.assigned_to = actor.user_id
    dispatch(result, actor_user_id=actor.user_id)
    return task


def take_task(task_id: int, actor: Actor, now: Optional[datetime] = None) -> MaintenanceTask:
    now = resolve_now(now)
    with transaction() as session:
        task = get_task(task_id, session=session)
        assert_org_access(actor, task.organization_id)
        res = session.execute(
            update(MaintenanceTask)
            .where(
                MaintenanceTask.id == task_id,
                MaintenanceTask.deleted_at.is_(None),
                MaintenanceTask.status.in_(MaintenanceTask.ACTIVE_STATUSES),
                or_(MaintenanceTask.assigned_to.is_(None), MaintenanceTask.assigned_to == actor.user_id),
            )
            .values(assigned_to=actor.user_id, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 0:
            row = session.execute(
                select(MaintenanceTask.assigned_to, MaintenanceTask.status).where(MaintenanceTask.id == task_id)
            ).one()
            raise Conflict('Task cannot be taken', task_id=task_id, assigned_to=row.assigned_to, current_status=row.status)
    session.refresh(task)
    return task


def complete_task(task_id: int, data: Dict[str, Any], actor: Actor, now: Optional[datetime] = None) -> MaintenanceTask:
    """Close an IN_PROGRESS task; ROUTINE tasks get their next due date."""
    now = resolve_now(now)
    result = SyncResult(event='MaintenanceCompleted')
    with transaction() as session:
        task = get_task(task_id, session=session)
        assert_org_access(actor, task.organization_id)
        _transition(result, task, MaintenanceTask.STATUS_COMPLETED, now)
        task.completed_at = now
        if task.actual_start is not None:
            task.duration_minutes = int((now - task.actual_start).total_seconds() // 60)
        if data.get('findings'):
            task.findings = data['findings']
        if task.maintenance_type == MaintenanceTask.TYPE_ROUTINE:
            days = task.interval_days or setting('MAINTENANCE_INTERVAL_DAYS')
            task.next_due_date = now + timedelta(days=days)
    dispatch(result, actor_user_id=actor.user_id)
    return task


def cancel_task(task_id: int, reason: str, actor: Actor, now: Optional[datetime] = None) -> MaintenanceTask:
    if not reason:
        raise ValidationError('reason required', field='reason')
    now = resolve_now(now)
    result = SyncResult(event='MaintenanceCancelled')
    with transaction() as session:
        task = get_task(task_id, session=session)
        assert_org_access(actor, task.organization_id)
        _transition(result, task, MaintenanceTask.STATUS_CANCELLED, now)
        task.cancel_reason = reason
        task.next_due_date = None
    dispatch(result, actor_user_id=actor.user_id)
    return task


def reschedule_task(task_id: int, new_date: Any, actor: Actor, now: Optional[datetime] = None) -> MaintenanceTask:
    now = resolve_now(now)
    scheduled = parse_datetime(new_date, 'scheduled_date')
    if scheduled <= now:
        raise ValidationError('scheduled_date must be in the future', field='scheduled_date')
    result = SyncResult(event='MaintenanceRescheduled')
    with transaction() as session:
        task = get_task(task_id, session=session)
        assert_org_access(actor, task.organization_id)
        _transition(result, task, MaintenanceTask.STATUS_RESCHEDULED, now)
        task.scheduled_date = scheduled
    dispatch(result, actor_user_id=actor.user_id)
    return task


def disable_auto_schedule(task_id: int, actor: Actor, now: Optional[datetime] = None) -> MaintenanceTask:
    now = resolve_now(now)
    with transaction() as session:
        task = get_task(task_id, session=session)
        assert_org_access(actor, task.organization_id)
        if task.maintenance_type != MaintenanceTask.TYPE_ROUTINE:
            raise PreconditionFailed('Only ROUTINE tasks auto-schedule', task_id=task.id, maintenance_type=task.maintenance_type)
        task.auto_schedule = False
        task.updated_at = now
    return task


def soft_delete_task(task_id: int, actor: Actor, now: Optional[datetime] = None) -> MaintenanceTask:
    now = resolve_now(now)
    with transaction() as session:
        task = session.get(MaintenanceTask, task_id)
        if task is None:
            raise NotFound('Maintenance task not found', task_id=task_id)
        if task.deleted_at is not None:
            raise Conflict('Task is already deleted', task_id=task.id)
        assert_org_access(actor, task.organization_id)
        if task.status == MaintenanceTask.STATUS_COMPLETED:
            require_override(actor, 'Deleting a completed maintenance task', task_id=task.id)
        task.deleted_at = now
        task.deleted_by = actor.user_id
        task.updated_at = now
    logger.info('maintenance task %s soft-deleted', task.task_number)
    return task
