from __future__ import annotations
from flask import Blueprint, request

from custody import get_db
from custody.decorators.auth import require_permissions
from custody.decorators.audit import audit_log
from custody.models.maintenance import MaintenanceTask, MaintenanceAssetDetail
from custody.services import maintenance
from custody.services.policy import current_actor, assert_org_access, scope_to_orgs
from custody.utils.clock import isoformat
from custody.utils.listing import apply_filters, list_response
from custody.utils.validation import coerce_int, validate_status

pm_bp = Blueprint('maintenance', __name__)

SORT_FIELDS = {
    'task_number': MaintenanceTask.task_number,
    'status': MaintenanceTask.status,
    'scheduled_date': MaintenanceTask.scheduled_date,
    'next_due_date': MaintenanceTask.next_due_date,
    'updated_at': MaintenanceTask.updated_at,
    'id': MaintenanceTask.id,
}

FILTERS = {
    'status': lambda q, v: q.filter(MaintenanceTask.status == validate_status(v, MaintenanceTask.ALL_STATUSES)),
    'maintenance_type': lambda q, v: q.filter(MaintenanceTask.maintenance_type == validate_status(v, MaintenanceTask.ALL_TYPES, 'maintenance_type')),
    'assigned_to': lambda q, v: q.filter(MaintenanceTask.assigned_to == coerce_int(v, 'assigned_to')),
    'asset_id': lambda q, v: q.filter(MaintenanceTask.details.any(MaintenanceAssetDetail.asset_id == coerce_int(v, 'asset_id'))),
}


def _task_json(t: MaintenanceTask):
    return {
        'id': t.id,
        'task_number': t.task_number,
        'status': t.status,
        'maintenance_type': t.maintenance_type,
        'title': t.title,
        'organization_id': t.organization_id,
        'asset_ids': t.asset_ids,
        'scheduled_date': isoformat(t.scheduled_date),
        'actual_start': isoformat(t.actual_start),
        'completed_at': isoformat(t.completed_at),
        'duration_minutes': t.duration_minutes,
        'assigned_to': t.assigned_to,
        'interval_days': t.interval_days,
        'next_due_date': isoformat(t.next_due_date),
        'auto_schedule': t.auto_schedule,
        'successor_task_id': t.successor_task_id,
        'cancel_reason': t.cancel_reason,
        'findings': t.findings,
        'notes': t.notes,
        'created_at': isoformat(t.created_at),
        'updated_at': isoformat(t.updated_at),
    }


def _load(task_id: int) -> MaintenanceTask:
    t = maintenance.get_task(task_id)
    assert_org_access(current_actor(), t.organization_id)
    return t


@pm_bp.get('/tasks')
@require_permissions('PM.READ')
def list_tasks():
    q = get_db().query(MaintenanceTask).filter(MaintenanceTask.deleted_at.is_(None))
    q = scope_to_orgs(q, MaintenanceTask.organization_id, current_actor())
    q = apply_filters(q, FILTERS, request.args)
    return list_response(q, _task_json, SORT_FIELDS, MaintenanceTask.id, updated_col='updated_at')


@pm_bp.post('/tasks')
@require_permissions('PM.CREATE')
@audit_log('PM.TASK.CREATE', entity='MaintenanceTask', entity_id_key='id', meta_keys=['task_number', 'asset_ids', 'scheduled_date'])
def create_task():
    return _task_json(maintenance.create_task(request.json or {}, current_actor())), 201


@pm_bp.get('/tasks/<int:task_id>')
@require_permissions('PM.READ')
def get_task(task_id: int):
    return _task_json(_load(task_id))


@pm_bp.post('/tasks/<int:task_id>/start')
@require_permissions('PM.MANAGE')
def start_task(task_id: int):
    return _task_json(maintenance.start_task(task_id, current_actor()))


@pm_bp.post('/tasks/<int:task_id>/take')
@require_permissions('PM.MANAGE')
@audit_log('PM.TASK.TAKE', entity='MaintenanceTask', entity_id_key='id', meta_keys=['assigned_to'])
def take_task(task_id: int):
    return _task_json(maintenance.take_task(task_id, current_actor()))


@pm_bp.post('/tasks/<int:task_id>/complete')
@require_permissions('PM.MANAGE')
def complete_task(task_id: int):
    return _task_json(maintenance.complete_task(task_id, request.json or {}, current_actor()))


@pm_bp.post('/tasks/<int:task_id>/cancel')
@require_permissions('PM.MANAGE')
def cancel_task(task_id: int):
    data = request.json or {}
    return _task_json(maintenance.cancel_task(task_id, data.get('reason'), current_actor()))


@pm_bp.post('/tasks/<int:task_id>/reschedule')
@require_permissions('PM.MANAGE')
def reschedule_task(task_id: int):
    data = request.json or {}
    return _task_json(maintenance.reschedule_task(task_id, data.get('scheduled_date'), current_actor()))


@pm_bp.post('/tasks/<int:task_id>/disable-auto-schedule')
@require_permissions('PM.MANAGE')
@audit_log('PM.TASK.AUTO_SCHEDULE.DISABLE', entity='MaintenanceTask', entity_id_key='id')
def disable_auto_schedule(task_id: int):
    return _task_json(maintenance.disable_auto_schedule(task_id, current_actor()))


@pm_bp.delete('/tasks/<int:task_id>')
@require_permissions('PM.DELETE')
@audit_log('PM.TASK.DELETE', entity='MaintenanceTask', entity_id_key='id', meta_keys=['task_number', 'status'])
def delete_task(task_id: int):
    return _task_json(maintenance.soft_delete_task(task_id, current_actor()))
