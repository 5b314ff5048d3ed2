from datetime import timedelta

from custody import get_db
from custody.models.maintenance import MaintenanceTask, MaintenanceAssetDetail
from custody.services import maintenance, reconciliation
from custody.utils.clock import utcnow, isoformat
from tests.test_utils_seed import make_asset, admin_actor
from tests.test_lifecycle_helpers import (
    admin_headers, jwt_headers, assert_transition, assert_error, create_resource_and_assert,
)


def _future(days: int = 3) -> str:
    return isoformat(utcnow() + timedelta(days=days))


def test_task_lifecycle_over_http(app_context, client):
    headers = admin_headers(user_id=21)
    asset = make_asset()
    task = create_resource_and_assert(client, '/maintenance/tasks', {
        'asset_ids': [asset.id], 'scheduled_date': _future(), 'title': 'quarterly clean', 'interval_days': 30,
    }, headers, expected_initial_status='SCHEDULED')
    tid = task['id']
    assert task['task_number'].startswith('PM-')
    assert task['asset_ids'] == [asset.id]
    assert task['interval_days'] == 30

    # the asset is now booked
    resp = client.post('/maintenance/tasks', json={'asset_ids': [asset.id], 'scheduled_date': _future()}, headers=headers)
    err = assert_error(resp, 422, 'PRECONDITION_FAILED')
    assert err['context']['task_id'] == tid

    assert_transition(client, f'/maintenance/tasks/{tid}/reschedule', headers, 200, payload={'scheduled_date': _future(5)},
                      expected_body_value='RESCHEDULED')
    resp = client.post(f'/maintenance/tasks/{tid}/reschedule', json={'scheduled_date': isoformat(utcnow() - timedelta(days=1))}, headers=headers)
    assert_error(resp, 400, 'VALIDATION')

    other = jwt_headers(22, ['PM.READ', 'PM.MANAGE'])
    body = assert_transition(client, f'/maintenance/tasks/{tid}/start', headers, 200, expected_body_value='IN_PROGRESS').get_json()
    assert body['assigned_to'] == 21
    assert body['actual_start'] is not None
    assert_error(client.post(f'/maintenance/tasks/{tid}/take', headers=other), 409, 'CONFLICT')

    body = assert_transition(client, f'/maintenance/tasks/{tid}/complete', headers, 200, payload={'findings': 'dusty heads'},
                             expected_body_value='COMPLETED').get_json()
    assert body['findings'] == 'dusty heads'
    assert body['next_due_date'] is not None
    assert body['duration_minutes'] is not None
    err = assert_error(client.post(f'/maintenance/tasks/{tid}/cancel', json={'reason': 'late'}, headers=headers), 409, 'INVALID_TRANSITION')
    assert err['context']['current_status'] == 'COMPLETED'


def test_cancel_requires_reason_and_frees_the_asset(app_context, client):
    headers = admin_headers()
    asset = make_asset()
    tid = create_resource_and_assert(client, '/maintenance/tasks', {
        'asset_ids': [asset.id], 'scheduled_date': _future(), 'maintenance_type': 'ON_DEMAND',
    }, headers)['id']
    assert_error(client.post(f'/maintenance/tasks/{tid}/cancel', json={}, headers=headers), 400, 'VALIDATION')
    body = assert_transition(client, f'/maintenance/tasks/{tid}/cancel', headers, 200, payload={'reason': 'asset retired'},
                             expected_body_value='CANCELLED').get_json()
    assert body['cancel_reason'] == 'asset retired'
    assert client.get(f'/assets/{asset.id}/availability', headers=headers).get_json()['available'] is True
    assert_error(client.post(f'/maintenance/tasks/{tid}/disable-auto-schedule', headers=headers), 422, 'PRECONDITION_FAILED')


def test_auto_schedule_rejected_for_non_routine(app_context, client):
    headers = admin_headers()
    asset = make_asset()
    resp = client.post('/maintenance/tasks', json={
        'asset_ids': [asset.id], 'scheduled_date': _future(), 'maintenance_type': 'EMERGENCY', 'auto_schedule': True,
    }, headers=headers)
    assert_error(resp, 400, 'VALIDATION')
    assert_error(client.post('/maintenance/tasks', json={'asset_ids': [asset.id]}, headers=headers), 400, 'VALIDATION')


def test_deleting_completed_task_requires_override(app_context, client):
    headers = admin_headers(user_id=23)
    asset = make_asset()
    tid = create_resource_and_assert(client, '/maintenance/tasks', {'asset_ids': [asset.id], 'scheduled_date': _future()}, headers)['id']
    client.post(f'/maintenance/tasks/{tid}/start', headers=headers)
    client.post(f'/maintenance/tasks/{tid}/complete', json={}, headers=headers)
    no_override = jwt_headers(23, ['PM.READ', 'PM.DELETE'])
    assert_error(client.delete(f'/maintenance/tasks/{tid}', headers=no_override), 403, 'FORBIDDEN')
    assert client.delete(f'/maintenance/tasks/{tid}', headers=headers).status_code == 200
    assert_error(client.get(f'/maintenance/tasks/{tid}', headers=headers), 404, 'NOT_FOUND')


def test_routine_task_gets_successor_once(app_context):
    actor = admin_actor(user_id=31)
    asset = make_asset()
    task = maintenance.create_task({
        'asset_ids': [asset.id], 'scheduled_date': utcnow() + timedelta(hours=1),
        'auto_schedule': True, 'interval_days': 30, 'title': 'monthly check',
    }, actor)
    maintenance.start_task(task.id, actor)
    maintenance.complete_task(task.id, {}, actor)
    assert task.next_due_date is not None

    # not yet inside the look-ahead window
    early = reconciliation.auto_schedule_maintenance(now=utcnow(), lookahead_days=7)
    assert task.successor_task_id is None
    assert early['errors'] == 0

    run_at = utcnow() + timedelta(days=25)
    summary = reconciliation.auto_schedule_maintenance(now=run_at, lookahead_days=7)
    session = get_db()
    session.refresh(task)
    assert task.successor_task_id is not None
    successor = session.get(MaintenanceTask, task.successor_task_id)
    assert successor.task_number in summary['task_numbers']
    assert successor.status == MaintenanceTask.STATUS_SCHEDULED
    assert successor.asset_ids == [asset.id]
    assert successor.scheduled_date == task.next_due_date
    assert successor.auto_schedule is True
    assert successor.interval_days == 30

    again = reconciliation.auto_schedule_maintenance(now=run_at, lookahead_days=7)
    assert successor.task_number not in again['task_numbers']
    count = session.query(MaintenanceAssetDetail).filter_by(asset_id=asset.id).count()
    assert count == 2


def test_disabled_auto_schedule_is_not_rescheduled(app_context):
    actor = admin_actor(user_id=32)
    asset = make_asset()
    task = maintenance.create_task({
        'asset_ids': [asset.id], 'scheduled_date': utcnow() + timedelta(hours=1), 'auto_schedule': True, 'interval_days': 1,
    }, actor)
    maintenance.start_task(task.id, actor)
    maintenance.complete_task(task.id, {}, actor)
    maintenance.disable_auto_schedule(task.id, actor)

    reconciliation.auto_schedule_maintenance(now=utcnow() + timedelta(days=2), lookahead_days=7)
    get_db().refresh(task)
    assert task.successor_task_id is None


def test_overdue_successor_is_scheduled_now(app_context):
    actor = admin_actor(user_id=33)
    asset = make_asset()
    task = maintenance.create_task({
        'asset_ids': [asset.id], 'scheduled_date': utcnow() + timedelta(hours=1), 'auto_schedule': True, 'interval_days': 1,
    }, actor)
    maintenance.start_task(task.id, actor)
    maintenance.complete_task(task.id, {}, actor)

    run_at = utcnow() + timedelta(days=10)
    reconciliation.auto_schedule_maintenance(now=run_at, lookahead_days=7)
    session = get_db()
    session.refresh(task)
    successor = session.get(MaintenanceTask, task.successor_task_id)
    assert successor.scheduled_date == run_at
