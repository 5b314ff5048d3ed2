from custody import get_db
from custody.models.repair_order import RepairWorkOrder
from custody.models.service_ticket import ServiceTicket
from custody.services import reconciliation
from custody.utils.clock import utcnow
from tests.test_lifecycle_helpers import (
    admin_headers, jwt_headers, assert_transition, assert_error, register_assets, ticket_status,
    open_shipped_ticket, receive_and_open_orders, complete_order,
)


def _resolved_ticket(client, headers):
    (a1,) = register_assets(client, headers, 1)
    tid = open_shipped_ticket(client, headers, [a1])['id']
    (order,) = receive_and_open_orders(client, headers, tid)
    complete_order(client, headers, order['id'])
    assert ticket_status(client, headers, tid) == 'RESOLVED'
    return a1, tid, order['id']


def test_lagging_ticket_is_promoted_and_second_run_is_a_no_op(app_context, client):
    headers = admin_headers()
    _, tid, _ = _resolved_ticket(client, headers)
    session = get_db()
    session.get(ServiceTicket, tid).status = ServiceTicket.STATUS_IN_PROGRESS
    session.commit()

    first = reconciliation.reconcile_ticket_statuses(limit=1000)
    assert first['corrected'] >= 1
    assert first['errors'] == 0
    assert ticket_status(client, headers, tid) == 'RESOLVED'

    second = reconciliation.reconcile_ticket_statuses(limit=1000)
    assert second['corrected'] == 0
    assert second['errors'] == 0
    assert second['checked'] == second['unchanged'] + second['skipped']


def test_resolved_ticket_without_completed_order_is_demoted(app_context, client):
    headers = admin_headers()
    _, tid, order_id = _resolved_ticket(client, headers)
    session = get_db()
    session.get(RepairWorkOrder, order_id).deleted_at = utcnow()
    session.commit()

    summary = reconciliation.reconcile_ticket_statuses(limit=1000)
    assert summary['errors'] == 0
    assert ticket_status(client, headers, tid) == 'IN_PROGRESS'
    ticket = client.get(f'/tickets/{tid}', headers=headers).get_json()
    assert ticket['resolved_at'] is None


def test_prior_cycle_order_does_not_resolve_new_ticket(app_context, client):
    headers = admin_headers()
    a1, first_tid, _ = _resolved_ticket(client, headers)
    assert_transition(client, f'/tickets/{first_tid}/pickup', headers, 200, expected_body_value='CLOSED')

    second_tid = open_shipped_ticket(client, headers, [a1], title='failed again')['id']
    assert_transition(client, f'/tickets/{second_tid}/delivery/receive', headers, 200, expected_body_value='RECEIVED')

    reconciliation.reconcile_ticket_statuses(limit=1000)
    assert ticket_status(client, headers, second_tid) == 'RECEIVED'


def test_dry_run_reports_without_writing(app_context, client):
    headers = admin_headers()
    _, tid, _ = _resolved_ticket(client, headers)
    session = get_db()
    session.get(ServiceTicket, tid).status = ServiceTicket.STATUS_IN_PROGRESS
    session.commit()

    resp = client.post('/jobs/reconcile?dry_run=1&limit=1000', headers=headers)
    assert resp.status_code == 200, resp.get_json()
    assert resp.get_json()['corrected'] >= 1
    assert ticket_status(client, headers, tid) == 'IN_PROGRESS'

    resp = client.post('/jobs/reconcile?limit=1000', headers=headers)
    assert resp.status_code == 200
    assert set(resp.get_json()) == {'checked', 'corrected', 'unchanged', 'skipped', 'errors'}
    assert ticket_status(client, headers, tid) == 'RESOLVED'


def test_job_routes_require_sync_permission(app_context, client):
    limited = jwt_headers(9, ['TKT.READ'])
    err = assert_error(client.post('/jobs/reconcile', headers=limited), 403, 'FORBIDDEN')
    assert 'SYNC.RUN' in err['context']['missing']
    assert_error(client.post('/jobs/reconcile?limit=abc', headers=admin_headers()), 400, 'VALIDATION')

    resp = client.post('/jobs/maintenance-schedule?dry_run=1&lookahead_days=3', headers=admin_headers())
    assert resp.status_code == 200, resp.get_json()
    body = resp.get_json()
    assert set(body) == {'created', 'skipped', 'errors', 'task_numbers'}
    assert body['task_numbers'] == []


def test_small_pages_still_reach_every_drifted_ticket(app_context, client):
    headers = admin_headers()
    _resolved_ticket(client, headers)
    _resolved_ticket(client, headers)
    _, drifted, _ = _resolved_ticket(client, headers)
    session = get_db()
    session.get(ServiceTicket, drifted).status = ServiceTicket.STATUS_IN_PROGRESS
    session.commit()

    summary = reconciliation.reconcile_ticket_statuses(limit=2)
    assert summary['errors'] == 0
    assert summary['checked'] >= 3
    assert summary['corrected'] >= 1
    assert ticket_status(client, headers, drifted) == 'RESOLVED'
