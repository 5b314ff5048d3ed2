from tests.test_lifecycle_helpers import (
    admin_headers, assert_transition, assert_error, register_assets, asset_status, ticket_status,
    create_resource_and_assert, complete_order,
)


def _on_site_ticket(client, headers, asset_id):
    return create_resource_and_assert(client, '/tickets', {
        'title': 'rewinder stuck', 'asset_ids': [asset_id], 'repair_location': 'ON_SITE',
    }, headers, expected_initial_status='PENDING_APPROVAL')


def test_approved_on_site_repair_resolves_and_closes_on_pickup(app_context, client):
    headers = admin_headers()
    (a1,) = register_assets(client, headers, 1)
    tid = _on_site_ticket(client, headers, a1)['id']
    assert asset_status(client, headers, a1) == 'BAD'

    assert_transition(client, f'/tickets/{tid}/approve-on-site', headers, 200, expected_body_value='APPROVED_ON_SITE')
    out = create_resource_and_assert(client, '/repairs/orders', {'ticket_id': tid}, headers)
    assert out['created_count'] == 1
    assert ticket_status(client, headers, tid) == 'IN_PROGRESS'

    body = complete_order(client, headers, out['created'][0]['id'])
    assert body['sync']['ticket_status'] == 'RESOLVED'
    assert_transition(client, f'/tickets/{tid}/pickup', headers, 200, expected_body_value='CLOSED')
    assert asset_status(client, headers, a1) == 'OK'


def test_rejected_on_site_request_returns_to_open_repair_center_ticket(app_context, client):
    headers = admin_headers()
    (a1,) = register_assets(client, headers, 1)
    tid = _on_site_ticket(client, headers, a1)['id']

    assert_error(client.post(f'/tickets/{tid}/reject-on-site', json={}, headers=headers), 400, 'VALIDATION')
    resp = assert_transition(client, f'/tickets/{tid}/reject-on-site', headers, 200, payload={'reason': 'needs bench tools'},
                             expected_body_value='OPEN')
    body = resp.get_json()
    assert body['repair_location'] == 'REPAIR_CENTER'
    assert 'needs bench tools' in body['resolution_notes']

    err = assert_error(client.post(f'/tickets/{tid}/approve-on-site', headers=headers), 422, 'PRECONDITION_FAILED')
    assert err['context']['current_status'] == 'OPEN'
    # now it ships like any repair-center ticket
    resp = client.post(f'/tickets/{tid}/delivery', json={'method': 'SELF_DELIVERY'}, headers=headers)
    assert resp.status_code == 201, resp.get_json()
    assert resp.get_json()['status'] == 'IN_DELIVERY'


def test_on_site_tickets_are_not_shipped(app_context, client):
    headers = admin_headers()
    (a1,) = register_assets(client, headers, 1)
    tid = _on_site_ticket(client, headers, a1)['id']
    assert_error(client.post(f'/tickets/{tid}/delivery', json={'method': 'SELF_DELIVERY'}, headers=headers), 422, 'PRECONDITION_FAILED')
    resp = client.post('/tickets', json={
        'title': 'x', 'asset_ids': [a1], 'repair_location': 'ON_SITE',
        'delivery': {'method': 'SELF_DELIVERY'},
    }, headers=headers)
    assert_error(resp, 400, 'VALIDATION')
