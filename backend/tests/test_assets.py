from tests.test_utils_seed import make_asset, unique_serial
from tests.test_lifecycle_helpers import (
    admin_headers, jwt_headers, assert_transition, assert_error, register_assets, asset_status,
    open_shipped_ticket, receive_and_open_orders, complete_order, create_resource_and_assert,
)


def test_register_and_report_broken(app_context, client):
    headers = admin_headers()
    serial = unique_serial('REG')
    body = create_resource_and_assert(client, '/assets', {'serial_number': serial, 'asset_type': 'cassette', 'organization_id': 1},
                                      headers, expected_initial_status='OK')
    assert body['serial_number'] == serial
    assert_error(client.post('/assets', json={'serial_number': serial}, headers=headers), 409, 'CONFLICT')
    assert_error(client.post('/assets', json={}, headers=headers), 400, 'VALIDATION')

    assert_transition(client, f"/assets/{body['id']}/report-broken", headers, 200, payload={'notes': 'tape snapped'},
                      expected_body_value='BAD')
    err = assert_error(client.post(f"/assets/{body['id']}/report-broken", headers=headers), 409, 'CONFLICT')
    assert err['context']['current_status'] == 'BAD'


def test_replacing_an_asset_that_is_not_scrapped_is_refused(app_context, client):
    headers = admin_headers()
    (a1,) = register_assets(client, headers, 1)
    resp = client.post('/assets', json={'serial_number': unique_serial('REP'), 'replaces_asset_id': a1}, headers=headers)
    err = assert_error(resp, 422, 'PRECONDITION_FAILED')
    assert err['context']['current_status'] == 'OK'
    assert client.get(f'/assets/{a1}', headers=headers).get_json()['replaced_by_asset_id'] is None


def test_batch_availability_reports_each_id_independently(app_context, client):
    headers = admin_headers()
    free, busy = register_assets(client, headers, 2)
    create_resource_and_assert(client, '/tickets', {'title': 'hold', 'asset_ids': [busy]}, headers)
    missing = 10 ** 7

    resp = client.post('/assets/availability', json={'asset_ids': [free, 'abc', missing, busy]}, headers=headers)
    assert resp.status_code == 200, resp.get_json()
    body = resp.get_json()
    data = body['data']
    assert [d['asset_id'] for d in data] == [free, 'abc', missing, busy]
    assert data[0]['available'] is True
    assert data[1]['available'] is False and data[1]['error']['kind'] == 'VALIDATION'
    assert data[2]['available'] is False and data[2]['error']['kind'] == 'NOT_FOUND'
    assert data[3]['available'] is False
    assert data[3]['active_ticket'] is not None
    assert body['summary'] == {'requested': 4, 'available': 1, 'errors': 2}

    assert_error(client.post('/assets/availability', json={'asset_ids': []}, headers=headers), 400, 'VALIDATION')


def test_stale_transit_status_is_superseded_by_confirmed_return(app_context, client):
    headers = admin_headers()
    (a1,) = register_assets(client, headers, 1)
    tid = open_shipped_ticket(client, headers, [a1])['id']
    (order,) = receive_and_open_orders(client, headers, tid)
    complete_order(client, headers, order['id'])
    client.post(f'/tickets/{tid}/return', json={'courier_service': 'DHL', 'tracking_number': 'R7'}, headers=headers)
    assert_transition(client, f'/tickets/{tid}/return/receive', headers, 200, expected_body_value='CLOSED')

    # simulate a missed status update after the return was confirmed
    from custody import get_db
    from custody.models.asset import Asset
    session = get_db()
    session.get(Asset, a1).status = Asset.STATUS_IN_TRANSIT_TO_FIELD
    session.commit()

    info = client.get(f'/assets/{a1}/availability', headers=headers).get_json()
    assert info['in_repair_process'] is True
    assert info['return_received'] is True
    assert info['available'] is True


def test_in_process_asset_without_return_is_unavailable(app_context, client):
    headers = admin_headers()
    asset = make_asset(status='IN_REPAIR')
    info = client.get(f'/assets/{asset.id}/availability', headers=headers).get_json()
    assert info['available'] is False
    assert 'repair process' in info['reason']


def test_delete_scrapped_asset(app_context, client):
    headers = admin_headers()
    (a1,) = register_assets(client, headers, 1)
    assert_error(client.delete(f'/assets/{a1}', headers=headers), 422, 'PRECONDITION_FAILED')

    tid = open_shipped_ticket(client, headers, [a1])['id']
    (order,) = receive_and_open_orders(client, headers, tid)
    complete_order(client, headers, order['id'], qc_passed=False)
    err = assert_error(client.delete(f'/assets/{a1}', headers=headers), 409, 'CONFLICT')
    assert err['context']['ticket_id'] == tid

    assert_transition(client, f'/tickets/{tid}/pickup', headers, 200, expected_body_value='CLOSED')
    no_override = jwt_headers(4, ['ASSET.READ', 'ASSET.DELETE'])
    assert_error(client.delete(f'/assets/{a1}', headers=no_override), 403, 'FORBIDDEN')

    resp = client.delete(f'/assets/{a1}', headers=headers)
    assert resp.status_code == 200, resp.get_json()
    assert resp.get_json()['id'] == a1
    assert client.get(f'/assets/{a1}', headers=headers).status_code == 404


def test_organization_scope_limits_assets(app_context, client):
    headers = admin_headers()
    mine = make_asset(organization_id=7)
    theirs = make_asset(organization_id=8)
    scoped = jwt_headers(5, ['ASSET.READ', 'TKT.CREATE'], org_ids=[7])

    resp = client.get('/assets?limit=200', headers=scoped)
    assert resp.status_code == 200
    orgs = {a['organization_id'] for a in resp.get_json()['data']}
    assert orgs == {7}
    assert client.get(f'/assets/{mine.id}', headers=scoped).status_code == 200
    assert_error(client.get(f'/assets/{theirs.id}', headers=scoped), 403, 'FORBIDDEN')
    resp = client.post('/tickets', json={'title': 'not mine', 'asset_ids': [theirs.id]}, headers=scoped)
    assert_error(resp, 403, 'FORBIDDEN')
    assert asset_status(client, headers, theirs.id) == 'OK'


def test_asset_listing_supports_conditional_requests(app_context, client):
    headers = admin_headers()
    make_asset(asset_type='etag-check')
    first = client.get('/assets?asset_type=etag-check&limit=5', headers=headers)
    assert first.status_code == 200
    etag = first.headers.get('ETag')
    assert etag
    second = client.get('/assets?asset_type=etag-check&limit=5', headers={**headers, 'If-None-Match': etag})
    assert second.status_code == 304
    assert second.headers.get('ETag') == etag
    lm = first.headers.get('Last-Modified')
    if lm:
        third = client.get('/assets?asset_type=etag-check&limit=5', headers={**headers, 'If-Modified-Since': lm})
        assert third.status_code == 304
