from tests.test_utils_seed import seed_user_with_role_and_group, ensure_role
from tests.test_lifecycle_helpers import admin_headers, assert_error


def _login(client, email, password='pw'):
    return client.post('/iam/auth/login', json={'email': email, 'password': password})


def test_login_and_me_carry_permissions_and_org_scope(app_context, client):
    seed_user_with_role_and_group('tech.a@example.com', 'Bench Technician', ['RPR.READ', 'RPR.MANAGE'], 'Workshop A', [3, 4])
    resp = _login(client, 'tech.a@example.com')
    assert resp.status_code == 200, resp.get_json()
    token = resp.get_json()['access_token']

    me = client.get('/iam/auth/me', headers={'Authorization': f'Bearer {token}'})
    assert me.status_code == 200
    body = me.get_json()
    assert body['email'] == 'tech.a@example.com'
    assert set(body['perms']) == {'RPR.READ', 'RPR.MANAGE'}
    assert body['org_ids'] == [3, 4]

    # the token works against guarded routes
    assert client.get('/repairs/orders', headers={'Authorization': f'Bearer {token}'}).status_code == 200
    err = assert_error(client.get('/tickets', headers={'Authorization': f'Bearer {token}'}), 403, 'FORBIDDEN')
    assert err['context']['missing'] == ['TKT.READ']


def test_bad_credentials_are_rejected(app_context, client):
    seed_user_with_role_and_group('tech.b@example.com', 'Bench Technician', ['RPR.READ'], 'Workshop B', [5])
    assert_error(_login(client, 'tech.b@example.com', 'wrong'), 401)
    assert_error(_login(client, 'nobody@example.com'), 401)
    assert_error(client.post('/iam/auth/login', json={'email': 'tech.b@example.com'}), 400, 'VALIDATION')


def test_missing_token_is_unauthorized(app_context, client):
    assert client.get('/assets').status_code == 401
    assert client.get('/iam/auth/me').status_code == 401


def test_user_management_and_audit_trail(app_context, client):
    headers = admin_headers(user_id=99)
    ensure_role('Shipping Clerk', ['SHIP.READ', 'TKT.READ'])

    resp = client.post('/iam/users', json={
        'name': 'Clerk', 'email': 'clerk@example.com', 'password': 'secret', 'roles': ['Shipping Clerk'],
    }, headers=headers)
    assert resp.status_code == 201, resp.get_json()
    user_id = resp.get_json()['id']
    assert resp.get_json()['roles'] == ['Shipping Clerk']
    assert_error(client.post('/iam/users', json={'name': 'x', 'email': 'clerk@example.com', 'password': 'y'}, headers=headers),
                 409, 'CONFLICT')
    err = assert_error(client.put(f'/iam/users/{user_id}/roles', json={'roles': ['No Such Role']}, headers=headers), 400, 'VALIDATION')
    assert err['context']['missing'] == ['No Such Role']

    token = _login(client, 'clerk@example.com', 'secret').get_json()['access_token']
    clerk = {'Authorization': f'Bearer {token}'}
    assert client.get('/tickets', headers=clerk).status_code == 200
    assert_error(client.get('/iam/audit/logs', headers=clerk), 403, 'FORBIDDEN')

    logs = client.get('/iam/audit/logs?action=USER.CREATE&actor_user_id=99', headers=headers)
    assert logs.status_code == 200
    rows = logs.get_json()['data']
    assert len(rows) == 1
    assert rows[0]['meta']['email'] == 'clerk@example.com'
    # failed requests leave no audit entry
    assert client.get('/iam/audit/logs?action=USER.ROLES.SET&actor_user_id=99', headers=headers).get_json()['data'] == []


def test_home_organization_and_groups_scope_the_token(app_context, client):
    headers = admin_headers()
    ensure_role('Field Operator', ['ASSET.READ', 'TKT.READ'])
    resp = client.post('/iam/users', json={
        'name': 'Op', 'email': 'op@example.com', 'password': 'pw', 'organization_id': 11, 'roles': ['Field Operator'],
    }, headers=headers)
    assert resp.status_code == 201, resp.get_json()
    user_id = resp.get_json()['id']
    assert resp.get_json()['organization_id'] == 11

    assert_error(client.post('/iam/groups', json={'name': 'North depots'}, headers=headers), 400, 'VALIDATION')
    resp = client.post('/iam/groups', json={'name': 'North depots', 'org_ids': [12, 13], 'roles': ['Field Operator']}, headers=headers)
    assert resp.status_code == 201, resp.get_json()
    group = resp.get_json()
    assert group['kind'] == 'OPERATOR'
    assert group['org_ids'] == [12, 13]
    assert_error(client.post('/iam/groups', json={'name': 'North depots', 'org_ids': [1]}, headers=headers), 409, 'CONFLICT')

    resp = client.put(f'/iam/users/{user_id}/groups', json={'group_ids': [group['id']]}, headers=headers)
    assert resp.status_code == 200
    assert resp.get_json()['org_ids'] == [11, 12, 13]

    token = _login(client, 'op@example.com').get_json()['access_token']
    me = client.get('/iam/auth/me', headers={'Authorization': f'Bearer {token}'}).get_json()
    assert me['org_ids'] == [11, 12, 13]
    assert me['last_login_at'] is not None


def test_repair_center_group_is_unscoped(app_context, client):
    headers = admin_headers()
    ensure_role('Bench Lead', ['RPR.READ'])
    resp = client.post('/iam/groups', json={'name': 'Central bench', 'kind': 'REPAIR_CENTER', 'roles': ['Bench Lead']}, headers=headers)
    assert resp.status_code == 201, resp.get_json()
    assert resp.get_json()['org_ids'] == []
    roles = {r['name']: r for r in client.get('/iam/roles', headers=headers).get_json()['data']}
    assert roles['Bench Lead']['permissions'] == ['RPR.READ']


def test_deactivated_user_cannot_log_in(app_context, client):
    headers = admin_headers()
    resp = client.post('/iam/users', json={'name': 'Temp', 'email': 'temp@example.com', 'password': 'pw'}, headers=headers)
    user_id = resp.get_json()['id']
    assert _login(client, 'temp@example.com').status_code == 200
    body = client.post(f'/iam/users/{user_id}/deactivate', headers=headers).get_json()
    assert body['is_active'] is False
    assert_error(_login(client, 'temp@example.com'), 401)
