from tests.test_lifecycle_helpers import admin_headers, assert_error


def test_unknown_path_returns_error_json(client):
    resp = client.get('/non-existent-path')
    # Flask default 404 should be wrapped by error handler
    assert resp.status_code == 404
    body = resp.get_json()
    assert body['error']['status'] == 404
    assert 'detail' in body['error']
    assert 'kind' not in body['error']


def test_domain_error_carries_kind_and_context(app_context, client):
    err = assert_error(client.get('/tickets/987654', headers=admin_headers()), 404, 'NOT_FOUND')
    assert err['context'] == {'ticket_id': 987654}
    assert err['title'] == 'Not Found'


def test_internal_error_shape(app_context, client, monkeypatch):
    import custody.routes.iam as iam_mod

    class BoomSession:
        def query(self, *a, **k):
            raise RuntimeError('explode')

    monkeypatch.setattr(iam_mod, 'get_db', lambda: BoomSession())
    resp = client.get('/iam/audit/logs', headers=admin_headers())
    assert resp.status_code == 500
    body = resp.get_json()
    assert body['error']['status'] == 500
    assert body['error']['title'] == 'Internal Server Error'
