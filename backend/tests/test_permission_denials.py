import pytest

from tests.test_lifecycle_helpers import jwt_headers, assert_error

DENIALS = [
    ('get', '/assets', 'ASSET.READ'),
    ('post', '/assets', 'ASSET.CREATE'),
    ('post', '/tickets', 'TKT.CREATE'),
    ('post', '/tickets/1/approve-on-site', 'TKT.APPROVE'),
    ('post', '/tickets/1/delivery/receive', 'SHIP.RECEIVE'),
    ('post', '/repairs/orders/1/complete', 'RPR.COMPLETE'),
    ('delete', '/repairs/orders/1', 'RPR.DELETE'),
    ('post', '/maintenance/tasks', 'PM.CREATE'),
    ('post', '/jobs/maintenance-schedule', 'SYNC.RUN'),
    ('post', '/iam/users', 'ADMIN.USER.MANAGE'),
]


@pytest.mark.parametrize('method,url,perm', DENIALS)
def test_missing_permission_is_reported(app_context, client, method, url, perm):
    headers = jwt_headers(50, ['NOTHING.USEFUL'])
    resp = getattr(client, method)(url, json={}, headers=headers)
    err = assert_error(resp, 403, 'FORBIDDEN')
    assert perm in err['context']['missing']
