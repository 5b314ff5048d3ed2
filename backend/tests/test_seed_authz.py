from sqlalchemy import select

from custody import get_db
from custody.constants.permissions import ALL_PERMISSION_CODES, ROLE_PRESETS
from custody.models.authz import Group, Role
from custody.services.policy import compute_effective_permissions, compute_org_ids
from scripts.seed_authz import seed, REPAIR_CENTER_GROUP
from tests.test_utils_seed import ensure_user, ensure_user_group_membership


def test_seed_is_idempotent_and_owner_gets_everything(app_context, client):
    session = get_db()
    seed(session, admin_email='owner@example.com', admin_password='owner-pw')
    session.commit()
    again = seed(session, admin_email='owner@example.com', admin_password='owner-pw')
    session.commit()
    assert again == {'permissions': 0, 'roles': 0, 'groups': 0, 'admins': 0}

    supervisor = session.execute(select(Role).where(Role.name == 'Supervisor')).scalar_one()
    assert supervisor.is_system
    assert supervisor.permission_codes == sorted(ROLE_PRESETS['Supervisor'])

    token = client.post('/iam/auth/login', json={'email': 'owner@example.com', 'password': 'owner-pw'}).get_json()['access_token']
    me = client.get('/iam/auth/me', headers={'Authorization': f'Bearer {token}'}).get_json()
    assert set(me['perms']) >= set(ALL_PERMISSION_CODES)
    assert me['org_ids'] == []


def test_repair_center_group_grants_technician_preset(app_context):
    session = get_db()
    seed(session, admin_email='owner@example.com', admin_password='owner-pw')
    session.commit()
    group = session.execute(select(Group).where(Group.name == REPAIR_CENTER_GROUP)).scalar_one()
    assert group.kind == Group.KIND_REPAIR_CENTER

    tech = ensure_user('bench.tech@example.com')
    ensure_user_group_membership(tech, group)
    assert compute_effective_permissions(tech.id)['perms'] == sorted(ROLE_PRESETS['Technician'])
    assert compute_org_ids(tech.id) == []
