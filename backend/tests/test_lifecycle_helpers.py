"""Reusable test helpers for the custody lifecycle to reduce duplication.

Patterns unified:
 - Auth header creation using direct JWT claims (bypassing /login).
 - Creation + transition sequencing with assertion helpers.
 - Driving a ticket through the repair center up to the hand-back step.
"""
from __future__ import annotations
from typing import Dict, List, Optional
from flask_jwt_extended import create_access_token
from custody.constants.permissions import ALL_PERMISSION_CODES
from tests.test_utils_seed import unique_serial

COURIER = {'method': 'COURIER', 'courier_service': 'DHL', 'tracking_number': 'TRK-1'}

# ---------- Generic Auth Helpers ---------- #

def jwt_headers(user_id: int, perms: List[str], org_ids: Optional[List[int]] = None):
    token = create_access_token(identity=str(user_id), additional_claims={
        'perms': perms,
        'roles': [],
        'groups': [],
        'org_ids': org_ids or [],
    })
    return {'Authorization': f'Bearer {token}'}


def admin_headers(user_id: int = 1, org_ids: Optional[List[int]] = None):
    return jwt_headers(user_id, list(ALL_PERMISSION_CODES), org_ids)

# ---------- Assertion Helpers ---------- #

def assert_transition(client, url: str, headers: Dict[str, str], expected_status: int, payload: dict = None,
                      expected_body_key: str = 'status', expected_body_value: str = None):
    resp = client.post(url, json=payload or {}, headers=headers)
    assert resp.status_code == expected_status, resp.get_json()
    if expected_status < 400 and expected_body_value is not None:
        body = resp.get_json()
        assert body[expected_body_key] == expected_body_value
    return resp


def create_resource_and_assert(client, url: str, payload: dict, headers: Dict[str, str], expected_status_field: str = 'status', expected_initial_status: str = None):
    resp = client.post(url, json=payload, headers=headers)
    assert resp.status_code == 201, resp.get_json()
    body = resp.get_json()
    if expected_initial_status:
        assert body[expected_status_field] == expected_initial_status
    return body


def assert_error(resp, status: int, kind: str = None):
    assert resp.status_code == status, resp.get_json()
    body = resp.get_json()
    assert body['error']['status'] == status
    if kind:
        assert body['error']['kind'] == kind
    return body['error']

# ---------- Domain Specific Wrappers ---------- #

def register_assets(client, headers, count: int = 1, organization_id: int = 1) -> List[int]:
    ids = []
    for _ in range(count):
        body = create_resource_and_assert(
            client, '/assets', {'serial_number': unique_serial(), 'organization_id': organization_id}, headers,
            expected_initial_status='OK',
        )
        ids.append(body['id'])
    return ids


def asset_status(client, headers, asset_id: int) -> str:
    resp = client.get(f'/assets/{asset_id}', headers=headers)
    assert resp.status_code == 200, resp.get_json()
    return resp.get_json()['status']


def ticket_status(client, headers, ticket_id: int) -> str:
    resp = client.get(f'/tickets/{ticket_id}', headers=headers)
    assert resp.status_code == 200, resp.get_json()
    return resp.get_json()['status']


def open_shipped_ticket(client, headers, asset_entries, title: str = 'Cassette jams') -> dict:
    """Ticket with courier info: assets leave for the repair center at once."""
    payload = {'title': title, 'delivery': COURIER}
    if asset_entries and isinstance(asset_entries[0], dict):
        payload['assets'] = asset_entries
    else:
        payload['asset_ids'] = asset_entries
    return create_resource_and_assert(client, '/tickets', payload, headers, expected_initial_status='IN_DELIVERY')


def receive_and_open_orders(client, headers, ticket_id: int) -> List[dict]:
    """Delivery arrives and one work-order per asset is opened."""
    assert_transition(client, f'/tickets/{ticket_id}/delivery/receive', headers, 200, expected_body_value='RECEIVED')
    out = create_resource_and_assert(client, '/repairs/orders', {'ticket_id': ticket_id}, headers)
    assert out['skipped_count'] == 0
    return out['created']


def complete_order(client, headers, order_id: int, qc_passed: bool = True, **extra) -> dict:
    resp = client.post(f'/repairs/orders/{order_id}/complete', json={'qc_passed': qc_passed, **extra}, headers=headers)
    assert resp.status_code == 200, resp.get_json()
    body = resp.get_json()
    assert body['status'] == 'COMPLETED'
    return body


__all__ = [
    'COURIER', 'jwt_headers', 'admin_headers', 'assert_transition', 'create_resource_and_assert', 'assert_error',
    'register_assets', 'asset_status', 'ticket_status', 'open_shipped_ticket', 'receive_and_open_orders', 'complete_order',
]
