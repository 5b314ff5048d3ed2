import pytest

from custody.services import notifications
from tests.test_lifecycle_helpers import (
    admin_headers, assert_transition, register_assets, open_shipped_ticket, receive_and_open_orders, complete_order,
)


@pytest.fixture()
def recorder():
    seen = []

    def record(name, payload):
        seen.append((name, payload))

    def explode(name, payload):
        raise RuntimeError('mail server down')

    notifications.subscribe(explode)
    notifications.subscribe(record)
    yield seen
    notifications.unsubscribe(record)
    notifications.unsubscribe(explode)


def test_lifecycle_events_are_published_after_commit(app_context, client, recorder):
    headers = admin_headers()
    (a1,) = register_assets(client, headers, 1)
    tid = open_shipped_ticket(client, headers, [a1])['id']
    (order,) = receive_and_open_orders(client, headers, tid)
    complete_order(client, headers, order['id'])
    # a failing handler never breaks the request
    assert_transition(client, f'/tickets/{tid}/pickup', headers, 200, expected_body_value='CLOSED')

    names = [n for n, _ in recorder]
    assert names.index('ticket.opened') < names.index('repair.completed') < names.index('ticket.closed')
    assert 'pickup.pending' in names
    completed = dict(recorder)['repair.completed']
    assert completed['order_id'] == order['id']
    assert completed['qc_passed'] is True
    assert completed['ticket_id'] == tid


def test_publish_counts_successful_deliveries(recorder):
    assert notifications.publish('ticket.closed', {'ticket_id': 1}) == 1
    assert recorder == [('ticket.closed', {'ticket_id': 1})]
