import pytest

from custody.services.errors import InvalidTransition
from custody.services.lifecycle import ASSET_FSM, TICKET_FSM, REPAIR_FSM, MAINTENANCE_FSM
from custody.utils.fsm import TransitionValidator


def test_transition_validator_allows_valid():
    fsm = TransitionValidator({'A': {'B'}, 'B': set()})
    assert fsm.assert_can_transition('A', 'B') is True


def test_transition_validator_blocks_invalid():
    fsm = TransitionValidator({'A': {'B'}, 'B': set()}, entity='Thing')
    with pytest.raises(InvalidTransition) as exc:
        fsm.assert_can_transition('A', 'C', entity_id=5)
    err = exc.value
    assert err.code == 409
    assert err.context == {
        'entity': 'Thing', 'entity_id': 5, 'current_status': 'A', 'target_status': 'C', 'allowed': ['B'],
    }


def test_terminal_states():
    assert set(TICKET_FSM.terminal_states()) == {'CLOSED'}
    assert set(REPAIR_FSM.terminal_states()) == {'COMPLETED', 'SCRAPPED'}
    assert set(MAINTENANCE_FSM.terminal_states()) == {'COMPLETED', 'CANCELLED'}
    assert 'SCRAPPED' in ASSET_FSM.terminal_states()


def test_ticket_cannot_skip_the_delivery_phase():
    assert not TICKET_FSM.can_transition('OPEN', 'RECEIVED')
    assert not TICKET_FSM.can_transition('IN_DELIVERY', 'RESOLVED')
    assert TICKET_FSM.can_transition('RESOLVED', 'IN_PROGRESS')
    assert not TICKET_FSM.can_transition('CLOSED', 'OPEN')
