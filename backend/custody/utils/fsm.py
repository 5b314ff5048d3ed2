from __future__ import annotations
"""Finite state machine utility for enforcing allowed status transitions.

Used for every status-bearing record (Asset, ServiceTicket, RepairWorkOrder,
MaintenanceTask). Usage:
    from custody.utils.fsm import TransitionValidator
    REPAIR_FSM = TransitionValidator({
        'RECEIVED': {'DIAGNOSING', 'COMPLETED'},
        'DIAGNOSING': {'COMPLETED'},
        'COMPLETED': set(),
    }, entity='RepairWorkOrder')
    REPAIR_FSM.assert_can_transition(order.status, 'COMPLETED', entity_id=order.id)

Raises InvalidTransition (409) if the edge is not in the graph.
"""
from typing import Dict, Iterable, List, Optional, Set
from custody.services.errors import InvalidTransition


class TransitionValidator:
    def __init__(self, graph: Dict[str, Set[str]], field_name: str = 'status', entity: Optional[str] = None):
        self.graph = graph
        self.field_name = field_name
        self.entity = entity

    def can_transition(self, current: str, target: str) -> bool:
        return target in self.graph.get(current, set())

    def assert_can_transition(self, current: str, target: str, entity_id=None):
        if not self.can_transition(current, target):
            label = f"{self.entity} " if self.entity else ''
            raise InvalidTransition(
                f"Invalid {label}{self.field_name} transition {current} -> {target}",
                entity=self.entity,
                entity_id=entity_id,
                current_status=current,
                target_status=target,
                allowed=sorted(self.graph.get(current, set())),
            )
        return True

    def states(self) -> List[str]:
        seen: List[str] = []
        for src, targets in self.graph.items():
            for s in [src, *sorted(targets)]:
                if s not in seen:
                    seen.append(s)
        return seen

    def terminal_states(self) -> Iterable[str]:
        return [s for s in self.states() if not self.graph.get(s)]

__all__ = ['TransitionValidator']
