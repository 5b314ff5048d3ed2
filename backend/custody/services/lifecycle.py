from __future__ import annotations
"""Transition graphs for every status-bearing record, plus the status-change record
the Synchronization Engine emits for audit."""
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

from custody.utils.fsm import TransitionValidator
from custody.models.asset import Asset
from custody.models.service_ticket import ServiceTicket
from custody.models.repair_order import RepairWorkOrder
from custody.models.maintenance import MaintenanceTask

ASSET_FSM = TransitionValidator({
    Asset.STATUS_OK: {Asset.STATUS_BAD, Asset.STATUS_IN_TRANSIT_TO_CENTER},
    Asset.STATUS_BAD: {Asset.STATUS_IN_TRANSIT_TO_CENTER, Asset.STATUS_IN_REPAIR},
    Asset.STATUS_IN_TRANSIT_TO_CENTER: {Asset.STATUS_IN_REPAIR},
    Asset.STATUS_IN_REPAIR: {Asset.STATUS_READY_FOR_PICKUP, Asset.STATUS_SCRAPPED, Asset.STATUS_OK},
    Asset.STATUS_READY_FOR_PICKUP: {Asset.STATUS_OK, Asset.STATUS_IN_TRANSIT_TO_FIELD},
    Asset.STATUS_IN_TRANSIT_TO_FIELD: {Asset.STATUS_OK},
    Asset.STATUS_SCRAPPED: set(),
}, entity='Asset')

TICKET_FSM = TransitionValidator({
    ServiceTicket.STATUS_OPEN: {ServiceTicket.STATUS_IN_DELIVERY, ServiceTicket.STATUS_PENDING_APPROVAL},
    ServiceTicket.STATUS_PENDING_APPROVAL: {ServiceTicket.STATUS_APPROVED_ON_SITE, ServiceTicket.STATUS_OPEN},
    ServiceTicket.STATUS_APPROVED_ON_SITE: {ServiceTicket.STATUS_IN_PROGRESS, ServiceTicket.STATUS_RESOLVED},
    ServiceTicket.STATUS_IN_DELIVERY: {ServiceTicket.STATUS_RECEIVED},
    ServiceTicket.STATUS_RECEIVED: {ServiceTicket.STATUS_IN_PROGRESS, ServiceTicket.STATUS_RESOLVED},
    ServiceTicket.STATUS_IN_PROGRESS: {ServiceTicket.STATUS_RESOLVED},
    ServiceTicket.STATUS_RESOLVED: {
        ServiceTicket.STATUS_IN_PROGRESS, ServiceTicket.STATUS_RETURN_SHIPPED, ServiceTicket.STATUS_CLOSED,
    },
    ServiceTicket.STATUS_RETURN_SHIPPED: {ServiceTicket.STATUS_CLOSED},
    ServiceTicket.STATUS_CLOSED: set(),
}, entity='ServiceTicket')

REPAIR_FSM = TransitionValidator({
    RepairWorkOrder.STATUS_RECEIVED: {
        RepairWorkOrder.STATUS_DIAGNOSING, RepairWorkOrder.STATUS_ON_PROGRESS,
        RepairWorkOrder.STATUS_COMPLETED, RepairWorkOrder.STATUS_SCRAPPED,
    },
    RepairWorkOrder.STATUS_DIAGNOSING: {
        RepairWorkOrder.STATUS_ON_PROGRESS, RepairWorkOrder.STATUS_COMPLETED, RepairWorkOrder.STATUS_SCRAPPED,
    },
    RepairWorkOrder.STATUS_ON_PROGRESS: {RepairWorkOrder.STATUS_COMPLETED, RepairWorkOrder.STATUS_SCRAPPED},
    RepairWorkOrder.STATUS_COMPLETED: set(),
    RepairWorkOrder.STATUS_SCRAPPED: set(),
}, entity='RepairWorkOrder')

MAINTENANCE_FSM = TransitionValidator({
    MaintenanceTask.STATUS_SCHEDULED: {
        MaintenanceTask.STATUS_IN_PROGRESS, MaintenanceTask.STATUS_CANCELLED, MaintenanceTask.STATUS_RESCHEDULED,
    },
    MaintenanceTask.STATUS_RESCHEDULED: {
        MaintenanceTask.STATUS_RESCHEDULED, MaintenanceTask.STATUS_IN_PROGRESS, MaintenanceTask.STATUS_CANCELLED,
    },
    MaintenanceTask.STATUS_IN_PROGRESS: {MaintenanceTask.STATUS_COMPLETED, MaintenanceTask.STATUS_CANCELLED},
    MaintenanceTask.STATUS_COMPLETED: set(),
    MaintenanceTask.STATUS_CANCELLED: set(),
}, entity='MaintenanceTask')


@dataclass(frozen=True)
class StatusChange:
    entity: str
    entity_id: int
    before: Optional[str]
    after: str
    event: str
    forced: bool = False

    def as_meta(self) -> Dict[str, Any]:
        data = asdict(self)
        return {
            'event': data['event'],
            'before': {'status': data['before']},
            'after': {'status': data['after']},
            'forced': data['forced'],
        }

__all__ = ['ASSET_FSM', 'TICKET_FSM', 'REPAIR_FSM', 'MAINTENANCE_FSM', 'StatusChange']
