from __future__ import annotations
"""Can an asset be attached to a new ticket or maintenance task?

    available = status != SCRAPPED
        and no active ticket, maintenance task or work-order
        and (status not in the repair-process statuses
             or the asset's most recent ticket has a confirmed return)

A confirmed return supersedes a stale in-transit status left behind by a missed
update; it never overrides a live ticket, task or work-order. The batch variant
evaluates every id independently.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from custody import get_db
from custody.config.settings import setting
from custody.models.asset import Asset
from custody.models.service_ticket import ServiceTicket, TicketAssetDetail
from custody.models.repair_order import RepairWorkOrder
from custody.models.maintenance import MaintenanceTask, MaintenanceAssetDetail
from custody.services.errors import CustodyError, NotFound, ValidationError
from custody.utils.validation import coerce_int

logger = logging.getLogger(__name__)


def active_ticket_for(session, asset_id: int, exclude_ticket_id: Optional[int] = None) -> Optional[ServiceTicket]:
    q = (
        select(ServiceTicket)
        .join(TicketAssetDetail, TicketAssetDetail.ticket_id == ServiceTicket.id)
        .where(
            TicketAssetDetail.asset_id == asset_id,
            ServiceTicket.deleted_at.is_(None),
            ServiceTicket.status != ServiceTicket.STATUS_CLOSED,
        )
        .order_by(ServiceTicket.created_at.desc(), ServiceTicket.id.desc())
    )
    if exclude_ticket_id is not None:
        q = q.where(ServiceTicket.id != exclude_ticket_id)
    return session.execute(q).scalars().first()


def active_maintenance_for(session, asset_id: int, exclude_task_id: Optional[int] = None) -> Optional[MaintenanceTask]:
    q = (
        select(MaintenanceTask)
        .join(MaintenanceAssetDetail, MaintenanceAssetDetail.task_id == MaintenanceTask.id)
        .where(
            MaintenanceAssetDetail.asset_id == asset_id,
            MaintenanceTask.deleted_at.is_(None),
            MaintenanceTask.status.in_(MaintenanceTask.ACTIVE_STATUSES),
        )
        .order_by(MaintenanceTask.id.desc())
    )
    if exclude_task_id is not None:
        q = q.where(MaintenanceTask.id != exclude_task_id)
    return session.execute(q).scalars().first()


def active_order_for(session, asset_id: int) -> Optional[RepairWorkOrder]:
    return session.execute(
        select(RepairWorkOrder)
        .where(
            RepairWorkOrder.asset_id == asset_id,
            RepairWorkOrder.deleted_at.is_(None),
            RepairWorkOrder.status.in_(RepairWorkOrder.ACTIVE_STATUSES),
        )
        .order_by(RepairWorkOrder.created_at.desc(), RepairWorkOrder.id.desc())
    ).scalars().first()


def latest_ticket_for(session, asset_id: int) -> Optional[ServiceTicket]:
    return session.execute(
        select(ServiceTicket)
        .join(TicketAssetDetail, TicketAssetDetail.ticket_id == ServiceTicket.id)
        .where(TicketAssetDetail.asset_id == asset_id, ServiceTicket.deleted_at.is_(None))
        .order_by(ServiceTicket.created_at.desc(), ServiceTicket.id.desc())
    ).scalars().first()


def assess(session, asset: Asset) -> Dict[str, Any]:
    ticket = active_ticket_for(session, asset.id)
    task = active_maintenance_for(session, asset.id)
    order = active_order_for(session, asset.id)
    in_process = asset.status in Asset.IN_PROCESS_STATUSES
    latest = latest_ticket_for(session, asset.id)
    ret = latest.return_record if latest is not None else None
    return_received = bool(ret is not None and ret.deleted_at is None and ret.received_in_field is not None)

    reason = None
    if asset.status == Asset.STATUS_SCRAPPED:
        reason = 'asset is scrapped'
    elif ticket is not None:
        reason = f'asset has an active ticket {ticket.ticket_number} ({ticket.status})'
    elif task is not None:
        reason = f'asset has an active maintenance task {task.task_number} ({task.status})'
    elif order is not None:
        reason = f'asset has an active work-order #{order.id} ({order.status})'
    elif in_process and not return_received:
        reason = f'asset is in the repair process ({asset.status})'

    return {
        'asset_id': asset.id,
        'serial_number': asset.serial_number,
        'status': asset.status,
        'available': reason is None,
        'in_repair_process': in_process,
        'return_received': return_received,
        'active_ticket': {'id': ticket.id, 'ticket_number': ticket.ticket_number, 'status': ticket.status} if ticket else None,
        'active_maintenance': {'id': task.id, 'task_number': task.task_number, 'status': task.status} if task else None,
        'active_repair': {'id': order.id, 'status': order.status, 'ticket_id': order.ticket_id} if order else None,
        'reason': reason,
    }


def check_availability(asset_id: int, session=None) -> Dict[str, Any]:
    session = session or get_db()
    asset = session.get(Asset, asset_id)
    if asset is None:
        raise NotFound('Asset not found', asset_id=asset_id)
    return assess(session, asset)


def check_availability_batch(asset_ids: List[Any], session=None) -> List[Dict[str, Any]]:
    """One result per requested id, in request order; errors stay per item."""
    if not isinstance(asset_ids, list) or not asset_ids:
        raise ValidationError('asset_ids must be a non-empty list', field='asset_ids')
    limit = setting('AVAILABILITY_BATCH_LIMIT')
    if len(asset_ids) > limit:
        raise ValidationError(
            f'at most {limit} asset ids per batch', field='asset_ids', count=len(asset_ids), max_items=limit,
        )
    session = session or get_db()
    results: List[Dict[str, Any]] = []
    for raw in asset_ids:
        try:
            results.append(check_availability(coerce_int(raw, 'asset_id'), session=session))
        except CustodyError as e:
            logger.debug('availability check failed for %r: %s', raw, e.description)
            results.append({'asset_id': raw, 'available': False, 'error': e.to_dict()})
    return results
