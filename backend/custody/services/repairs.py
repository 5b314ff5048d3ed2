from __future__ import annotations
"""Repair Workflow: work-order intake, progress, claiming, completion and removal.

Work-order status is written here through ``REPAIR_FSM``; every asset or ticket
status consequence goes through the Synchronization Engine in the same
transaction.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, update, func, or_

from custody import get_db
from custody.config.settings import setting
from custody.models.asset import Asset
from custody.models.maintenance import MaintenanceTask
from custody.models.repair_order import RepairWorkOrder
from custody.models.service_ticket import ServiceTicket
from custody.services.availability import active_order_for, active_ticket_for
from custody.services.errors import Conflict, NotFound, PreconditionFailed, ValidationError
from custody.services.lifecycle import REPAIR_FSM, StatusChange
from custody.services.policy import Actor, assert_org_access, require_override
from custody.services.sync_engine import SyncResult, RepairStarted, RepairCompleted, TicketResync, apply_event, dispatch
from custody.services.transactions import transaction
from custody.services.warranty import calculate_warranty
from custody.utils.clock import resolve_now
from custody.utils.validation import coerce_id_list, coerce_int, validate_status

logger = logging.getLogger(__name__)

TICKET_INTAKE_STATUSES = (
    ServiceTicket.STATUS_RECEIVED, ServiceTicket.STATUS_IN_PROGRESS, ServiceTicket.STATUS_APPROVED_ON_SITE,
)
MAINTENANCE_INTAKE_STATUSES = (MaintenanceTask.STATUS_IN_PROGRESS, MaintenanceTask.STATUS_COMPLETED)
PROGRESS_STATUSES = (RepairWorkOrder.STATUS_DIAGNOSING, RepairWorkOrder.STATUS_ON_PROGRESS)


def get_order(order_id: int, session=None, include_deleted: bool = False) -> RepairWorkOrder:
    session = session or get_db()
    order = session.get(RepairWorkOrder, order_id)
    if order is None or (order.deleted_at is not None and not include_deleted):
        raise NotFound('Work-order not found', order_id=order_id)
    return order


def _live_ticket(session, ticket_id: Optional[int]) -> Optional[ServiceTicket]:
    if ticket_id is None:
        return None
    ticket = session.get(ServiceTicket, ticket_id)
    if ticket is None or ticket.deleted_at is not None:
        return None
    return ticket


def _require_intake_status(asset: Asset, allowed=Asset.INTAKE_STATUSES):
    if asset.status not in allowed:
        raise PreconditionFailed(
            f"Repair intake requires asset status {', '.join(allowed)}",
            asset_id=asset.id, serial_number=asset.serial_number, current_status=asset.status,
        )


def _load_source(session, data: Dict[str, Any]):
    ticket_id = data.get('ticket_id')
    maintenance_id = data.get('maintenance_id')
    if (ticket_id is None) == (maintenance_id is None):
        raise ValidationError('exactly one of ticket_id, maintenance_id required', field='ticket_id')
    if ticket_id is not None:
        ticket = session.get(ServiceTicket, coerce_int(ticket_id, 'ticket_id'))
        if ticket is None or ticket.deleted_at is not None:
            raise NotFound('Ticket not found', ticket_id=ticket_id)
        if ticket.status not in TICKET_INTAKE_STATUSES:
            raise PreconditionFailed(
                'Work-orders need a received or approved ticket',
                ticket_id=ticket.id, current_status=ticket.status, allowed=list(TICKET_INTAKE_STATUSES),
            )
        repair_type = RepairWorkOrder.TYPE_EMERGENCY if ticket.priority == 'CRITICAL' else RepairWorkOrder.TYPE_ON_DEMAND
        return ticket, None, repair_type, ticket.asset_ids, ticket.organization_id
    task = session.get(MaintenanceTask, coerce_int(maintenance_id, 'maintenance_id'))
    if task is None or task.deleted_at is not None:
        raise NotFound('Maintenance task not found', maintenance_id=maintenance_id)
    if task.status not in MAINTENANCE_INTAKE_STATUSES:
        raise PreconditionFailed(
            'Work-orders need a started or completed maintenance task',
            maintenance_id=task.id, current_status=task.status, allowed=list(MAINTENANCE_INTAKE_STATUSES),
        )
    return None, task, task.maintenance_type, task.asset_ids, task.organization_id


def create_from_source(data: Dict[str, Any], actor: Actor, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Create one work-order per asset of a ticket or maintenance task.

    ``asset_ids`` narrows the source's assets. An asset already holding an active
    order for the same source is skipped; an active order tied to any other
    source is soft-deleted and replaced.
    """
    now = resolve_now(now)
    with transaction() as session:
        ticket, task, repair_type, source_assets, org_id = _load_source(session, data)
        assert_org_access(actor, org_id)
        if data.get('asset_ids') is not None:
            asset_ids = coerce_id_list(data['asset_ids'], 'asset_ids', setting('MAX_TICKET_ASSETS'))
            foreign = [a for a in asset_ids if a not in source_assets]
            if foreign:
                raise ValidationError('assets are not part of the source', field='asset_ids', asset_ids=foreign)
        else:
            asset_ids = list(source_assets)
        if not asset_ids:
            raise PreconditionFailed('Source has no assets')

        created: List[RepairWorkOrder] = []
        skipped: List[Dict[str, Any]] = []
        results: List[SyncResult] = []
        for asset_id in asset_ids:
            asset = session.get(Asset, asset_id)
            if asset is None:
                raise NotFound('Asset not found', asset_id=asset_id)
            existing = active_order_for(session, asset_id)
            if existing is not None:
                same_source = (
                    (ticket is not None and existing.ticket_id == ticket.id)
                    or (task is not None and existing.maintenance_id == task.id)
                )
                if same_source:
                    skipped.append({'asset_id': asset_id, 'order_id': existing.id, 'reason': 'active work-order for this source'})
                    continue
            _require_intake_status(asset)
            if existing is not None:
                existing.deleted_at = now
                existing.deleted_by = actor.user_id
                logger.info('work-order %s superseded for asset %s', existing.id, asset_id)
            order = RepairWorkOrder(
                asset_id=asset_id,
                ticket_id=ticket.id if ticket is not None else None,
                maintenance_id=task.id if task is not None else None,
                repair_type=repair_type,
                status=RepairWorkOrder.STATUS_RECEIVED,
                repair_notes=data.get('repair_notes'),
                created_by=actor.user_id,
                created_at=now,
                updated_at=now,
            )
            session.add(order)
            session.flush()
            results.append(apply_event(RepairStarted(order, ticket), now=now, session=session))
            created.append(order)
    dispatch(*results, actor_user_id=actor.user_id)
    return {
        'created': created,
        'skipped': skipped,
        'created_count': len(created),
        'skipped_count': len(skipped),
    }


def open_work_order(asset_id: int, data: Dict[str, Any], actor: Actor, now: Optional[datetime] = None) -> Tuple[RepairWorkOrder, SyncResult]:
    """Walk-in intake for a single asset that is not on a ticket."""
    now = resolve_now(now)
    repair_type = validate_status(data.get('repair_type') or RepairWorkOrder.TYPE_ON_DEMAND, RepairWorkOrder.ALL_TYPES, 'repair_type')
    with transaction() as session:
        asset = session.get(Asset, asset_id)
        if asset is None:
            raise NotFound('Asset not found', asset_id=asset_id)
        assert_org_access(actor, asset.organization_id)
        existing = active_order_for(session, asset.id)
        if existing is not None:
            raise Conflict('Asset already has an active work-order', asset_id=asset.id, order_id=existing.id)
        ticket = active_ticket_for(session, asset.id)
        if ticket is not None:
            raise Conflict('Asset is on an active ticket; create the work-order from the ticket',
                           asset_id=asset.id, ticket_id=ticket.id)
        _require_intake_status(asset, (Asset.STATUS_BAD, Asset.STATUS_IN_TRANSIT_TO_CENTER))
        order = RepairWorkOrder(
            asset_id=asset.id,
            repair_type=repair_type,
            status=RepairWorkOrder.STATUS_RECEIVED,
            repair_notes=data.get('repair_notes'),
            created_by=actor.user_id,
            created_at=now,
            updated_at=now,
        )
        session.add(order)
        session.flush()
        result = apply_event(RepairStarted(order), now=now, session=session)
    dispatch(result, actor_user_id=actor.user_id)
    return order, result


def update_progress(order_id: int, status: str, actor: Actor, notes: Optional[str] = None, now: Optional[datetime] = None) -> RepairWorkOrder:
    now = resolve_now(now)
    validate_status(status, PROGRESS_STATUSES)
    result = SyncResult(event='RepairProgress')
    with transaction() as session:
        order = get_order(order_id, session=session)
        before = order.status
        REPAIR_FSM.assert_can_transition(before, status, entity_id=order.id)
        order.status = status
        order.updated_at = now
        if notes:
            order.repair_notes = notes
        result.changes.append(StatusChange('RepairWorkOrder', order.id, before, status, result.event))
    dispatch(result, actor_user_id=actor.user_id)
    return order


def take_order(order_id: int, actor: Actor, now: Optional[datetime] = None) -> RepairWorkOrder:
    """Claim an active work-order; only one technician wins a concurrent claim."""
    now = resolve_now(now)
    with transaction() as session:
        order = get_order(order_id, session=session)
        if not order.is_active:
            raise Conflict('Work-order is not active', order_id=order.id, current_status=order.status)
        res = session.execute(
            update(RepairWorkOrder)
            .where(
                RepairWorkOrder.id == order_id,
                RepairWorkOrder.deleted_at.is_(None),
                RepairWorkOrder.status.in_(RepairWorkOrder.ACTIVE_STATUSES),
                or_(RepairWorkOrder.assigned_to.is_(None), RepairWorkOrder.assigned_to == actor.user_id),
            )
            .values(assigned_to=actor.user_id, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 0:
            holder = session.execute(
                select(RepairWorkOrder.assigned_to).where(RepairWorkOrder.id == order_id)
            ).scalar_one_or_none()
            raise Conflict('Work-order already taken', order_id=order_id, assigned_to=holder)
    session.refresh(order)
    return order


def complete(order_id: int, data: Dict[str, Any], actor: Actor, now: Optional[datetime] = None) -> Tuple[RepairWorkOrder, SyncResult]:
    """Finish a repair cycle with a quality-check verdict.

    The order always ends COMPLETED; a failed check or a requested replacement
    scraps the asset. Warranty is granted only for a passed check and a
    warranty failure never blocks completion.
    """
    now = resolve_now(now)
    qc_passed = data.get('qc_passed')
    if not isinstance(qc_passed, bool):
        raise ValidationError('qc_passed must be a boolean', field='qc_passed')
    parts = data.get('parts_replaced') or []
    if not isinstance(parts, list):
        raise ValidationError('parts_replaced must be a list', field='parts_replaced')
    replacement_requested = data.get('replacement_requested')
    with transaction() as session:
        order = get_order(order_id, session=session, include_deleted=True)
        if order.status == RepairWorkOrder.STATUS_COMPLETED:
            raise Conflict('Work-order already completed', order_id=order.id, completed_at=order.completed_at.isoformat() if order.completed_at else None)
        ticket = _live_ticket(session, order.ticket_id)
        asset = session.get(Asset, order.asset_id)
        assert_org_access(actor, ticket.organization_id if ticket is not None else asset.organization_id)
        detail = ticket.detail_for(order.asset_id) if ticket is not None else None
        if replacement_requested and detail is not None and not detail.request_replacement:
            detail.request_replacement = True
            detail.replacement_reason = data.get('replacement_reason') or detail.replacement_reason
        # a replacement requested on the ticket cannot be withdrawn at completion
        replacement_requested = bool(replacement_requested) or bool(detail is not None and detail.request_replacement)
        order.qc_passed = qc_passed
        order.parts_replaced = [str(p) for p in parts]
        if data.get('repair_notes'):
            order.repair_notes = data['repair_notes']
        order.repaired_by = actor.user_id
        order.completed_at = now
        if qc_passed and not replacement_requested:
            org_id = ticket.organization_id if ticket is not None else asset.organization_id
            try:
                w = calculate_warranty(org_id, now)
                order.warranty_days = w['period_days']
                order.warranty_start = w['start_date']
                order.warranty_end = w['end_date']
            except Exception:
                logger.warning('warranty calculation failed for work-order %s', order.id, exc_info=True)
        result = apply_event(
            RepairCompleted(order, qc_passed=qc_passed, replacement_requested=bool(replacement_requested), ticket=ticket),
            now=now, session=session,
        )
    dispatch(result, actor_user_id=actor.user_id)
    return order, result


def soft_delete_order(order_id: int, actor: Actor, now: Optional[datetime] = None) -> Tuple[RepairWorkOrder, SyncResult]:
    now = resolve_now(now)
    with transaction() as session:
        order = session.get(RepairWorkOrder, order_id)
        if order is None:
            raise NotFound('Work-order not found', order_id=order_id)
        if order.deleted_at is not None:
            raise Conflict('Work-order is already deleted', order_id=order.id)
        if order.status == RepairWorkOrder.STATUS_COMPLETED:
            require_override(actor, 'Deleting a completed work-order', order_id=order.id)
        order.deleted_at = now
        order.deleted_by = actor.user_id
        ticket = _live_ticket(session, order.ticket_id)
        if ticket is not None:
            result = apply_event(TicketResync(ticket), now=now, session=session)
        else:
            result = SyncResult(event='WorkOrderDeleted')
    dispatch(result, actor_user_id=actor.user_id)
    return order, result


def repair_statistics(session=None, organization_ids: Optional[List[int]] = None) -> Dict[str, Any]:
    session = session or get_db()
    q = select(RepairWorkOrder.status, func.count(RepairWorkOrder.id)).where(RepairWorkOrder.deleted_at.is_(None))
    qc = select(RepairWorkOrder.qc_passed, func.count(RepairWorkOrder.id)).where(
        RepairWorkOrder.deleted_at.is_(None),
        RepairWorkOrder.status == RepairWorkOrder.STATUS_COMPLETED,
    )
    if organization_ids:
        scope = select(Asset.id).where(Asset.organization_id.in_(organization_ids))
        q = q.where(RepairWorkOrder.asset_id.in_(scope))
        qc = qc.where(RepairWorkOrder.asset_id.in_(scope))
    by_status = {s: 0 for s in RepairWorkOrder.ALL_STATUSES}
    for status, n in session.execute(q.group_by(RepairWorkOrder.status)):
        by_status[status] = n
    qc_counts = {'passed': 0, 'failed': 0}
    for passed, n in session.execute(qc.group_by(RepairWorkOrder.qc_passed)):
        qc_counts['passed' if passed else 'failed'] += n
    return {
        'total': sum(by_status.values()),
        'by_status': by_status,
        'active': sum(by_status[s] for s in RepairWorkOrder.ACTIVE_STATUSES),
        'qc': qc_counts,
    }
