from __future__ import annotations
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, func

from custody import get_db
from custody.config.settings import setting
from custody.models.asset import Asset
from custody.models.service_ticket import ServiceTicket, TicketAssetDetail
from custody.models.shipment import DeliveryRecord
from custody.services import availability
from custody.services.errors import Conflict, NotFound, PreconditionFailed, ValidationError
from custody.services.policy import Actor, assert_org_access, require_override
from custody.services.sync_engine import SyncResult, TicketOpened, OnSiteDecision, TicketDeleted, apply_event, dispatch
from custody.services.transactions import transaction
from custody.utils.clock import resolve_now
from custody.utils.validation import coerce_id_list, coerce_int, require_fields, validate_status

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ('title', 'description', 'priority')


def generate_ticket_number(session, now: datetime) -> str:
    prefix = f"TKT-{now:%y%m%d}-"
    count = session.execute(
        select(func.count(ServiceTicket.id)).where(ServiceTicket.ticket_number.like(prefix + '%'))
    ).scalar_one()
    return f"{prefix}{count + 1:04d}"


def get_ticket(ticket_id: int, session=None, include_deleted: bool = False) -> ServiceTicket:
    session = session or get_db()
    t = session.get(ServiceTicket, ticket_id)
    if t is None or (t.deleted_at is not None and not include_deleted):
        raise NotFound('Ticket not found', ticket_id=ticket_id)
    return t


def _parse_asset_entries(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Accepts ``assets: [{asset_id, request_replacement, ...}]`` or plain ``asset_ids``."""
    limit = setting('MAX_TICKET_ASSETS')
    raw_entries = data.get('assets')
    if raw_entries is None:
        ids = coerce_id_list(data.get('asset_ids'), 'asset_ids', limit)
        return [{'asset_id': i} for i in ids]
    if not isinstance(raw_entries, list) or not raw_entries:
        raise ValidationError('assets must be a non-empty list', field='assets')
    entries: Dict[int, Dict[str, Any]] = {}
    for raw in raw_entries:
        if not isinstance(raw, dict):
            raise ValidationError('each asset entry must be an object', field='assets')
        asset_id = coerce_int(raw.get('asset_id'), 'asset_id')
        if asset_id in entries:
            continue
        entries[asset_id] = {
            'asset_id': asset_id,
            'request_replacement': bool(raw.get('request_replacement')),
            'replacement_reason': raw.get('replacement_reason'),
            'issue_notes': raw.get('issue_notes'),
        }
    if len(entries) > limit:
        raise ValidationError(f'at most {limit} assets per ticket', field='assets', count=len(entries), max_items=limit)
    return list(entries.values())


def parse_delivery(data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    delivery = data.get('delivery')
    if not delivery:
        return None
    if not isinstance(delivery, dict):
        raise ValidationError('delivery must be an object', field='delivery')
    method = validate_status(delivery.get('method') or DeliveryRecord.METHOD_COURIER, DeliveryRecord.ALL_METHODS)
    if method == DeliveryRecord.METHOD_COURIER:
        require_fields(delivery, 'courier_service', 'tracking_number')
    return {
        'method': method,
        'courier_service': delivery.get('courier_service') if method == DeliveryRecord.METHOD_COURIER else None,
        'tracking_number': delivery.get('tracking_number') if method == DeliveryRecord.METHOD_COURIER else None,
        'notes': delivery.get('notes'),
    }


def _rejection(info: Dict[str, Any]) -> Dict[str, Any]:
    return {k: info.get(k) for k in ('asset_id', 'serial_number', 'status', 'reason', 'active_ticket', 'active_maintenance', 'active_repair')}


def create_ticket(data: Dict[str, Any], actor: Actor, now: Optional[datetime] = None) -> Tuple[ServiceTicket, SyncResult, List[Dict[str, Any]]]:
    """Open a ticket for 1..MAX_TICKET_ASSETS available assets.

    With delivery info every asset must be available (all-or-nothing) and the
    assets leave immediately for the repair center. Without it, unavailable
    assets are reported in ``rejected`` and the ticket opens with the rest.
    """
    now = resolve_now(now)
    require_fields(data, 'title')
    entries = _parse_asset_entries(data)
    delivery = parse_delivery(data)
    location = validate_status(data.get('repair_location') or ServiceTicket.LOCATION_REPAIR_CENTER, ServiceTicket.ALL_LOCATIONS)
    priority = validate_status(data.get('priority') or 'MEDIUM', ServiceTicket.PRIORITIES)
    if location == ServiceTicket.LOCATION_ON_SITE and delivery is not None:
        raise ValidationError('on-site tickets cannot carry delivery info', field='delivery')

    with transaction() as session:
        accepted, rejected = [], []
        for entry in entries:
            asset = session.get(Asset, entry['asset_id'])
            if asset is None:
                raise NotFound('Asset not found', asset_id=entry['asset_id'])
            assert_org_access(actor, asset.organization_id)
            info = availability.assess(session, asset)
            if info['available']:
                accepted.append((asset, entry))
            else:
                rejected.append(_rejection(info))
        if rejected and (delivery is not None or not accepted):
            raise PreconditionFailed(
                'Assets are not available for a new ticket',
                rejected=rejected, all_or_nothing=delivery is not None,
            )
        org_id = data.get('organization_id')
        if org_id is None:
            org_id = accepted[0][0].organization_id
        assert_org_access(actor, org_id)
        ticket = ServiceTicket(
            ticket_number=generate_ticket_number(session, now),
            status=ServiceTicket.STATUS_OPEN,
            title=data['title'],
            description=data.get('description'),
            priority=priority,
            repair_location=location,
            organization_id=org_id,
            reported_by=actor.user_id,
            created_at=now,
            updated_at=now,
        )
        for asset, entry in accepted:
            ticket.details.append(TicketAssetDetail(
                asset_id=asset.id,
                request_replacement=entry.get('request_replacement', False),
                replacement_reason=entry.get('replacement_reason'),
                issue_notes=entry.get('issue_notes'),
            ))
        session.add(ticket)
        if delivery is not None:
            session.add(DeliveryRecord(ticket=ticket, shipped_at=now, created_at=now, sent_by=actor.user_id, **delivery))
        session.flush()
        result = apply_event(TicketOpened(ticket, has_shipment=delivery is not None), now=now, session=session)
    dispatch(result, actor_user_id=actor.user_id)
    if rejected:
        logger.info('ticket %s opened without %d unavailable assets', ticket.ticket_number, len(rejected))
    return ticket, result, rejected


def _decide_on_site(ticket_id: int, actor: Actor, approved: bool, reason: Optional[str], now) -> Tuple[ServiceTicket, SyncResult]:
    now = resolve_now(now)
    with transaction() as session:
        ticket = get_ticket(ticket_id, session=session)
        assert_org_access(actor, ticket.organization_id)
        result = apply_event(OnSiteDecision(ticket, approved=approved, reason=reason), now=now, session=session)
    dispatch(result, actor_user_id=actor.user_id)
    return ticket, result


def approve_on_site(ticket_id: int, actor: Actor, now: Optional[datetime] = None):
    return _decide_on_site(ticket_id, actor, True, None, now)


def reject_on_site(ticket_id: int, actor: Actor, reason: str, now: Optional[datetime] = None):
    """Send an on-site request back to OPEN as a repair-center ticket."""
    if not reason:
        raise ValidationError('reason required', field='reason')
    return _decide_on_site(ticket_id, actor, False, reason, now)


def update_ticket(ticket_id: int, data: Dict[str, Any], actor: Actor, now: Optional[datetime] = None) -> ServiceTicket:
    if 'status' in data:
        raise ValidationError('status is driven by lifecycle events', field='status')
    now = resolve_now(now)
    with transaction() as session:
        ticket = get_ticket(ticket_id, session=session)
        assert_org_access(actor, ticket.organization_id)
        if ticket.status == ServiceTicket.STATUS_CLOSED:
            raise Conflict('Closed tickets cannot be edited', ticket_id=ticket.id, current_status=ticket.status)
        changed = False
        for key in EDITABLE_FIELDS:
            if key not in data:
                continue
            value = data[key]
            if key == 'priority':
                value = validate_status(value, ServiceTicket.PRIORITIES)
            if key == 'title' and not value:
                raise ValidationError('title cannot be empty', field='title')
            if getattr(ticket, key) != value:
                setattr(ticket, key, value)
                changed = True
        if changed:
            ticket.updated_at = now
    return ticket


def soft_delete_ticket(ticket_id: int, actor: Actor, now: Optional[datetime] = None) -> Tuple[ServiceTicket, SyncResult]:
    """Soft-delete a ticket and compensate everything it set in motion.

    Delivery/return records and the ticket's active work-orders are soft-deleted
    and its assets return to OK in one transaction. An asset already held by
    another live ticket or work-order keeps its status.
    """
    now = resolve_now(now)
    with transaction() as session:
        ticket = session.get(ServiceTicket, ticket_id)
        if ticket is None:
            raise NotFound('Ticket not found', ticket_id=ticket_id)
        if ticket.deleted_at is not None:
            raise Conflict('Ticket is already deleted', ticket_id=ticket.id, deleted_at=ticket.deleted_at.isoformat())
        assert_org_access(actor, ticket.organization_id)
        if ticket.status == ServiceTicket.STATUS_CLOSED:
            require_override(actor, 'Deleting a closed ticket', ticket_id=ticket.id)
        result = apply_event(TicketDeleted(ticket, deleted_by=actor.user_id), now=now, session=session)
    dispatch(result, actor_user_id=actor.user_id)
    logger.info('ticket %s soft-deleted: %s', ticket.ticket_number, result.counts)
    return ticket, result
