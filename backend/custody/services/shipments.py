from __future__ import annotations
"""Shipment Tracker: the delivery leg to the repair center and the return leg back.

Each operation writes its record and applies the matching lifecycle event in one
transaction. A record that already exists is a Conflict; a ticket in the wrong
status is a PreconditionFailed carrying the current status.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from custody.models.service_ticket import ServiceTicket
from custody.models.shipment import DeliveryRecord, ReturnRecord
from custody.services.errors import Conflict, PreconditionFailed
from custody.services.policy import Actor, assert_org_access
from custody.services.sync_engine import (
    SyncResult, DeliveryCreated, DeliveryReceived, PickupConfirmed, ReturnShipped, ReturnReceived,
    apply_event, dispatch,
)
from custody.services.tickets import get_ticket, parse_delivery
from custody.services.transactions import transaction
from custody.utils.clock import resolve_now
from custody.utils.validation import require_fields, validate_status

logger = logging.getLogger(__name__)


def _live(record):
    return record if record is not None and record.deleted_at is None else None


def _load(session, ticket_id: int, actor: Actor) -> ServiceTicket:
    ticket = get_ticket(ticket_id, session=session)
    assert_org_access(actor, ticket.organization_id)
    return ticket


def create_delivery(ticket_id: int, data: Dict[str, Any], actor: Actor, now: Optional[datetime] = None) -> Tuple[DeliveryRecord, SyncResult]:
    now = resolve_now(now)
    fields = parse_delivery({'delivery': data or {'method': DeliveryRecord.METHOD_SELF_DELIVERY}})
    with transaction() as session:
        ticket = _load(session, ticket_id, actor)
        existing = _live(ticket.delivery)
        if existing is not None:
            raise Conflict('Ticket already has a delivery record', ticket_id=ticket.id, delivery_id=existing.id)
        if ticket.repair_location == ServiceTicket.LOCATION_ON_SITE:
            raise PreconditionFailed('On-site tickets are not shipped', ticket_id=ticket.id, current_status=ticket.status)
        rec = DeliveryRecord(ticket=ticket, shipped_at=now, created_at=now, sent_by=actor.user_id, **fields)
        session.add(rec)
        result = apply_event(DeliveryCreated(ticket), now=now, session=session)
    dispatch(result, actor_user_id=actor.user_id)
    return rec, result


def receive_delivery(ticket_id: int, actor: Actor, notes: Optional[str] = None, now: Optional[datetime] = None) -> Tuple[DeliveryRecord, SyncResult]:
    now = resolve_now(now)
    with transaction() as session:
        ticket = _load(session, ticket_id, actor)
        rec = _live(ticket.delivery)
        if rec is None:
            raise PreconditionFailed('Ticket has no delivery record', ticket_id=ticket.id, current_status=ticket.status)
        if rec.received_at_center is not None:
            raise Conflict('Delivery already received', ticket_id=ticket.id, received_at=rec.received_at_center.isoformat())
        rec.received_at_center = now
        rec.received_by = actor.user_id
        if notes:
            rec.notes = notes
        result = apply_event(DeliveryReceived(ticket), now=now, session=session)
    dispatch(result, actor_user_id=actor.user_id)
    return rec, result


def _new_return(session, ticket: ServiceTicket, **fields) -> ReturnRecord:
    existing = _live(ticket.return_record)
    if existing is not None:
        raise Conflict('Ticket already has a return record', ticket_id=ticket.id, return_id=existing.id)
    rec = ReturnRecord(ticket=ticket, **fields)
    session.add(rec)
    return rec


def confirm_pickup(ticket_id: int, actor: Actor, notes: Optional[str] = None, now: Optional[datetime] = None) -> Tuple[ReturnRecord, SyncResult]:
    """Owner collects the assets at the repair center; the ticket closes."""
    now = resolve_now(now)
    with transaction() as session:
        ticket = _load(session, ticket_id, actor)
        rec = _new_return(
            session, ticket,
            method=ReturnRecord.METHOD_PICKUP, shipped_at=now, sent_by=actor.user_id,
            received_in_field=now, received_by=actor.user_id, notes=notes, created_at=now,
        )
        result = apply_event(PickupConfirmed(ticket), now=now, session=session)
    dispatch(result, actor_user_id=actor.user_id)
    return rec, result


def ship_return(ticket_id: int, data: Dict[str, Any], actor: Actor, now: Optional[datetime] = None) -> Tuple[ReturnRecord, SyncResult]:
    now = resolve_now(now)
    data = data or {}
    method = validate_status(data.get('method') or ReturnRecord.METHOD_COURIER, (ReturnRecord.METHOD_COURIER,), 'method')
    require_fields(data, 'courier_service', 'tracking_number')
    with transaction() as session:
        ticket = _load(session, ticket_id, actor)
        rec = _new_return(
            session, ticket,
            method=method, courier_service=data['courier_service'], tracking_number=data['tracking_number'],
            shipped_at=now, sent_by=actor.user_id, notes=data.get('notes'), created_at=now,
        )
        result = apply_event(ReturnShipped(ticket), now=now, session=session)
    dispatch(result, actor_user_id=actor.user_id)
    return rec, result


def receive_return(ticket_id: int, actor: Actor, notes: Optional[str] = None, now: Optional[datetime] = None) -> Tuple[ReturnRecord, SyncResult]:
    """Field confirms the returned assets arrived. Replays are rejected."""
    now = resolve_now(now)
    with transaction() as session:
        ticket = _load(session, ticket_id, actor)
        rec = _live(ticket.return_record)
        if ticket.status == ServiceTicket.STATUS_CLOSED or (rec is not None and rec.received_in_field is not None):
            raise Conflict(
                'Return already received', ticket_id=ticket.id, current_status=ticket.status,
                received_at=rec.received_in_field.isoformat() if rec is not None and rec.received_in_field else None,
            )
        if rec is None:
            raise PreconditionFailed('Ticket has no return shipment', ticket_id=ticket.id, current_status=ticket.status)
        rec.received_in_field = now
        rec.received_by = actor.user_id
        if notes:
            rec.notes = notes
        result = apply_event(ReturnReceived(ticket), now=now, session=session)
    dispatch(result, actor_user_id=actor.user_id)
    logger.info('return received for ticket %s', ticket.ticket_number)
    return rec, result
