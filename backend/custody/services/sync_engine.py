from __future__ import annotations
"""Status Synchronization Engine.

Every lifecycle event goes through :func:`apply_event`, which looks the event type
up in ``EVENT_HANDLERS`` and applies the resulting asset / work-order / ticket
statuses inside the caller's transaction. Nothing here commits: the caller's
``transaction()`` block decides, so a precondition failure anywhere aborts every
status written for the event.

After the caller commits, :func:`dispatch` writes the audit snapshots and
publishes notifications; both are advisory.

Asset status table:

    TicketOpened (no shipment)        OK|BAD -> BAD
    TicketOpened (shipment info)      OK|BAD -> IN_TRANSIT_TO_CENTER, ticket -> IN_DELIVERY
    OnSiteDecision                    ticket PENDING_APPROVAL -> APPROVED_ON_SITE | OPEN
    DeliveryCreated                   OK|BAD -> IN_TRANSIT_TO_CENTER, ticket OPEN -> IN_DELIVERY
    DeliveryReceived                  -> IN_REPAIR (SCRAPPED untouched), ticket IN_DELIVERY -> RECEIVED
    RepairStarted                     -> IN_REPAIR, ticket re-derived
    RepairCompleted (replacement)     -> SCRAPPED
    RepairCompleted (qc passed)       -> READY_FOR_PICKUP (OK when no ticket)
    RepairCompleted (qc failed)       -> SCRAPPED
    PickupConfirmed                   READY_FOR_PICKUP -> OK, ticket -> CLOSED
    ReturnShipped                     READY_FOR_PICKUP -> IN_TRANSIT_TO_FIELD, ticket -> RETURN_SHIPPED
    ReturnReceived                    IN_TRANSIT_TO_FIELD -> OK, ticket RETURN_SHIPPED -> CLOSED
    TicketDeleted                     the ticket's active orders soft-deleted, its assets -> OK
                                      unless another live ticket or order holds them

Opening a ticket accepts BAD as well as OK assets: an asset reported broken
through AssetMarkedBroken is BAD before anyone files the ticket for it.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import select

from custody import get_db
from custody.models.asset import Asset
from custody.models.service_ticket import ServiceTicket
from custody.models.repair_order import RepairWorkOrder
from custody.services import audit, notifications
from custody.services.availability import active_order_for, active_ticket_for
from custody.services.errors import Conflict, PreconditionFailed
from custody.services.lifecycle import ASSET_FSM, TICKET_FSM, REPAIR_FSM, StatusChange
from custody.services.resolution import snapshot_for, derive_ticket_status, find_replacement
from custody.utils.clock import resolve_now

logger = logging.getLogger(__name__)


# ---------------- Events ---------------- #

@dataclass(frozen=True)
class TicketOpened:
    ticket: ServiceTicket
    has_shipment: bool = False


@dataclass(frozen=True)
class OnSiteDecision:
    ticket: ServiceTicket
    approved: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class DeliveryCreated:
    ticket: ServiceTicket


@dataclass(frozen=True)
class DeliveryReceived:
    ticket: ServiceTicket


@dataclass(frozen=True)
class RepairStarted:
    order: RepairWorkOrder
    ticket: Optional[ServiceTicket] = None


@dataclass(frozen=True)
class RepairCompleted:
    order: RepairWorkOrder
    qc_passed: bool
    replacement_requested: bool = False
    ticket: Optional[ServiceTicket] = None


@dataclass(frozen=True)
class PickupConfirmed:
    ticket: ServiceTicket


@dataclass(frozen=True)
class ReturnShipped:
    ticket: ServiceTicket


@dataclass(frozen=True)
class ReturnReceived:
    ticket: ServiceTicket


@dataclass(frozen=True)
class TicketDeleted:
    ticket: ServiceTicket
    deleted_by: Optional[int] = None


@dataclass(frozen=True)
class AssetMarkedBroken:
    asset: Asset


@dataclass(frozen=True)
class ReplacementRegistered:
    new_asset: Asset
    old_asset: Asset
    ticket: Optional[ServiceTicket] = None


@dataclass(frozen=True)
class TicketResync:
    ticket: ServiceTicket


@dataclass
class SyncResult:
    event: str
    asset_statuses: Dict[int, str] = field(default_factory=dict)
    ticket_status: Optional[str] = None
    changes: List[StatusChange] = field(default_factory=list)
    notifications: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)

    @property
    def ticket_changed(self) -> bool:
        return any(c.entity == 'ServiceTicket' for c in self.changes)

    def as_dict(self) -> Dict[str, Any]:
        return {
            'event': self.event,
            'asset_statuses': {str(k): v for k, v in self.asset_statuses.items()},
            'ticket_status': self.ticket_status,
            'counts': dict(self.counts),
        }


# ---------------- Apply context ---------------- #

class _Apply:
    def __init__(self, session, event_name: str, now: datetime):
        self.session = session
        self.now = now
        self.result = SyncResult(event=event_name)

    def _record(self, entity: str, entity_id: int, before: Optional[str], after: str, forced: bool = False):
        self.result.changes.append(StatusChange(entity, entity_id, before, after, self.result.event, forced))
        logger.debug('%s %s#%s %s -> %s%s', self.result.event, entity, entity_id, before, after, ' (forced)' if forced else '')

    def set_asset(self, asset: Asset, target: str, force: bool = False):
        before = asset.status
        if before != target:
            if not force:
                ASSET_FSM.assert_can_transition(before, target, entity_id=asset.id)
            asset.status = target
            asset.updated_at = self.now
            self._record('Asset', asset.id, before, target, forced=force)
        self.result.asset_statuses[asset.id] = asset.status

    def set_order(self, order: RepairWorkOrder, target: str):
        before = order.status
        if before == target:
            return
        REPAIR_FSM.assert_can_transition(before, target, entity_id=order.id)
        order.status = target
        order.updated_at = self.now
        self._record('RepairWorkOrder', order.id, before, target)

    def set_ticket(self, ticket: ServiceTicket, target: str):
        before = ticket.status
        if before != target:
            TICKET_FSM.assert_can_transition(before, target, entity_id=ticket.id)
            ticket.status = target
            ticket.updated_at = self.now
            if target == ServiceTicket.STATUS_RESOLVED:
                ticket.resolved_at = self.now
                self.notify(notifications.PICKUP_PENDING, ticket_id=ticket.id, ticket_number=ticket.ticket_number)
            elif before == ServiceTicket.STATUS_RESOLVED and target == ServiceTicket.STATUS_IN_PROGRESS:
                ticket.resolved_at = None
            if target == ServiceTicket.STATUS_CLOSED:
                ticket.closed_at = self.now
                self.notify(notifications.TICKET_CLOSED, ticket_id=ticket.id, ticket_number=ticket.ticket_number)
            self._record('ServiceTicket', ticket.id, before, target)
        self.result.ticket_status = ticket.status

    def sync_ticket(self, ticket: ServiceTicket) -> str:
        """Re-derive the ticket status from its latest-relevant work-orders."""
        if ticket.deleted_at is not None:
            return ticket.status
        snap = snapshot_for(self.session, ticket)
        self.set_ticket(ticket, derive_ticket_status(ticket.status, snap))
        return ticket.status

    def ensure_resolved(self, ticket: ServiceTicket, action: str):
        if ticket.status == ServiceTicket.STATUS_RESOLVED:
            return
        if ticket.status in ServiceTicket.REPAIR_PHASE_STATUSES:
            snap = snapshot_for(self.session, ticket)
            if snap.resolvable:
                self.set_ticket(ticket, ServiceTicket.STATUS_RESOLVED)
                return
            raise PreconditionFailed(
                f'{action} requires every repair on the ticket to be completed',
                ticket_id=ticket.id, current_status=ticket.status, **snap.describe(),
            )
        raise PreconditionFailed(
            f'{action} requires a resolved ticket',
            ticket_id=ticket.id, current_status=ticket.status,
        )

    def notify(self, name: str, **payload):
        self.result.notifications.append((name, payload))


def _ticket_assets(session, ticket: ServiceTicket) -> List[Asset]:
    ids = ticket.asset_ids
    if not ids:
        return []
    rows = session.execute(select(Asset).where(Asset.id.in_(ids))).scalars().all()
    by_id = {a.id: a for a in rows}
    return [by_id[i] for i in ids if i in by_id]


def _require_ticket_status(ticket: ServiceTicket, expected: str, action: str):
    if ticket.status != expected:
        raise PreconditionFailed(
            f'{action} requires ticket status {expected}',
            ticket_id=ticket.id, current_status=ticket.status, expected_status=expected,
        )


def _require_field_statuses(assets: List[Asset], action: str):
    for a in assets:
        if a.status not in (Asset.STATUS_OK, Asset.STATUS_BAD):
            raise PreconditionFailed(
                f'{action} requires asset status OK or BAD',
                asset_id=a.id, serial_number=a.serial_number, current_status=a.status,
            )


# ---------------- Handlers ---------------- #

def _on_ticket_opened(ctx: _Apply, ev: TicketOpened):
    ticket = ev.ticket
    assets = _ticket_assets(ctx.session, ticket)
    _require_field_statuses(assets, 'Opening a ticket')
    for a in assets:
        ctx.set_asset(a, Asset.STATUS_IN_TRANSIT_TO_CENTER if ev.has_shipment else Asset.STATUS_BAD)
    if ev.has_shipment:
        ctx.set_ticket(ticket, ServiceTicket.STATUS_IN_DELIVERY)
    elif ticket.repair_location == ServiceTicket.LOCATION_ON_SITE:
        ctx.set_ticket(ticket, ServiceTicket.STATUS_PENDING_APPROVAL)
    else:
        ctx.result.ticket_status = ticket.status
    ctx.notify(notifications.TICKET_OPENED, ticket_id=ticket.id, ticket_number=ticket.ticket_number,
               asset_ids=[a.id for a in assets])


def _on_site_decision(ctx: _Apply, ev: OnSiteDecision):
    ticket = ev.ticket
    _require_ticket_status(ticket, ServiceTicket.STATUS_PENDING_APPROVAL, 'An on-site decision')
    if ev.approved:
        ctx.set_ticket(ticket, ServiceTicket.STATUS_APPROVED_ON_SITE)
    else:
        ticket.repair_location = ServiceTicket.LOCATION_REPAIR_CENTER
        if ev.reason:
            ticket.resolution_notes = f'On-site repair rejected: {ev.reason}'
        ctx.set_ticket(ticket, ServiceTicket.STATUS_OPEN)


def _on_delivery_created(ctx: _Apply, ev: DeliveryCreated):
    ticket = ev.ticket
    _require_ticket_status(ticket, ServiceTicket.STATUS_OPEN, 'Creating a delivery')
    assets = _ticket_assets(ctx.session, ticket)
    _require_field_statuses(assets, 'Creating a delivery')
    for a in assets:
        ctx.set_asset(a, Asset.STATUS_IN_TRANSIT_TO_CENTER)
    ctx.set_ticket(ticket, ServiceTicket.STATUS_IN_DELIVERY)


def _on_delivery_received(ctx: _Apply, ev: DeliveryReceived):
    ticket = ev.ticket
    _require_ticket_status(ticket, ServiceTicket.STATUS_IN_DELIVERY, 'Receiving a delivery')
    for a in _ticket_assets(ctx.session, ticket):
        if a.status == Asset.STATUS_SCRAPPED:
            ctx.result.asset_statuses[a.id] = a.status
            continue
        ctx.set_asset(a, Asset.STATUS_IN_REPAIR)
    ctx.set_ticket(ticket, ServiceTicket.STATUS_RECEIVED)


def _on_repair_started(ctx: _Apply, ev: RepairStarted):
    asset = ctx.session.get(Asset, ev.order.asset_id)
    if asset.status not in Asset.INTAKE_STATUSES:
        raise PreconditionFailed(
            'Repair intake requires asset status BAD, IN_TRANSIT_TO_CENTER or IN_REPAIR',
            asset_id=asset.id, serial_number=asset.serial_number, current_status=asset.status,
        )
    ctx.set_asset(asset, Asset.STATUS_IN_REPAIR)
    if ev.ticket is not None:
        ctx.sync_ticket(ev.ticket)


def _on_repair_completed(ctx: _Apply, ev: RepairCompleted):
    order = ev.order
    if order.deleted_at is not None or order.status not in RepairWorkOrder.ACTIVE_STATUSES:
        raise Conflict(
            'Work-order is not active',
            order_id=order.id, current_status=order.status, deleted=order.deleted_at is not None,
        )
    asset = ctx.session.get(Asset, order.asset_id)
    if ev.replacement_requested or not ev.qc_passed:
        target = Asset.STATUS_SCRAPPED
    elif ev.ticket is not None:
        target = Asset.STATUS_READY_FOR_PICKUP
    else:
        target = Asset.STATUS_OK
    ctx.set_order(order, RepairWorkOrder.STATUS_COMPLETED)
    ctx.set_asset(asset, target)
    if ev.ticket is not None:
        ctx.sync_ticket(ev.ticket)
    ctx.notify(notifications.REPAIR_COMPLETED, order_id=order.id, asset_id=asset.id,
               qc_passed=ev.qc_passed, asset_status=asset.status,
               ticket_id=ev.ticket.id if ev.ticket is not None else None)


def _hand_back(ctx: _Apply, ticket: ServiceTicket, ready_target: str, action: str):
    for detail in ticket.details:
        asset = ctx.session.get(Asset, detail.asset_id)
        if asset.status == Asset.STATUS_READY_FOR_PICKUP:
            ctx.set_asset(asset, ready_target)
        elif asset.status == Asset.STATUS_SCRAPPED:
            # disposal confirmation; a requested replacement must already be in service
            if detail.request_replacement:
                repl = find_replacement(ctx.session, asset.id)
                if repl is None or repl.status != Asset.STATUS_OK:
                    raise PreconditionFailed(
                        f'{action} requires the replacement asset to be OK',
                        asset_id=asset.id, replacement_asset_id=repl.id if repl else None,
                        replacement_status=repl.status if repl else None,
                    )
                ctx.result.asset_statuses[repl.id] = repl.status
            ctx.result.asset_statuses[asset.id] = asset.status
        else:
            raise PreconditionFailed(
                f'{action} requires assets READY_FOR_PICKUP or SCRAPPED',
                asset_id=asset.id, serial_number=asset.serial_number, current_status=asset.status,
            )


def _on_pickup_confirmed(ctx: _Apply, ev: PickupConfirmed):
    ticket = ev.ticket
    ctx.ensure_resolved(ticket, 'Pickup confirmation')
    _hand_back(ctx, ticket, Asset.STATUS_OK, 'Pickup confirmation')
    ctx.set_ticket(ticket, ServiceTicket.STATUS_CLOSED)


def _on_return_shipped(ctx: _Apply, ev: ReturnShipped):
    ticket = ev.ticket
    ctx.ensure_resolved(ticket, 'Shipping a return')
    _hand_back(ctx, ticket, Asset.STATUS_IN_TRANSIT_TO_FIELD, 'Shipping a return')
    ctx.set_ticket(ticket, ServiceTicket.STATUS_RETURN_SHIPPED)


def _on_return_received(ctx: _Apply, ev: ReturnReceived):
    ticket = ev.ticket
    if ticket.status == ServiceTicket.STATUS_CLOSED:
        raise Conflict('Ticket is already closed', ticket_id=ticket.id, current_status=ticket.status)
    _require_ticket_status(ticket, ServiceTicket.STATUS_RETURN_SHIPPED, 'Receiving a return')
    for a in _ticket_assets(ctx.session, ticket):
        if a.status == Asset.STATUS_IN_TRANSIT_TO_FIELD:
            ctx.set_asset(a, Asset.STATUS_OK)
        else:
            ctx.result.asset_statuses[a.id] = a.status
    ctx.set_ticket(ticket, ServiceTicket.STATUS_CLOSED)


def _on_ticket_deleted(ctx: _Apply, ev: TicketDeleted):
    ticket = ev.ticket
    assets = _ticket_assets(ctx.session, ticket)
    orders = ctx.session.execute(
        select(RepairWorkOrder).where(
            RepairWorkOrder.ticket_id == ticket.id,
            RepairWorkOrder.deleted_at.is_(None),
            RepairWorkOrder.status.in_(RepairWorkOrder.ACTIVE_STATUSES),
        )
    ).scalars().all()
    for o in orders:
        o.deleted_at = ctx.now
        o.deleted_by = ev.deleted_by
    ctx.session.flush()
    restored = 0
    for a in assets:
        # the asset has moved on to another ticket or repair
        if active_ticket_for(ctx.session, a.id, exclude_ticket_id=ticket.id) or active_order_for(ctx.session, a.id):
            ctx.result.asset_statuses[a.id] = a.status
            continue
        ctx.set_asset(a, Asset.STATUS_OK, force=True)
        restored += 1
    for rec in (ticket.delivery, ticket.return_record):
        if rec is not None and rec.deleted_at is None:
            rec.deleted_at = ctx.now
    ticket.deleted_at = ctx.now
    ticket.deleted_by = ev.deleted_by
    ticket.updated_at = ctx.now
    ctx.result.ticket_status = ticket.status
    ctx.result.counts.update({'assets_restored': restored, 'orders_deleted': len(orders)})


def _on_asset_marked_broken(ctx: _Apply, ev: AssetMarkedBroken):
    if ev.asset.status != Asset.STATUS_OK:
        raise Conflict('Only an OK asset can be reported broken', asset_id=ev.asset.id, current_status=ev.asset.status)
    ctx.set_asset(ev.asset, Asset.STATUS_BAD)


def _on_replacement_registered(ctx: _Apply, ev: ReplacementRegistered):
    if ev.old_asset.status != Asset.STATUS_SCRAPPED:
        raise PreconditionFailed(
            'Only a SCRAPPED asset can be replaced',
            asset_id=ev.old_asset.id, current_status=ev.old_asset.status,
        )
    ctx.result.asset_statuses[ev.new_asset.id] = ev.new_asset.status
    if ev.ticket is not None:
        ctx.sync_ticket(ev.ticket)


def _on_ticket_resync(ctx: _Apply, ev: TicketResync):
    ctx.sync_ticket(ev.ticket)


EVENT_HANDLERS: Dict[type, Callable[[_Apply, Any], None]] = {
    TicketOpened: _on_ticket_opened,
    OnSiteDecision: _on_site_decision,
    DeliveryCreated: _on_delivery_created,
    DeliveryReceived: _on_delivery_received,
    RepairStarted: _on_repair_started,
    RepairCompleted: _on_repair_completed,
    PickupConfirmed: _on_pickup_confirmed,
    ReturnShipped: _on_return_shipped,
    ReturnReceived: _on_return_received,
    TicketDeleted: _on_ticket_deleted,
    AssetMarkedBroken: _on_asset_marked_broken,
    ReplacementRegistered: _on_replacement_registered,
    TicketResync: _on_ticket_resync,
}


def apply_event(event, now: Optional[datetime] = None, session=None) -> SyncResult:
    handler = EVENT_HANDLERS.get(type(event))
    if handler is None:
        raise TypeError(f'unsupported lifecycle event {type(event).__name__}')
    ctx = _Apply(session or get_db(), type(event).__name__, resolve_now(now))
    handler(ctx, event)
    ctx.session.flush()
    return ctx.result


def dispatch(*results: SyncResult, actor_user_id: Optional[int] = None) -> None:
    """Post-commit side effects: audit snapshots then notifications."""
    changes: List[StatusChange] = []
    for r in results:
        changes.extend(r.changes)
    audit.record_status_changes(changes, actor_user_id=actor_user_id)
    for r in results:
        notifications.publish_all(r.notifications)
