from __future__ import annotations
"""Ticket resolution rule.

For every asset on a ticket, the *latest-relevant* work-order is the non-deleted
order with the greatest ``created_at`` that is at or after the ticket's own
``created_at`` (ties broken by id). Orders from earlier repair cycles of the same
asset never count. A ticket is resolvable when:

* there is exactly one latest-relevant order per referenced asset,
* every one of them is COMPLETED, and
* every asset whose detail requests replacement has a linked replacement asset in
  status OK.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select

from custody.models.asset import Asset
from custody.models.repair_order import RepairWorkOrder
from custody.models.service_ticket import ServiceTicket


@dataclass
class ResolutionSnapshot:
    asset_ids: List[int]
    latest: Dict[int, RepairWorkOrder] = field(default_factory=dict)
    pending_replacements: List[int] = field(default_factory=list)

    @property
    def has_orders(self) -> bool:
        return bool(self.latest)

    @property
    def missing_assets(self) -> List[int]:
        return [a for a in self.asset_ids if a not in self.latest]

    @property
    def incomplete_orders(self) -> List[int]:
        return [o.id for o in self.latest.values() if o.status != RepairWorkOrder.STATUS_COMPLETED]

    @property
    def all_completed(self) -> bool:
        return (
            len(self.latest) == len(self.asset_ids)
            and all(o.status == RepairWorkOrder.STATUS_COMPLETED for o in self.latest.values())
        )

    @property
    def resolvable(self) -> bool:
        return bool(self.asset_ids) and self.all_completed and not self.pending_replacements

    def describe(self) -> Dict[str, object]:
        return {
            'asset_count': len(self.asset_ids),
            'latest_order_count': len(self.latest),
            'missing_assets': self.missing_assets,
            'incomplete_orders': self.incomplete_orders,
            'pending_replacements': list(self.pending_replacements),
        }


def pick_latest(orders: Iterable[RepairWorkOrder], since: datetime) -> Dict[int, RepairWorkOrder]:
    """Latest order per asset among ``orders`` created at or after ``since``."""
    latest: Dict[int, RepairWorkOrder] = {}
    for o in orders:
        if o.deleted_at is not None or o.created_at < since:
            continue
        cur = latest.get(o.asset_id)
        if cur is None or (o.created_at, o.id) > (cur.created_at, cur.id):
            latest[o.asset_id] = o
    return latest


def find_replacement(session, asset_id: int) -> Optional[Asset]:
    return session.execute(
        select(Asset).where(Asset.replaces_asset_id == asset_id).order_by(Asset.id.desc())
    ).scalars().first()


def snapshot_for(session, ticket: ServiceTicket) -> ResolutionSnapshot:
    session.flush()
    asset_ids = ticket.asset_ids
    snap = ResolutionSnapshot(asset_ids=asset_ids)
    if not asset_ids:
        return snap
    orders = session.execute(
        select(RepairWorkOrder).where(
            RepairWorkOrder.asset_id.in_(asset_ids),
            RepairWorkOrder.created_at >= ticket.created_at,
            RepairWorkOrder.deleted_at.is_(None),
        )
    ).scalars().all()
    snap.latest = pick_latest(orders, ticket.created_at)
    for detail in ticket.details:
        if not detail.request_replacement:
            continue
        repl = find_replacement(session, detail.asset_id)
        if repl is None or repl.status != Asset.STATUS_OK:
            snap.pending_replacements.append(detail.asset_id)
    return snap


def derive_ticket_status(current: str, snapshot: ResolutionSnapshot) -> str:
    """Status the ticket should hold given its repair history."""
    if current in (ServiceTicket.STATUS_RECEIVED, ServiceTicket.STATUS_APPROVED_ON_SITE, ServiceTicket.STATUS_IN_PROGRESS):
        if snapshot.resolvable:
            return ServiceTicket.STATUS_RESOLVED
        if snapshot.has_orders:
            return ServiceTicket.STATUS_IN_PROGRESS
        return current
    if current == ServiceTicket.STATUS_RESOLVED and not snapshot.resolvable:
        return ServiceTicket.STATUS_IN_PROGRESS
    return current
