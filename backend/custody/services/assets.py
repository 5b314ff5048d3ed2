from __future__ import annotations
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import select, or_

from custody import get_db
from custody.models.asset import Asset
from custody.models.service_ticket import ServiceTicket
from custody.services import availability
from custody.services.errors import Conflict, NotFound, PreconditionFailed
from custody.services.policy import Actor, assert_org_access, require_override
from custody.services.sync_engine import SyncResult, AssetMarkedBroken, ReplacementRegistered, apply_event, dispatch
from custody.services.transactions import transaction
from custody.utils.clock import resolve_now
from custody.utils.validation import coerce_int, require_fields

logger = logging.getLogger(__name__)


def get_asset(asset_id: int, session=None) -> Asset:
    session = session or get_db()
    asset = session.get(Asset, asset_id)
    if asset is None:
        raise NotFound('Asset not found', asset_id=asset_id)
    return asset


def _replacement_ticket(session, old: Asset, ticket_id: Optional[int]) -> Optional[ServiceTicket]:
    if ticket_id is not None:
        ticket = session.get(ServiceTicket, ticket_id)
        if ticket is None or ticket.deleted_at is not None:
            raise NotFound('Ticket not found', ticket_id=ticket_id)
        if old.id not in ticket.asset_ids:
            raise PreconditionFailed('Replaced asset is not on the ticket', ticket_id=ticket.id, asset_id=old.id)
        return ticket
    return availability.latest_ticket_for(session, old.id)


def register_asset(data: Dict[str, Any], actor: Actor, now: Optional[datetime] = None) -> Tuple[Asset, SyncResult]:
    """Register a new asset (status OK), optionally as the replacement of a SCRAPPED one.

    A replacement is linked both ways and the ticket that requested it is
    re-synced, since an OK replacement can be what completes that ticket.
    """
    now = resolve_now(now)
    require_fields(data, 'serial_number')
    serial = str(data['serial_number']).strip()
    replaces_id = data.get('replaces_asset_id')
    with transaction() as session:
        dup = session.execute(select(Asset).where(Asset.serial_number == serial)).scalar_one_or_none()
        if dup is not None:
            raise Conflict('Serial number already registered', serial_number=serial, asset_id=dup.id)
        old = None
        ticket = None
        if replaces_id is not None:
            old = get_asset(coerce_int(replaces_id, 'replaces_asset_id'), session=session)
            assert_org_access(actor, old.organization_id)
            if old.replaced_by_asset_id is not None:
                raise Conflict('Asset already has a replacement', asset_id=old.id, replaced_by_asset_id=old.replaced_by_asset_id)
            ticket_id = data.get('replacement_ticket_id')
            ticket = _replacement_ticket(session, old, coerce_int(ticket_id, 'replacement_ticket_id') if ticket_id is not None else None)
        org_id = data.get('organization_id')
        if org_id is None and old is not None:
            org_id = old.organization_id
        assert_org_access(actor, org_id)
        asset = Asset(
            serial_number=serial,
            asset_type=data.get('asset_type') or (old.asset_type if old is not None else None),
            organization_id=org_id,
            status=Asset.STATUS_OK,
            notes=data.get('notes'),
            created_at=now,
            updated_at=now,
        )
        session.add(asset)
        session.flush()
        if old is None:
            result = SyncResult(event='AssetRegistered', asset_statuses={asset.id: asset.status})
        else:
            asset.replaces_asset_id = old.id
            asset.replacement_ticket_id = ticket.id if ticket is not None else None
            old.replaced_by_asset_id = asset.id
            result = apply_event(ReplacementRegistered(asset, old, ticket), now=now, session=session)
    dispatch(result, actor_user_id=actor.user_id)
    if old is not None:
        logger.info('asset %s registered as replacement for %s', asset.serial_number, old.serial_number)
    return asset, result


def mark_broken(asset_id: int, actor: Actor, notes: Optional[str] = None, now: Optional[datetime] = None) -> Tuple[Asset, SyncResult]:
    now = resolve_now(now)
    with transaction() as session:
        asset = get_asset(asset_id, session=session)
        assert_org_access(actor, asset.organization_id)
        result = apply_event(AssetMarkedBroken(asset), now=now, session=session)
        if notes:
            asset.notes = notes
    dispatch(result, actor_user_id=actor.user_id)
    return asset, result


def delete_asset(asset_id: int, actor: Actor) -> Dict[str, Any]:
    """Hard delete of a SCRAPPED asset nothing live refers to."""
    with transaction() as session:
        asset = get_asset(asset_id, session=session)
        require_override(actor, 'Deleting an asset', asset_id=asset.id)
        if asset.status != Asset.STATUS_SCRAPPED:
            raise PreconditionFailed('Only SCRAPPED assets can be deleted', asset_id=asset.id, current_status=asset.status)
        info = availability.assess(session, asset)
        if info['active_ticket'] or info['active_repair'] or info['active_maintenance']:
            raise Conflict(
                'Asset is still referenced',
                asset_id=asset.id,
                ticket_id=(info['active_ticket'] or {}).get('id'),
                order_id=(info['active_repair'] or {}).get('id'),
                task_id=(info['active_maintenance'] or {}).get('id'),
            )
        linked = session.execute(
            select(Asset).where(or_(Asset.replaces_asset_id == asset.id, Asset.replaced_by_asset_id == asset.id))
        ).scalars().all()
        for other in linked:
            if other.replaces_asset_id == asset.id:
                other.replaces_asset_id = None
            if other.replaced_by_asset_id == asset.id:
                other.replaced_by_asset_id = None
        snapshot = {'id': asset.id, 'serial_number': asset.serial_number, 'status': asset.status}
        session.delete(asset)
    logger.info('asset %s deleted by user %s', snapshot['serial_number'], actor.user_id)
    return snapshot
