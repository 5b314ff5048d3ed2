from __future__ import annotations
from flask import Blueprint, request

from custody import get_db
from custody.decorators.auth import require_permissions
from custody.decorators.audit import audit_log
from custody.models.service_ticket import ServiceTicket, TicketAssetDetail
from custody.services import shipments, tickets as ticket_service
from custody.services.policy import current_actor, assert_org_access, scope_to_orgs
from custody.utils.clock import isoformat
from custody.utils.listing import apply_filters, list_response
from custody.utils.validation import coerce_int, validate_status

tickets_bp = Blueprint('tickets', __name__)

SORT_FIELDS = {
    'ticket_number': ServiceTicket.ticket_number,
    'status': ServiceTicket.status,
    'priority': ServiceTicket.priority,
    'created_at': ServiceTicket.created_at,
    'updated_at': ServiceTicket.updated_at,
    'id': ServiceTicket.id,
}

FILTERS = {
    'status': lambda q, v: q.filter(ServiceTicket.status == validate_status(v, ServiceTicket.ALL_STATUSES)),
    'priority': lambda q, v: q.filter(ServiceTicket.priority == validate_status(v, ServiceTicket.PRIORITIES, 'priority')),
    'repair_location': lambda q, v: q.filter(ServiceTicket.repair_location == v),
    'organization_id': lambda q, v: q.filter(ServiceTicket.organization_id == coerce_int(v, 'organization_id')),
    'asset_id': lambda q, v: q.filter(ServiceTicket.details.any(TicketAssetDetail.asset_id == coerce_int(v, 'asset_id'))),
    'q': lambda q, v: q.filter(ServiceTicket.title.ilike(f"%{v}%") | ServiceTicket.ticket_number.ilike(f"%{v}%")),
}


def _shipment_json(rec, received_field: str):
    if rec is None:
        return None
    return {
        'id': rec.id,
        'method': rec.method,
        'courier_service': rec.courier_service,
        'tracking_number': rec.tracking_number,
        'shipped_at': isoformat(rec.shipped_at),
        'received_at': isoformat(getattr(rec, received_field)),
        'received_by': rec.received_by,
        'notes': rec.notes,
        'deleted': rec.deleted_at is not None,
    }


def _ticket_json(t: ServiceTicket):
    return {
        'id': t.id,
        'ticket_number': t.ticket_number,
        'status': t.status,
        'title': t.title,
        'description': t.description,
        'priority': t.priority,
        'repair_location': t.repair_location,
        'organization_id': t.organization_id,
        'reported_by': t.reported_by,
        'resolution_notes': t.resolution_notes,
        'assets': [
            {
                'asset_id': d.asset_id,
                'request_replacement': d.request_replacement,
                'replacement_reason': d.replacement_reason,
                'issue_notes': d.issue_notes,
            }
            for d in t.details
        ],
        'delivery': _shipment_json(t.delivery, 'received_at_center'),
        'return': _shipment_json(t.return_record, 'received_in_field'),
        'created_at': isoformat(t.created_at),
        'updated_at': isoformat(t.updated_at),
        'resolved_at': isoformat(t.resolved_at),
        'closed_at': isoformat(t.closed_at),
        'deleted_at': isoformat(t.deleted_at),
    }


def _with_sync(t: ServiceTicket, result):
    body = _ticket_json(t)
    body['sync'] = result.as_dict()
    return body


def _snapshot(ticket_id: int):
    t = get_db().get(ServiceTicket, ticket_id)
    return _ticket_json(t) if t is not None else {}


@tickets_bp.get('')
@require_permissions('TKT.READ')
def list_tickets():
    q = get_db().query(ServiceTicket)
    if request.args.get('include_deleted') != '1':
        q = q.filter(ServiceTicket.deleted_at.is_(None))
    q = scope_to_orgs(q, ServiceTicket.organization_id, current_actor())
    q = apply_filters(q, FILTERS, request.args)
    return list_response(q, _ticket_json, SORT_FIELDS, ServiceTicket.id, updated_col='updated_at')


@tickets_bp.post('')
@require_permissions('TKT.CREATE')
@audit_log('TKT.CREATE', entity='ServiceTicket', entity_id_key='id',
           meta_builder=lambda data, rv, a, kw: {'ticket_number': data.get('ticket_number'), 'rejected': len(data.get('rejected', []))})
def create_ticket():
    ticket, result, rejected = ticket_service.create_ticket(request.json or {}, current_actor())
    body = _with_sync(ticket, result)
    body['rejected'] = rejected
    return body, 201


@tickets_bp.get('/<int:ticket_id>')
@require_permissions('TKT.READ')
def get_ticket(ticket_id: int):
    t = ticket_service.get_ticket(ticket_id, include_deleted=request.args.get('include_deleted') == '1')
    assert_org_access(current_actor(), t.organization_id)
    return _ticket_json(t)


@tickets_bp.patch('/<int:ticket_id>')
@require_permissions('TKT.UPDATE')
@audit_log('TKT.UPDATE', entity='ServiceTicket', entity_id_key='id',
           diff_keys=['title', 'description', 'priority'], pre_fetch=lambda a, kw: _snapshot(kw['ticket_id']))
def update_ticket(ticket_id: int):
    t = ticket_service.update_ticket(ticket_id, request.json or {}, current_actor())
    return _ticket_json(t)


@tickets_bp.delete('/<int:ticket_id>')
@require_permissions('TKT.DELETE')
@audit_log('TKT.DELETE', entity='ServiceTicket', entity_id_key='id', meta_keys=['sync'])
def delete_ticket(ticket_id: int):
    t, result = ticket_service.soft_delete_ticket(ticket_id, current_actor())
    return _with_sync(t, result)


@tickets_bp.post('/<int:ticket_id>/approve-on-site')
@require_permissions('TKT.APPROVE')
@audit_log('TKT.APPROVE', entity='ServiceTicket', entity_id_key='id', meta_keys=['status'])
def approve_on_site(ticket_id: int):
    t, result = ticket_service.approve_on_site(ticket_id, current_actor())
    return _with_sync(t, result)


@tickets_bp.post('/<int:ticket_id>/reject-on-site')
@require_permissions('TKT.APPROVE')
@audit_log('TKT.REJECT', entity='ServiceTicket', entity_id_key='id', meta_keys=['status', 'resolution_notes'])
def reject_on_site(ticket_id: int):
    data = request.json or {}
    t, result = ticket_service.reject_on_site(ticket_id, current_actor(), data.get('reason'))
    return _with_sync(t, result)


# --- Shipments ---

def _shipment_response(ticket_id: int, result):
    return _with_sync(ticket_service.get_ticket(ticket_id), result)


@tickets_bp.get('/<int:ticket_id>/shipments')
@require_permissions('SHIP.READ')
def get_shipments(ticket_id: int):
    t = ticket_service.get_ticket(ticket_id)
    assert_org_access(current_actor(), t.organization_id)
    return {
        'ticket_id': t.id,
        'status': t.status,
        'delivery': _shipment_json(t.delivery, 'received_at_center'),
        'return': _shipment_json(t.return_record, 'received_in_field'),
    }


@tickets_bp.post('/<int:ticket_id>/delivery')
@require_permissions('SHIP.SEND')
@audit_log('SHIP.DELIVERY.CREATE', entity='ServiceTicket', entity_id_key='id', meta_keys=['delivery'])
def create_delivery(ticket_id: int):
    _, result = shipments.create_delivery(ticket_id, request.get_json(silent=True) or {}, current_actor())
    return _shipment_response(ticket_id, result), 201


@tickets_bp.post('/<int:ticket_id>/delivery/receive')
@require_permissions('SHIP.RECEIVE')
@audit_log('SHIP.DELIVERY.RECEIVE', entity='ServiceTicket', entity_id_key='id', meta_keys=['status'])
def receive_delivery(ticket_id: int):
    data = request.get_json(silent=True) or {}
    _, result = shipments.receive_delivery(ticket_id, current_actor(), notes=data.get('notes'))
    return _shipment_response(ticket_id, result)


@tickets_bp.post('/<int:ticket_id>/pickup')
@require_permissions('SHIP.RECEIVE')
@audit_log('SHIP.PICKUP', entity='ServiceTicket', entity_id_key='id', meta_keys=['status'])
def confirm_pickup(ticket_id: int):
    data = request.get_json(silent=True) or {}
    _, result = shipments.confirm_pickup(ticket_id, current_actor(), notes=data.get('notes'))
    return _shipment_response(ticket_id, result)


@tickets_bp.post('/<int:ticket_id>/return')
@require_permissions('SHIP.SEND')
@audit_log('SHIP.RETURN.CREATE', entity='ServiceTicket', entity_id_key='id', meta_keys=['return'])
def ship_return(ticket_id: int):
    _, result = shipments.ship_return(ticket_id, request.get_json(silent=True) or {}, current_actor())
    return _shipment_response(ticket_id, result), 201


@tickets_bp.post('/<int:ticket_id>/return/receive')
@require_permissions('SHIP.RECEIVE')
@audit_log('SHIP.RETURN.RECEIVE', entity='ServiceTicket', entity_id_key='id', meta_keys=['status'])
def receive_return(ticket_id: int):
    data = request.get_json(silent=True) or {}
    _, result = shipments.receive_return(ticket_id, current_actor(), notes=data.get('notes'))
    return _shipment_response(ticket_id, result)
