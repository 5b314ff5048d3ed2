from __future__ import annotations
from flask import Blueprint, request

from custody import get_db
from custody.decorators.auth import require_permissions
from custody.decorators.audit import audit_log
from custody.models.asset import Asset
from custody.models.repair_order import RepairWorkOrder
from custody.services import repairs
from custody.services.policy import current_actor, assert_org_access
from custody.utils.clock import isoformat
from custody.utils.listing import apply_filters, list_response
from custody.utils.validation import coerce_int, validate_status

rpr_bp = Blueprint('repairs', __name__)

SORT_FIELDS = {
    'status': RepairWorkOrder.status,
    'repair_type': RepairWorkOrder.repair_type,
    'created_at': RepairWorkOrder.created_at,
    'updated_at': RepairWorkOrder.updated_at,
    'completed_at': RepairWorkOrder.completed_at,
    'id': RepairWorkOrder.id,
}

FILTERS = {
    'status': lambda q, v: q.filter(RepairWorkOrder.status == validate_status(v, RepairWorkOrder.ALL_STATUSES)),
    'repair_type': lambda q, v: q.filter(RepairWorkOrder.repair_type == validate_status(v, RepairWorkOrder.ALL_TYPES, 'repair_type')),
    'asset_id': lambda q, v: q.filter(RepairWorkOrder.asset_id == coerce_int(v, 'asset_id')),
    'ticket_id': lambda q, v: q.filter(RepairWorkOrder.ticket_id == coerce_int(v, 'ticket_id')),
    'maintenance_id': lambda q, v: q.filter(RepairWorkOrder.maintenance_id == coerce_int(v, 'maintenance_id')),
    'assigned_to': lambda q, v: q.filter(RepairWorkOrder.assigned_to == coerce_int(v, 'assigned_to')),
}


def _order_json(o: RepairWorkOrder):
    return {
        'id': o.id,
        'asset_id': o.asset_id,
        'ticket_id': o.ticket_id,
        'maintenance_id': o.maintenance_id,
        'repair_type': o.repair_type,
        'status': o.status,
        'assigned_to': o.assigned_to,
        'qc_passed': o.qc_passed,
        'parts_replaced': o.parts_replaced or [],
        'repair_notes': o.repair_notes,
        'warranty': {
            'period_days': o.warranty_days,
            'start_date': isoformat(o.warranty_start),
            'end_date': isoformat(o.warranty_end),
        } if o.warranty_days else None,
        'created_by': o.created_by,
        'repaired_by': o.repaired_by,
        'created_at': isoformat(o.created_at),
        'updated_at': isoformat(o.updated_at),
        'completed_at': isoformat(o.completed_at),
        'deleted_at': isoformat(o.deleted_at),
    }


def _with_sync(o: RepairWorkOrder, result):
    body = _order_json(o)
    body['sync'] = result.as_dict()
    return body


def _load(order_id: int) -> RepairWorkOrder:
    o = repairs.get_order(order_id)
    assert_org_access(current_actor(), o.asset.organization_id)
    return o


@rpr_bp.get('/orders')
@require_permissions('RPR.READ')
def list_orders():
    q = get_db().query(RepairWorkOrder).filter(RepairWorkOrder.deleted_at.is_(None))
    org_ids = current_actor().org_ids
    if org_ids:
        q = q.join(Asset, Asset.id == RepairWorkOrder.asset_id).filter(Asset.organization_id.in_(org_ids))
    q = apply_filters(q, FILTERS, request.args)
    return list_response(q, _order_json, SORT_FIELDS, RepairWorkOrder.id, updated_col='updated_at')


@rpr_bp.get('/orders/statistics')
@require_permissions('RPR.READ')
def statistics():
    return repairs.repair_statistics(organization_ids=list(current_actor().org_ids) or None)


@rpr_bp.post('/orders')
@require_permissions('RPR.MANAGE')
@audit_log('RPR.ORDER.CREATE', entity='RepairWorkOrder',
           meta_builder=lambda data, rv, a, kw: {'created': [o['id'] for o in data.get('created', [])], 'skipped_count': data.get('skipped_count')})
def create_orders():
    out = repairs.create_from_source(request.json or {}, current_actor())
    out['created'] = [_order_json(o) for o in out['created']]
    return out, 201


@rpr_bp.post('/walk-in/<int:asset_id>')
@require_permissions('RPR.MANAGE')
@audit_log('RPR.ORDER.WALK_IN', entity='RepairWorkOrder', entity_id_key='id', meta_keys=['asset_id', 'repair_type'])
def open_walk_in(asset_id: int):
    o, result = repairs.open_work_order(asset_id, request.get_json(silent=True) or {}, current_actor())
    return _with_sync(o, result), 201


@rpr_bp.get('/orders/<int:order_id>')
@require_permissions('RPR.READ')
def get_order(order_id: int):
    return _order_json(_load(order_id))


@rpr_bp.post('/orders/<int:order_id>/progress')
@require_permissions('RPR.MANAGE')
def update_progress(order_id: int):
    _load(order_id)
    data = request.json or {}
    o = repairs.update_progress(order_id, data.get('status'), current_actor(), notes=data.get('repair_notes'))
    return _order_json(o)


@rpr_bp.post('/orders/<int:order_id>/take')
@require_permissions('RPR.MANAGE')
@audit_log('RPR.ORDER.TAKE', entity='RepairWorkOrder', entity_id_key='id', meta_keys=['assigned_to'])
def take_order(order_id: int):
    _load(order_id)
    return _order_json(repairs.take_order(order_id, current_actor()))


@rpr_bp.post('/orders/<int:order_id>/complete')
@require_permissions('RPR.COMPLETE')
@audit_log('RPR.ORDER.COMPLETE', entity='RepairWorkOrder', entity_id_key='id', meta_keys=['qc_passed', 'parts_replaced'])
def complete_order(order_id: int):
    o, result = repairs.complete(order_id, request.json or {}, current_actor())
    return _with_sync(o, result)


@rpr_bp.delete('/orders/<int:order_id>')
@require_permissions('RPR.DELETE')
@audit_log('RPR.ORDER.DELETE', entity='RepairWorkOrder', entity_id_key='id', meta_keys=['status'])
def delete_order(order_id: int):
    o, result = repairs.soft_delete_order(order_id, current_actor())
    return _with_sync(o, result)
