from __future__ import annotations
from flask import Blueprint, request

from custody import get_db
from custody.decorators.auth import require_permissions
from custody.decorators.audit import audit_log
from custody.models.asset import Asset
from custody.services import assets as asset_service
from custody.services.availability import check_availability, check_availability_batch
from custody.services.policy import current_actor, assert_org_access, scope_to_orgs
from custody.utils.clock import isoformat
from custody.utils.listing import apply_filters, list_response
from custody.utils.validation import coerce_int, validate_status

assets_bp = Blueprint('assets', __name__)

SORT_FIELDS = {
    'serial_number': Asset.serial_number,
    'status': Asset.status,
    'created_at': Asset.created_at,
    'updated_at': Asset.updated_at,
    'id': Asset.id,
}

FILTERS = {
    'status': lambda q, v: q.filter(Asset.status == validate_status(v, Asset.ALL_STATUSES)),
    'asset_type': lambda q, v: q.filter(Asset.asset_type == v),
    'organization_id': lambda q, v: q.filter(Asset.organization_id == coerce_int(v, 'organization_id')),
    'serial_number': lambda q, v: q.filter(Asset.serial_number.ilike(f"%{v}%")),
}


def _asset_json(a: Asset):
    return {
        'id': a.id,
        'serial_number': a.serial_number,
        'asset_type': a.asset_type,
        'organization_id': a.organization_id,
        'status': a.status,
        'replaces_asset_id': a.replaces_asset_id,
        'replaced_by_asset_id': a.replaced_by_asset_id,
        'replacement_ticket_id': a.replacement_ticket_id,
        'notes': a.notes,
        'created_at': isoformat(a.created_at),
        'updated_at': isoformat(a.updated_at),
    }


@assets_bp.get('')
@require_permissions('ASSET.READ')
def list_assets():
    q = scope_to_orgs(get_db().query(Asset), Asset.organization_id, current_actor())
    q = apply_filters(q, FILTERS, request.args)
    return list_response(q, _asset_json, SORT_FIELDS, Asset.id, updated_col='updated_at')


@assets_bp.post('')
@require_permissions('ASSET.CREATE')
@audit_log('ASSET.CREATE', entity='Asset', entity_id_key='id', meta_keys=['serial_number', 'replaces_asset_id'])
def register_asset():
    asset, _ = asset_service.register_asset(request.json or {}, current_actor())
    return _asset_json(asset), 201


@assets_bp.get('/<int:asset_id>')
@require_permissions('ASSET.READ')
def get_asset(asset_id: int):
    asset = asset_service.get_asset(asset_id)
    assert_org_access(current_actor(), asset.organization_id)
    return _asset_json(asset)


@assets_bp.post('/<int:asset_id>/report-broken')
@require_permissions('ASSET.REPORT')
@audit_log('ASSET.REPORT', entity='Asset', entity_id_key='id', meta_keys=['status'])
def report_broken(asset_id: int):
    data = request.get_json(silent=True) or {}
    asset, _ = asset_service.mark_broken(asset_id, current_actor(), notes=data.get('notes'))
    return _asset_json(asset)


@assets_bp.delete('/<int:asset_id>')
@require_permissions('ASSET.DELETE')
@audit_log('ASSET.DELETE', entity='Asset', entity_id_key='id', meta_keys=['serial_number'])
def delete_asset(asset_id: int):
    return asset_service.delete_asset(asset_id, current_actor())


@assets_bp.get('/<int:asset_id>/availability')
@require_permissions('ASSET.READ')
def asset_availability(asset_id: int):
    return check_availability(asset_id)


@assets_bp.post('/availability')
@require_permissions('ASSET.READ')
def batch_availability():
    data = request.json or {}
    results = check_availability_batch(data.get('asset_ids'))
    return {
        'data': results,
        'summary': {
            'requested': len(results),
            'available': sum(1 for r in results if r.get('available')),
            'errors': sum(1 for r in results if 'error' in r),
        },
    }
