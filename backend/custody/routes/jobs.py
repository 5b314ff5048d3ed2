from __future__ import annotations
from flask import Blueprint, request

from custody.decorators.auth import require_permissions
from custody.decorators.audit import audit_log
from custody.services import reconciliation
from custody.utils.validation import coerce_int

jobs_bp = Blueprint('jobs', __name__)


def _dry_run() -> bool:
    return request.args.get('dry_run') == '1'


@jobs_bp.post('/reconcile')
@require_permissions('SYNC.RUN')
@audit_log('SYNC.RECONCILE', entity='ServiceTicket', meta_keys=['checked', 'corrected', 'skipped', 'errors'])
def reconcile():
    limit = request.args.get('limit')
    return reconciliation.reconcile_ticket_statuses(
        limit=coerce_int(limit, 'limit') if limit else None, dry_run=_dry_run(),
    )


@jobs_bp.post('/maintenance-schedule')
@require_permissions('SYNC.RUN')
@audit_log('SYNC.MAINTENANCE_SCHEDULE', entity='MaintenanceTask', meta_keys=['created', 'skipped', 'errors'])
def maintenance_schedule():
    lookahead = request.args.get('lookahead_days')
    return reconciliation.auto_schedule_maintenance(
        lookahead_days=coerce_int(lookahead, 'lookahead_days') if lookahead else None, dry_run=_dry_run(),
    )
