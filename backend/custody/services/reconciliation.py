from __future__ import annotations
"""Scheduled jobs: ticket status reconciliation and routine maintenance scheduling.

Both jobs commit per item so one bad ticket or task never blocks the rest, and
both are safe to re-run: a second pass over unchanged data changes nothing.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from custody import get_db
from custody.config.settings import setting
from custody.models.asset import Asset
from custody.models.maintenance import MaintenanceTask
from custody.models.service_ticket import ServiceTicket
from custody.services import availability, notifications
from custody.services.policy import SYSTEM_ACTOR
from custody.services.maintenance import build_task
from custody.services.resolution import derive_ticket_status, snapshot_for
from custody.services.sync_engine import TicketResync, apply_event, dispatch
from custody.services.transactions import transaction
from custody.utils.clock import resolve_now

logger = logging.getLogger(__name__)

RECONCILE_STATUSES = (
    ServiceTicket.STATUS_RECEIVED,
    ServiceTicket.STATUS_IN_PROGRESS,
    ServiceTicket.STATUS_APPROVED_ON_SITE,
    ServiceTicket.STATUS_RESOLVED,
)


def _candidate_pages(session, page_size: int):
    """Ids of tickets in the repair phase, ``page_size`` at a time, keyset-paged by id."""
    last_id = 0
    while True:
        ids = session.execute(
            select(ServiceTicket.id)
            .where(
                ServiceTicket.status.in_(RECONCILE_STATUSES),
                ServiceTicket.deleted_at.is_(None),
                ServiceTicket.id > last_id,
            )
            .order_by(ServiceTicket.id.asc())
            .limit(page_size)
        ).scalars().all()
        if not ids:
            return
        yield ids
        last_id = ids[-1]


def reconcile_ticket_statuses(now: Optional[datetime] = None, limit: Optional[int] = None, dry_run: bool = False) -> Dict[str, int]:
    """Re-derive the status of every ticket in the repair phase.

    Candidates are read ``limit`` ids per page so one run covers all of them.
    Each ticket is re-read right before the decision and committed on its own;
    a concurrent write detected by the version check is counted as skipped.
    """
    now = resolve_now(now)
    limit = limit or setting('RECONCILE_BATCH_LIMIT')
    session = get_db()
    summary = {'checked': 0, 'corrected': 0, 'unchanged': 0, 'skipped': 0, 'errors': 0}
    for ticket_id in (tid for page in _candidate_pages(session, limit) for tid in page):
        summary['checked'] += 1
        result = None
        changed = False
        try:
            with transaction() as s:
                ticket = s.get(ServiceTicket, ticket_id, populate_existing=True)
                if ticket is None or ticket.deleted_at is not None or ticket.status not in RECONCILE_STATUSES:
                    summary['skipped'] += 1
                    continue
                if dry_run:
                    changed = derive_ticket_status(ticket.status, snapshot_for(s, ticket)) != ticket.status
                else:
                    result = apply_event(TicketResync(ticket), now=now, session=s)
                    changed = result.ticket_changed
        except StaleDataError:
            summary['skipped'] += 1
            logger.info('ticket %s changed concurrently; skipped', ticket_id)
            continue
        except Exception:
            summary['errors'] += 1
            logger.exception('reconciliation failed for ticket %s', ticket_id)
            continue
        if changed:
            summary['corrected'] += 1
            if result is not None:
                dispatch(result, actor_user_id=SYSTEM_ACTOR.user_id)
        else:
            summary['unchanged'] += 1
    logger.info('ticket reconciliation%s: %s', ' (dry run)' if dry_run else '', summary)
    return summary


def auto_schedule_maintenance(now: Optional[datetime] = None, lookahead_days: Optional[int] = None, dry_run: bool = False) -> Dict[str, Any]:
    """Create the successor of every completed routine task coming due.

    A task is skipped when any of its assets already has an active task; the
    successor keeps only the assets that are still available.
    """
    now = resolve_now(now)
    if lookahead_days is None:
        lookahead_days = setting('MAINTENANCE_LOOKAHEAD_DAYS')
    horizon = now + timedelta(days=lookahead_days)
    session = get_db()
    due_ids = session.execute(
        select(MaintenanceTask.id)
        .where(
            MaintenanceTask.status == MaintenanceTask.STATUS_COMPLETED,
            MaintenanceTask.maintenance_type == MaintenanceTask.TYPE_ROUTINE,
            MaintenanceTask.auto_schedule.is_(True),
            MaintenanceTask.successor_task_id.is_(None),
            MaintenanceTask.deleted_at.is_(None),
            MaintenanceTask.next_due_date.is_not(None),
            MaintenanceTask.next_due_date <= horizon,
        )
        .order_by(MaintenanceTask.next_due_date.asc(), MaintenanceTask.id.asc())
    ).scalars().all()
    summary: Dict[str, Any] = {'created': 0, 'skipped': 0, 'errors': 0, 'task_numbers': []}
    for task_id in due_ids:
        successor = None
        try:
            with transaction() as s:
                task = s.get(MaintenanceTask, task_id)
                busy = [a for a in task.asset_ids if availability.active_maintenance_for(s, a, exclude_task_id=task.id)]
                if busy:
                    logger.info('task %s not rescheduled: assets %s already scheduled', task.task_number, busy)
                    summary['skipped'] += 1
                    continue
                keep = [a.id for a in (s.get(Asset, aid) for aid in task.asset_ids)
                        if a is not None and availability.assess(s, a)['available']]
                if not keep:
                    summary['skipped'] += 1
                    continue
                if dry_run:
                    summary['created'] += 1
                    continue
                scheduled = task.next_due_date if task.next_due_date > now else now
                successor = build_task(
                    s, asset_ids=keep, scheduled_date=scheduled, maintenance_type=MaintenanceTask.TYPE_ROUTINE,
                    now=now, created_by=SYSTEM_ACTOR.user_id, title=task.title, organization_id=task.organization_id,
                    interval_days=task.interval_days, auto_schedule=True,
                )
                task.successor_task_id = successor.id
                note = f'Auto-scheduled successor {successor.task_number}'
                task.notes = f'{task.notes}\n{note}' if task.notes else note
                task.updated_at = now
        except Exception:
            summary['errors'] += 1
            logger.exception('auto-scheduling failed for task %s', task_id)
            continue
        if successor is not None:
            summary['created'] += 1
            summary['task_numbers'].append(successor.task_number)
            notifications.publish(notifications.MAINTENANCE_SCHEDULED, {
                'task_id': successor.id, 'task_number': successor.task_number,
                'scheduled_date': successor.scheduled_date.isoformat(), 'predecessor_id': task_id,
            })
    logger.info('maintenance auto-schedule%s: %s', ' (dry run)' if dry_run else '', summary)
    return summary


def run_scheduled_jobs(now: Optional[datetime] = None, dry_run: bool = False, limit: Optional[int] = None,
                       lookahead_days: Optional[int] = None) -> Dict[str, Any]:
    now = resolve_now(now)
    return {
        'reconcile': reconcile_ticket_statuses(now=now, limit=limit, dry_run=dry_run),
        'maintenance': auto_schedule_maintenance(now=now, lookahead_days=lookahead_days, dry_run=dry_run),
    }
