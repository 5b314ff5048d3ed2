"""Route-level audit decorator.

Status changes are audited by the Synchronization Engine; this decorator records
the *request* (who created, edited or deleted what) once the view has returned.

@audit_log('TKT.CREATE', entity='ServiceTicket', entity_id_key='id', meta_keys=['ticket_number', 'status'])
def create_ticket(): ...

@audit_log('TKT.UPDATE', entity='ServiceTicket', entity_id_arg='ticket_id',
           diff_keys=['title', 'priority'], pre_fetch=lambda a, kw: _snapshot(kw['ticket_id']))
def update_ticket(ticket_id): ...

Parameters:
  action: audit action code (e.g. TKT.CREATE)
  entity: entity label (Asset, ServiceTicket, RepairWorkOrder, MaintenanceTask)
  entity_id_key: key in the returned JSON object whose value becomes entity_id
  entity_id_arg: path parameter used for entity_id when the key is absent
  meta_keys: keys projected from the returned JSON into meta
  meta_builder: callable(data, rv, args, kwargs) -> meta; overrides meta_keys
  diff_keys / pre_fetch: record before/after values of these keys

Only successful (2xx) responses are audited. The audit row is committed on its
own; a failure there is logged and never changes the response.
"""
from __future__ import annotations
import logging
from functools import wraps
from typing import Any, Callable, Dict, Iterable, Optional

from custody import get_db
from custody.services.audit import add_audit

logger = logging.getLogger(__name__)


def _extract_payload(rv: Any):
    """(data, status) from a dict / (dict, status) / (dict, status, headers) view result."""
    if isinstance(rv, tuple) and rv:
        status = rv[1] if len(rv) > 1 and isinstance(rv[1], int) else 200
        return rv[0], status
    return rv, 200


def _diff(before: Dict[str, Any], after: Dict[str, Any], keys: Iterable[str]) -> Dict[str, Any]:
    changes = {}
    for k in keys:
        if k in before and k in after and before[k] != after[k]:
            changes[k] = {'before': before[k], 'after': after[k]}
    return changes


def audit_log(
    action: str,
    *,
    entity: Optional[str] = None,
    entity_id_key: Optional[str] = None,
    entity_id_arg: Optional[str] = None,
    meta_keys: Optional[Iterable[str]] = None,
    meta_builder: Optional[Callable[[dict, Any, tuple, dict], dict]] = None,
    diff_keys: Optional[Iterable[str]] = None,
    pre_fetch: Optional[Callable[[tuple, dict], Dict[str, Any]]] = None,
):
    def outer(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            before = None
            if diff_keys and pre_fetch:
                try:
                    before = pre_fetch(args, kwargs)
                except Exception:
                    logger.warning('audit pre-fetch failed for %s', action, exc_info=True)
            rv = fn(*args, **kwargs)
            data, status = _extract_payload(rv)
            if status >= 300:
                return rv
            if not isinstance(data, dict):
                data = {}
            entity_id = data.get(entity_id_key) if entity_id_key else None
            if entity_id is None and entity_id_arg:
                entity_id = kwargs.get(entity_id_arg)
            try:
                if meta_builder:
                    meta = meta_builder(data, rv, args, kwargs)
                else:
                    meta = {k: data.get(k) for k in (meta_keys or ()) if k in data}
                if before:
                    changes = _diff(before, data, diff_keys)
                    if changes:
                        meta['changes'] = changes
            except Exception:
                logger.warning('audit meta failed for %s %s#%s', action, entity, entity_id, exc_info=True)
                meta = None
            session = get_db()
            try:
                add_audit(action, entity, entity_id, meta)
                session.commit()
            except Exception:
                session.rollback()
                logger.warning('audit write failed for %s %s#%s', action, entity, entity_id, exc_info=True)
            return rv
        return wrapper
    return outer
