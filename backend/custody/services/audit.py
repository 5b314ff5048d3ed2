from __future__ import annotations
import logging
from typing import Any, Dict, Iterable, Optional
from flask_jwt_extended import get_jwt_identity, get_jwt
from custody import get_db
from custody.models.audit import AuditLog

logger = logging.getLogger(__name__)


def _jwt_context():
    claims: Dict[str, Any] = {}
    actor = None
    try:
        claims = get_jwt() or {}
        ident = get_jwt_identity()
        actor = int(ident) if ident is not None else None
    except RuntimeError:
        pass  # no request / JWT context (scripts, service-level tests)
    return claims, actor


def add_audit(action: str, entity: Optional[str] = None, entity_id: Optional[str] = None,
              meta: Optional[Dict[str, Any]] = None, actor_user_id: Optional[int] = None):
    """Persist an audit log entry within the current DB session.

    Parameters:
      action: short action code e.g. TKT.CREATE, RPR.COMPLETE, STATUS.CHANGE
      entity: optional entity name (Asset, ServiceTicket, ...)
      entity_id: optional primary key
      meta: additional JSON-safe dictionary (shallow copied)
    """
    session = get_db()
    claims, jwt_actor = _jwt_context()
    log = AuditLog(
        actor_user_id=actor_user_id if actor_user_id is not None else (jwt_actor or 0),
        action=action,
        entity=entity,
        entity_id=str(entity_id) if entity_id is not None else None,
        perms_snapshot={'perms': claims.get('perms', [])},
        meta=dict(meta or {}),
    )
    session.add(log)
    # No commit here; caller's transaction boundary controls durability.
    return log


def record_status_changes(changes: Iterable, actor_user_id: Optional[int] = None) -> int:
    """Write one STATUS.CHANGE row per change in its own transaction.

    Called after the lifecycle transaction committed; a failure here is logged and
    rolled back, never raised.
    """
    changes = list(changes)
    if not changes:
        return 0
    session = get_db()
    try:
        for ch in changes:
            add_audit('STATUS.CHANGE', ch.entity, ch.entity_id, ch.as_meta(), actor_user_id=actor_user_id)
        session.commit()
    except Exception:  # audit is advisory
        session.rollback()
        logger.warning('audit write failed for %d status changes', len(changes), exc_info=True)
        return 0
    return len(changes)
