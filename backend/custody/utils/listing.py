from __future__ import annotations
"""Listing helpers shared by the collection endpoints.

A listing is: filter -> multi-field sort -> paginate -> JSON page with
``data`` + ``pagination`` and a weak cache validator (ETag / Last-Modified).
"""
from typing import Callable, Dict, Iterable, Optional, Tuple
from datetime import datetime, timezone, timedelta
from email.utils import parsedate_to_datetime, format_datetime
import hashlib

from flask import request, make_response
from sqlalchemy.orm import Query

from custody.config.settings import normalize_pagination
from custody.services.errors import ValidationError

TIMESTAMP_TOLERANCE = timedelta(seconds=1)


def canonicalize_timestamp(dt: datetime) -> datetime:
    """Return UTC tz-aware timestamp truncated to whole seconds."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.replace(microsecond=0)


def apply_multi_sort(query, sort_expr: Optional[str], allowed: dict, tie_breaker):
    """Apply ``sort=-updated_at,status`` style ordering.

    Unknown keys are rejected rather than ignored.
    """
    if not sort_expr:
        return query.order_by(tie_breaker.asc())
    clauses = []
    for raw in sort_expr.split(','):
        token = raw.strip()
        if not token:
            continue
        desc = token.startswith('-')
        key = token[1:] if desc else token
        col = allowed.get(key)
        if col is None:
            raise ValidationError(f'Invalid sort field {key}', field='sort', allowed=sorted(allowed))
        clauses.append(col.desc() if desc else col.asc())
    clauses.append(tie_breaker.asc())
    return query.order_by(*clauses)


def apply_filters(query, specs: Dict[str, Callable], params) -> Query:
    """specs: {param_name: callable(query, value) -> query}; empty params are skipped."""
    for name, op in specs.items():
        val = params.get(name)
        if val is None or val == '':
            continue
        query = op(query, val)
    return query


def apply_pagination(q: Query) -> Tuple[Query, int, int, int]:
    try:
        limit, offset = normalize_pagination(request.args.get('limit'), request.args.get('offset'))
    except ValueError as e:
        raise ValidationError(str(e), field='limit/offset')
    total = q.count()
    return q.offset(offset).limit(limit), total, limit, offset


def compute_etag(ids: Iterable[int], total: int, limit: int, offset: int, latest_ts: Optional[str] = '') -> str:
    seed = f"{list(ids)}|{total}|{limit}|{offset}|{latest_ts or ''}"
    return hashlib.sha256(seed.encode()).hexdigest()[:32]


def _http_date(dt: datetime) -> str:
    return format_datetime(dt, usegmt=True)


def make_cached_list_response(rows: list, total: int, limit: int, offset: int, latest_ts: Optional[datetime] = None):
    ids = [r.get('id') for r in rows]
    latest_c = canonicalize_timestamp(latest_ts) if isinstance(latest_ts, datetime) else None
    latest_iso = latest_c.isoformat().replace('+00:00', 'Z') if latest_c else ''
    etag = compute_etag(ids, total, limit, offset, latest_iso)
    resp = make_response({
        'data': rows,
        'pagination': {'total': total, 'limit': limit, 'offset': offset, 'returned': len(rows)},
    })
    resp.headers['ETag'] = etag
    if latest_c:
        resp.headers['Last-Modified'] = _http_date(latest_c)
    return resp, etag


def _parse_if_modified_since(header_val: str) -> Optional[datetime]:
    try:
        dt = parsedate_to_datetime(header_val)
    except (TypeError, ValueError):
        return None
    if dt and dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def handle_conditional(etag_value: str, latest_ts: Optional[datetime]):
    """Return a 304 response when If-None-Match / If-Modified-Since match, else None.

    If-None-Match takes precedence over If-Modified-Since.
    """
    inm = request.headers.get('If-None-Match')
    if inm and inm.strip('"') == etag_value:
        resp = make_response('', 304)
        resp.headers['ETag'] = etag_value
        return resp
    ims_raw = request.headers.get('If-Modified-Since')
    if not inm and ims_raw and latest_ts:
        ims_dt = _parse_if_modified_since(ims_raw)
        if ims_dt and canonicalize_timestamp(latest_ts) <= canonicalize_timestamp(ims_dt) + TIMESTAMP_TOLERANCE:
            resp = make_response('', 304)
            resp.headers['ETag'] = etag_value
            return resp
    return None


def list_response(q: Query, serialize: Callable, sort_fields: dict, tie_breaker, updated_col=None):
    """Sort, paginate and serialize ``q`` into a cached list response (or a 304)."""
    q = apply_multi_sort(q, request.args.get('sort'), sort_fields, tie_breaker)
    paged_q, total, limit, offset = apply_pagination(q)
    rows = paged_q.all()
    latest_ts = None
    if updated_col is not None and rows:
        stamps = [getattr(r, updated_col) for r in rows if getattr(r, updated_col, None)]
        latest_ts = max(stamps) if stamps else None
    resp, etag = make_cached_list_response([serialize(r) for r in rows], total, limit, offset, latest_ts)
    cond = handle_conditional(etag, latest_ts)
    return cond or resp

__all__ = [
    'apply_multi_sort', 'apply_filters', 'apply_pagination', 'compute_etag',
    'make_cached_list_response', 'handle_conditional', 'list_response',
]
