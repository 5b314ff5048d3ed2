"""Runtime settings for the custody lifecycle rules.

Values come from the environment (``.env`` is loaded by the app factory) and can be
overridden per app via ``create_app({...})``. Services read them through
``current_app.config`` with :func:`setting`, which falls back to these defaults when
called outside an application context (scripts, unit tests of pure helpers).
"""
from __future__ import annotations
import json
from typing import Any, Dict, Mapping

DEFAULTS: Dict[str, Any] = {
    'LOG_LEVEL': 'INFO',
    'MAX_TICKET_ASSETS': 30,
    'AVAILABILITY_BATCH_LIMIT': 100,
    'RECONCILE_BATCH_LIMIT': 100,
    'MAINTENANCE_LOOKAHEAD_DAYS': 7,
    'MAINTENANCE_INTERVAL_DAYS': 90,
    'WARRANTY_PERIOD_DAYS': 90,
    # organization id -> warranty days
    'WARRANTY_PERIODS': {},
}

_INT_KEYS = (
    'MAX_TICKET_ASSETS',
    'AVAILABILITY_BATCH_LIMIT',
    'RECONCILE_BATCH_LIMIT',
    'MAINTENANCE_LOOKAHEAD_DAYS',
    'MAINTENANCE_INTERVAL_DAYS',
    'WARRANTY_PERIOD_DAYS',
)


def load_settings(env: Mapping[str, str]) -> Dict[str, Any]:
    out = dict(DEFAULTS)
    out['WARRANTY_PERIODS'] = {}
    if env.get('LOG_LEVEL'):
        out['LOG_LEVEL'] = env['LOG_LEVEL'].upper()
    for key in _INT_KEYS:
        raw = env.get(key)
        if raw is None or raw == '':
            continue
        try:
            out[key] = int(raw)
        except ValueError:
            raise ValueError(f'{key} must be an integer, got {raw!r}')
    raw_periods = env.get('WARRANTY_PERIODS')
    if raw_periods:
        parsed = json.loads(raw_periods)
        out['WARRANTY_PERIODS'] = {int(k): int(v) for k, v in parsed.items()}
    return out


def setting(key: str):
    from flask import current_app, has_app_context
    if has_app_context():
        return current_app.config.get(key, DEFAULTS.get(key))
    return DEFAULTS.get(key)


DEFAULT_PAGE_LIMIT = 50
MAX_PAGE_LIMIT = 200


def normalize_pagination(limit_raw, offset_raw):
    try:
        limit = int(limit_raw) if limit_raw is not None else DEFAULT_PAGE_LIMIT
        offset = int(offset_raw) if offset_raw is not None else 0
    except ValueError:
        raise ValueError('limit/offset must be int')
    return max(1, min(limit, MAX_PAGE_LIMIT)), max(0, offset)
