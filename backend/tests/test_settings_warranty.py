from datetime import datetime

import pytest

from custody.config.settings import load_settings, normalize_pagination
from custody.services.errors import ValidationError
from custody.services.warranty import calculate_warranty


def test_load_settings_reads_environment():
    cfg = load_settings({'MAX_TICKET_ASSETS': '12', 'LOG_LEVEL': 'debug', 'WARRANTY_PERIODS': '{"4": 30}'})
    assert cfg['MAX_TICKET_ASSETS'] == 12
    assert cfg['LOG_LEVEL'] == 'DEBUG'
    assert cfg['WARRANTY_PERIODS'] == {4: 30}
    assert cfg['RECONCILE_BATCH_LIMIT'] == 100


def test_load_settings_rejects_non_integer():
    with pytest.raises(ValueError):
        load_settings({'RECONCILE_BATCH_LIMIT': 'lots'})


def test_pagination_is_clamped():
    assert normalize_pagination('500', '-3') == (200, 0)
    assert normalize_pagination(None, None) == (50, 0)


def test_default_warranty_outside_app_context():
    done = datetime(2024, 1, 31)
    w = calculate_warranty(None, done)
    assert w['period_days'] == 90
    assert w['end_date'] == datetime(2024, 4, 30)


def test_per_organization_warranty(app_context, monkeypatch):
    monkeypatch.setitem(app_context.config, 'WARRANTY_PERIODS', {5: 30, 6: 0})
    done = datetime(2024, 1, 1)
    assert calculate_warranty(5, done)['end_date'] == datetime(2024, 1, 31)
    assert calculate_warranty(7, done)['period_days'] == 90
    with pytest.raises(ValidationError):
        calculate_warranty(6, done)
