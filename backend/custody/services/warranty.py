from __future__ import annotations
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from custody.config.settings import setting
from custody.services.errors import ValidationError


def warranty_period_days(organization_id: Optional[int]) -> int:
    periods = setting('WARRANTY_PERIODS') or {}
    if organization_id is not None and organization_id in periods:
        return int(periods[organization_id])
    return int(setting('WARRANTY_PERIOD_DAYS'))


def calculate_warranty(organization_id: Optional[int], repair_completion_date: datetime) -> Dict[str, Any]:
    """Warranty window granted for a repair that passed quality check."""
    days = warranty_period_days(organization_id)
    if days <= 0:
        raise ValidationError('warranty period must be positive', organization_id=organization_id, period_days=days)
    return {
        'period_days': days,
        'start_date': repair_completion_date,
        'end_date': repair_completion_date + timedelta(days=days),
    }
