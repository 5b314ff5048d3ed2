"""Central enum-like definitions to avoid typos in permission/service strings.
Extend cautiously; never rename codes silently, add new ones and retire old ones via migration.
"""
from __future__ import annotations
from typing import List, Dict

SERVICES = ['ASSET', 'TKT', 'RPR', 'SHIP', 'PM', 'SYNC', 'ADMIN']

SERVICE_ACTIONS = {
    'ASSET': ['READ', 'CREATE', 'REPORT', 'DELETE'],
    'TKT': ['READ', 'CREATE', 'UPDATE', 'APPROVE', 'DELETE'],
    'RPR': ['READ', 'MANAGE', 'COMPLETE', 'DELETE'],
    'SHIP': ['READ', 'SEND', 'RECEIVE'],
    'PM': ['READ', 'CREATE', 'MANAGE', 'DELETE'],
    'SYNC': ['RUN'],
    # OVERRIDE gates destructive transitions on terminal records (closed tickets, completed orders)
    'ADMIN': ['USER.MANAGE', 'AUDIT.READ', 'OVERRIDE'],
}

OVERRIDE_PERMISSION = 'ADMIN.OVERRIDE'


def build_all_permission_codes() -> List[str]:
    codes: List[str] = []
    for svc, actions in SERVICE_ACTIONS.items():
        for act in actions:
            codes.append(f"{svc}.{act}")
    return codes

ALL_PERMISSION_CODES = build_all_permission_codes()

ROLE_PRESETS: Dict[str, List[str]] = {
    # Managing operator staff at field sites: report issues, ship out, confirm returns
    'Operator': [
        'ASSET.READ', 'ASSET.REPORT',
        'TKT.READ', 'TKT.CREATE', 'TKT.UPDATE',
        'SHIP.READ', 'SHIP.SEND', 'SHIP.RECEIVE',
        'PM.READ',
    ],
    # Repair center staff
    'Technician': [
        'ASSET.READ', 'ASSET.CREATE',
        'TKT.READ',
        'RPR.READ', 'RPR.MANAGE', 'RPR.COMPLETE',
        'SHIP.READ', 'SHIP.SEND', 'SHIP.RECEIVE',
        'PM.READ', 'PM.MANAGE',
    ],
    'Supervisor': [
        'ASSET.READ', 'ASSET.CREATE', 'ASSET.REPORT', 'ASSET.DELETE',
        'TKT.READ', 'TKT.CREATE', 'TKT.UPDATE', 'TKT.APPROVE', 'TKT.DELETE',
        'RPR.READ', 'RPR.MANAGE', 'RPR.COMPLETE', 'RPR.DELETE',
        'SHIP.READ', 'SHIP.SEND', 'SHIP.RECEIVE',
        'PM.READ', 'PM.CREATE', 'PM.MANAGE', 'PM.DELETE',
        'SYNC.RUN', 'ADMIN.AUDIT.READ',
    ],
    'Owner': ['*'],
}
