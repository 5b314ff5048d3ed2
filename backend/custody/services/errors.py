from __future__ import annotations
"""Domain error taxonomy.

Every error is a werkzeug ``HTTPException`` so route handlers can let it propagate
and the app-level error handler renders it with the standard JSON envelope. The
``context`` dict carries what a caller needs to pick a different target (current
status, conflicting ticket / work-order ids), never just a flag.
"""
from typing import Any, Dict, Optional
from werkzeug.exceptions import HTTPException


class CustodyError(HTTPException):
    code = 400
    kind = 'CUSTODY_ERROR'

    def __init__(self, description: Optional[str] = None, **context: Any):
        super().__init__(description=description)
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        return {'kind': self.kind, 'detail': self.description, 'context': self.context}


class NotFound(CustodyError):
    code = 404
    kind = 'NOT_FOUND'


class Conflict(CustodyError):
    code = 409
    kind = 'CONFLICT'


class PreconditionFailed(CustodyError):
    code = 422
    kind = 'PRECONDITION_FAILED'


class Forbidden(CustodyError):
    code = 403
    kind = 'FORBIDDEN'


class ValidationError(CustodyError):
    code = 400
    kind = 'VALIDATION'


class InvalidTransition(Conflict):
    kind = 'INVALID_TRANSITION'


__all__ = [
    'CustodyError', 'NotFound', 'Conflict', 'PreconditionFailed', 'Forbidden',
    'ValidationError', 'InvalidTransition',
]
