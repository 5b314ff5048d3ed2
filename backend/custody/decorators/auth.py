from functools import wraps
from flask_jwt_extended import verify_jwt_in_request
from custody.services.errors import Forbidden
from custody.services.policy import current_permissions


def require_permissions(*codes: str):
    """Reject the request unless the bearer token carries every code."""
    def outer(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            verify_jwt_in_request()
            missing = [c for c in codes if c not in current_permissions()]
            if missing:
                raise Forbidden('Missing permission', required=list(codes), missing=missing)
            return fn(*args, **kwargs)
        return wrapper
    return outer
