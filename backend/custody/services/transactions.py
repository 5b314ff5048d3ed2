from __future__ import annotations
from contextlib import contextmanager
from custody import get_db


@contextmanager
def transaction():
    """One commit per lifecycle event; any error rolls the whole event back."""
    session = get_db()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
