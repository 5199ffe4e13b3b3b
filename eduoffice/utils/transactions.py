from contextlib import contextmanager

from eduoffice.extensions import db


@contextmanager
def atomic():
    """Run a block of writes as one unit: commit on success, roll back and re-raise otherwise."""
    try:
        yield db.session
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
