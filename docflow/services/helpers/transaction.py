"""
Transaction boundary helper for multi-entity workflow mutations.

Every mutating workflow operation runs its reads and writes inside one
``transaction()`` block:

    with transaction(resource="WorkflowInstance", resource_id=instance_id):
        instance = db.session.get(WorkflowInstance, instance_id)
        ...                      # reads + writes on db.session

On normal exit the session is committed. On any exception the session is
rolled back and the original exception re-raised, except SQLAlchemy's
``StaleDataError`` (lost optimistic-version race) which is re-raised as
``ConcurrentModificationError``. The connection goes back to the pool when
Flask-SQLAlchemy removes the scoped session at app-context teardown.
"""

import logging
from contextlib import contextmanager

from sqlalchemy.orm.exc import StaleDataError

from docflow.core.exceptions import ConcurrentModificationError
from docflow.models import db

logger = logging.getLogger(__name__)


@contextmanager
def transaction(resource: str = "Record", resource_id=None):
    session = db.session
    try:
        yield session
        session.commit()
    except StaleDataError as exc:
        session.rollback()
        logger.warning("Stale write on %s id=%s: %s", resource, resource_id, exc)
        raise ConcurrentModificationError(resource, resource_id) from exc
    except Exception:
        session.rollback()
        raise
