"""
Unit-of-work helpers shared by the service modules.
"""

import logging
import time
from contextlib import contextmanager

from sqlalchemy.exc import IntegrityError

from models import db
from errors import ConflictError

logger = logging.getLogger(__name__)


@contextmanager
def atomic():
    """Run a block as one database transaction.

    Re-entrant: only the outermost block commits or rolls back, so a service
    operation that calls another service operation still lands as a single
    all-or-nothing write. IntegrityError (a concurrent writer won a unique
    key) is surfaced as ConflictError so callers treat it like a stale read.
    """
    session = db.session
    depth = session.info.get("atomic_depth", 0)
    session.info["atomic_depth"] = depth + 1
    try:
        yield session
        if depth == 0:
            session.commit()
    except IntegrityError as exc:
        if depth == 0:
            session.rollback()
        raise ConflictError("Concurrent write detected: {}".format(exc.orig)) from exc
    except Exception:
        if depth == 0:
            session.rollback()
        raise
    finally:
        session.info["atomic_depth"] = depth


def retry_on_conflict(fn, *args, attempts=3, backoff=0.05, **kwargs):
    """Call fn, re-running it when it raises ConflictError.

    Each attempt re-reads current state, so a retry never reuses the stale
    version that caused the conflict. The last ConflictError propagates.
    """
    for attempt in range(1, attempts + 1):
        try:
            return fn(*args, **kwargs)
        except ConflictError:
            if attempt == attempts:
                raise
            logger.info("Conflict in %s, retrying (%d/%d)", getattr(fn, "__name__", fn), attempt, attempts)
            time.sleep(backoff * attempt)
