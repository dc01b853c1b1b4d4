"""Offload synchronous ORM work from the event loop.

Every store call from a socket handler runs in the threadpool with its own
short-lived session, behind a bounded semaphore so a burst of socket traffic
cannot exhaust the connection pool.
"""

from __future__ import annotations

import logging
from threading import BoundedSemaphore
from typing import Any, Callable, Optional

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import SQLAlchemyError

from .. import database
from ..core.config import settings
from ..utils.metrics import incr as metrics_incr
from .errors import DependencyError

logger = logging.getLogger(__name__)

_DB_SEM: Optional[BoundedSemaphore] = None


def _get_db_sem() -> BoundedSemaphore:
    global _DB_SEM
    if _DB_SEM is None:
        cap = settings.WS_DB_CONCURRENCY if settings.WS_DB_CONCURRENCY > 0 else 8
        _DB_SEM = BoundedSemaphore(cap)
    return _DB_SEM


def _call_with_session(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    sem = _get_db_sem()
    # Acquired in the worker thread so a saturated pool never blocks the loop
    with sem:
        with database.get_db_session() as db:
            try:
                return fn(db, *args, **kwargs)
            except SQLAlchemyError as exc:
                db.rollback()
                metrics_incr("realtime.store.fail", tags={"fn": getattr(fn, "__name__", "?")})
                logger.exception("Store call %s failed", getattr(fn, "__name__", fn))
                raise DependencyError("Storage temporarily unavailable") from exc


async def db_call(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run ``fn(db, *args, **kwargs)`` in the threadpool with a fresh session."""
    return await run_in_threadpool(_call_with_session, fn, *args, **kwargs)
