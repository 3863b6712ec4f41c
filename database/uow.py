import contextlib
import logging

from database.database import SessionLocal, get_engine
from database.repository import AlertStore

logger = logging.getLogger(__name__)


@contextlib.contextmanager
def alert_uow():
    """Per-unit-of-work transaction scope.

    Yields an AlertStore bound to a fresh Session. Commits on success,
    rolls back on exception, always closes.

    Usage:
        with alert_uow() as store:
            alert = store.alerts.get_alert(alert_id)
            # perform operations...
        # commit happens automatically on successful exit
    """
    get_engine()
    session = SessionLocal()
    try:
        store = AlertStore(session)
        yield store
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
