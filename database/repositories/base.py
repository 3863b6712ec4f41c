from sqlalchemy.orm import Session


class BaseRepository:
    def __init__(self, db: Session):
        self.db = db

    def _guarded_write(self, stmt) -> int:
        """
        Execute a bulk UPDATE/DELETE whose WHERE clause acts as the guard and
        return the number of rows it matched.

        Objects already loaded in the session are expired so later reads see
        the written values.
        """
        rowcount = self.db.execute(stmt.execution_options(synchronize_session=False)).rowcount
        self.db.expire_all()
        return rowcount
