import logging
from datetime import datetime
from typing import List, Optional, Any, Iterable

from sqlalchemy import select, update, or_

from core.utils import as_uuid
from database.models import Result
from database.repositories.base import BaseRepository

logger = logging.getLogger(__name__)


def _marker_eligible(window_start: Optional[datetime], cycle_at: datetime):
    """
    SQL condition on last_sent_in_digest_at for one evaluation cycle.

    Eligible: never sent, stamped by this same cycle (sibling alerts of the
    monitor share the batch), or, for digests, last sent before window_start.
    """
    clauses = [
        Result.last_sent_in_digest_at.is_(None),
        Result.last_sent_in_digest_at == cycle_at,
    ]
    if window_start is not None:
        clauses.append(Result.last_sent_in_digest_at < window_start)
    return or_(*clauses)


class ResultRepository(BaseRepository):
    def get_candidate_results(
        self,
        monitor_id: Any,
        window_start: Optional[datetime],
        cycle_at: datetime,
        result_ids: Optional[Iterable[Any]] = None,
        limit: Optional[int] = None
    ) -> List[Result]:
        """
        Results of a monitor whose dedup marker allows sending in the cycle
        evaluated at cycle_at.

        window_start=None (instant alerts) never re-includes a result sent by
        an earlier cycle. Newest first.
        """
        stmt = select(Result).where(
            Result.monitor_id == as_uuid(monitor_id),
            Result.is_hidden.is_(False),
            _marker_eligible(window_start, cycle_at),
        )

        if result_ids is not None:
            stmt = stmt.where(Result.id.in_([as_uuid(r) for r in result_ids]))

        stmt = stmt.order_by(Result.created_at.desc())
        if limit is not None:
            stmt = stmt.limit(limit)

        return list(self.db.execute(stmt).scalars().all())

    def claim_for_dispatch(
        self,
        result_ids: List[Any],
        window_start: Optional[datetime],
        cycle_at: datetime
    ) -> List[Any]:
        """
        Stamp last_sent_in_digest_at=cycle_at on each result whose marker is
        still eligible, one conditional UPDATE per row.

        Returns the ids that were stamped, in input order. A result claimed
        by another cycle in the meantime is left out. The marker only moves
        forward: it is overwritten only when older than cycle_at.
        """
        claimed = []
        for result_id in result_ids:
            stmt = (
                update(Result)
                .where(Result.id == as_uuid(result_id), _marker_eligible(window_start, cycle_at))
                .values(last_sent_in_digest_at=cycle_at)
            )
            if self._guarded_write(stmt) == 1:
                claimed.append(result_id)

        if len(claimed) < len(result_ids):
            logger.warning(
                f"Dedup marker already claimed for {len(result_ids) - len(claimed)} "
                f"of {len(result_ids)} results"
            )
        return claimed

    def mark_viewed(self, result_id: Any, now: datetime) -> bool:
        stmt = (
            update(Result)
            .where(Result.id == as_uuid(result_id), Result.is_viewed.is_(False))
            .values(is_viewed=True, viewed_at=now)
        )
        return self._guarded_write(stmt) == 1

    def mark_clicked(self, result_id: Any, now: datetime) -> bool:
        stmt = (
            update(Result)
            .where(Result.id == as_uuid(result_id), Result.is_clicked.is_(False))
            .values(is_clicked=True, clicked_at=now)
        )
        return self._guarded_write(stmt) == 1
