"""Storage operations the ranking engine relies on.

``SetRepository`` and ``ComparisonStore`` wrap an ``AsyncSession`` and never
commit on their own; transaction boundaries belong to the caller.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Sequence

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..exceptions import ConflictError, SetNotFound
from ..models import Comparison, LiveSet


class SetRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_sets_by_owner_and_bucket(
        self, owner_id: str, bucket: str
    ) -> Sequence[LiveSet]:
        rows = (
            await self.session.execute(
                select(LiveSet)
                .where(LiveSet.owner_id == owner_id, LiveSet.bucket == bucket)
                .order_by(LiveSet.created_at, LiveSet.id)
            )
        ).scalars().all()
        return rows

    async def get_set(self, set_id: str) -> LiveSet:
        live_set = await self.session.get(LiveSet, set_id)
        if live_set is None:
            raise SetNotFound(set_id)
        return live_set

    async def get_rating(self, set_id: str) -> float:
        value = (
            await self.session.execute(select(LiveSet.rating).where(LiveSet.id == set_id))
        ).scalar_one_or_none()
        if value is None:
            raise SetNotFound(set_id)
        return value

    async def set_rating(
        self, set_id: str, new_rating: float, *, expected: float | None = None
    ) -> None:
        """Write ``new_rating``; with ``expected`` this is a compare-and-swap.

        A CAS miss means another vote changed the rating after we read it, so
        ``ConflictError`` is raised instead of overwriting that update.
        """

        stmt = update(LiveSet).where(LiveSet.id == set_id)
        if expected is not None:
            stmt = stmt.where(LiveSet.rating == expected)
        result = await self.session.execute(
            stmt.values(rating=new_rating).execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            if expected is None:
                raise SetNotFound(set_id)
            raise ConflictError(
                f"rating of set '{set_id}' changed concurrently",
                code="rating_conflict",
            )

    async def count_sets(self, owner_id: str, bucket: str | None = None) -> int:
        stmt = select(func.count(LiveSet.id)).where(LiveSet.owner_id == owner_id)
        if bucket is not None:
            stmt = stmt.where(LiveSet.bucket == bucket)
        return (await self.session.execute(stmt)).scalar_one()

    async def ranked_sets(
        self, owner_id: str, bucket: str | None = None
    ) -> Sequence[LiveSet]:
        """Return the owner's sets best-first; ties go to the newest set."""

        stmt = select(LiveSet).where(LiveSet.owner_id == owner_id)
        if bucket is not None:
            stmt = stmt.where(LiveSet.bucket == bucket)
        stmt = stmt.order_by(LiveSet.rating.desc(), LiveSet.created_at.desc(), LiveSet.id)
        return (await self.session.execute(stmt)).scalars().all()


class ComparisonStore:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def append_comparison(
        self,
        winner_id: str,
        loser_id: str,
        owner_id: str,
        timestamp: datetime,
        *,
        comparison_key: str,
    ) -> Comparison:
        comparison = Comparison(
            id=uuid.uuid4().hex,
            owner_id=owner_id,
            winner_set_id=winner_id,
            loser_set_id=loser_id,
            comparison_key=comparison_key,
            compared_at=timestamp,
        )
        self.session.add(comparison)
        await self.session.flush()
        return comparison

    async def get_by_key(self, comparison_key: str) -> Comparison | None:
        return (
            await self.session.execute(
                select(Comparison).where(Comparison.comparison_key == comparison_key)
            )
        ).scalar_one_or_none()

    async def count_for_sets(self, set_ids: Sequence[str]) -> dict[str, int]:
        """Return how many comparisons each of ``set_ids`` took part in."""

        counts = {sid: 0 for sid in set_ids}
        if not counts:
            return counts
        rows = (
            await self.session.execute(
                select(Comparison.winner_set_id, Comparison.loser_set_id).where(
                    Comparison.winner_set_id.in_(list(counts))
                    | Comparison.loser_set_id.in_(list(counts))
                )
            )
        ).all()
        for winner_id, loser_id in rows:
            if winner_id in counts:
                counts[winner_id] += 1
            if loser_id in counts:
                counts[loser_id] += 1
        return counts
