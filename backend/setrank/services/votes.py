from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy.orm import sessionmaker

from ..cache import TTLCache
from ..db_errors import STORAGE_ERRORS, classify_error, is_unique_violation
from ..exceptions import (
    AuthError,
    DomainException,
    FatalError,
    SetNotFound,
    ValidationError,
)
from ..time_utils import utcnow
from .rating import K_FACTOR, update_ratings
from .repository import ComparisonStore, SetRepository
from .retry import transient_retrying

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VoteResult:
    comparison_id: str
    winner_id: str
    loser_id: str
    winner_rating: float
    loser_rating: float
    duplicate: bool = False


def comparison_key(
    owner_id: str, winner_id: str, loser_id: str, idempotency_token: str | None = None
) -> str:
    """Dedup key for one vote.

    Without a token the key covers only the ``(owner, winner, loser)`` triple,
    so resubmitting the same decision is reconciled rather than re-applied.
    """

    raw = "|".join([owner_id, winner_id, loser_id, idempotency_token or ""])
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class VoteSubmitter:
    """Apply one comparison: record it and move both ratings atomically.

    The comparison insert and both rating writes share a single transaction.
    Ratings are written with compare-and-swap so two concurrent votes touching
    the same set cannot silently overwrite each other; the loser of that race
    gets ``ConflictError`` and nothing from its vote is committed.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        k_factor: float = K_FACTOR,
        retry_attempts: int = 3,
        retry_wait: float = 0.2,
        step_timeout: float | None = 5.0,
        cache: TTLCache | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if k_factor <= 0:
            raise ValueError("k_factor must be positive")
        self.session_factory = session_factory
        self.k_factor = k_factor
        self.retry_attempts = retry_attempts
        self.retry_wait = retry_wait
        self.step_timeout = step_timeout
        self.cache = cache
        self.clock = clock

    async def submit_vote(
        self,
        winner_id: str,
        loser_id: str,
        owner_id: str,
        *,
        auth_user_id: str | None,
        idempotency_token: str | None = None,
    ) -> VoteResult:
        if auth_user_id is None or auth_user_id != owner_id:
            raise AuthError("not authenticated as the owner of these sets")
        if winner_id == loser_id:
            raise ValidationError(
                "a set cannot be compared with itself", code="self_comparison"
            )

        key = comparison_key(owner_id, winner_id, loser_id, idempotency_token)
        async for attempt in transient_retrying(self.retry_attempts, self.retry_wait):
            with attempt:
                result = await self._apply(winner_id, loser_id, owner_id, key)

        if result.duplicate:
            logger.info(
                "Duplicate vote %s>%s for owner %s reconciled without rating change",
                winner_id,
                loser_id,
                owner_id,
            )
        elif self.cache is not None:
            await self.cache.invalidate(owner_id)
        return result

    async def _apply(
        self, winner_id: str, loser_id: str, owner_id: str, key: str
    ) -> VoteResult:
        try:
            return await asyncio.wait_for(
                self._write_vote(winner_id, loser_id, owner_id, key), self.step_timeout
            )
        except DomainException:
            raise
        except STORAGE_ERRORS as exc:
            if is_unique_violation(exc, "comparison_key"):
                # A concurrent request with the same key committed first.
                return await self._reconcile(key, winner_id, loser_id)
            error = classify_error(exc, action="vote submission")
            if isinstance(error, FatalError):
                logger.exception("Vote submission %s>%s failed", winner_id, loser_id)
            raise error from exc

    async def _write_vote(
        self, winner_id: str, loser_id: str, owner_id: str, key: str
    ) -> VoteResult:
        async with self.session_factory() as session:
            async with session.begin():
                sets = SetRepository(session)
                store = ComparisonStore(session)

                existing = await store.get_by_key(key)
                if existing is not None:
                    return await self._duplicate_result(sets, existing.id, winner_id, loser_id)

                winner = await sets.get_set(winner_id)
                loser = await sets.get_set(loser_id)
                # Someone else's set is reported as missing, not forbidden.
                if winner.owner_id != owner_id:
                    raise SetNotFound(winner_id)
                if loser.owner_id != owner_id:
                    raise SetNotFound(loser_id)
                if winner.bucket != loser.bucket:
                    raise ValidationError(
                        f"sets are in different buckets ({winner.bucket!r} vs {loser.bucket!r})",
                        code="bucket_mismatch",
                    )

                old_winner, old_loser = winner.rating, loser.rating
                new_winner, new_loser = update_ratings(old_winner, old_loser, self.k_factor)

                comparison = await store.append_comparison(
                    winner_id, loser_id, owner_id, self.clock(), comparison_key=key
                )
                await sets.set_rating(winner_id, new_winner, expected=old_winner)
                await sets.set_rating(loser_id, new_loser, expected=old_loser)

                logger.info(
                    "Applied vote %s>%s for owner %s: %.2f->%.2f, %.2f->%.2f",
                    winner_id,
                    loser_id,
                    owner_id,
                    old_winner,
                    new_winner,
                    old_loser,
                    new_loser,
                )
                return VoteResult(
                    comparison_id=comparison.id,
                    winner_id=winner_id,
                    loser_id=loser_id,
                    winner_rating=new_winner,
                    loser_rating=new_loser,
                )

    async def _reconcile(self, key: str, winner_id: str, loser_id: str) -> VoteResult:
        try:
            return await asyncio.wait_for(
                self._read_duplicate(key, winner_id, loser_id), self.step_timeout
            )
        except DomainException:
            raise
        except STORAGE_ERRORS as exc:
            raise classify_error(exc, action="vote reconciliation") from exc

    async def _read_duplicate(self, key: str, winner_id: str, loser_id: str) -> VoteResult:
        async with self.session_factory() as session:
            existing = await ComparisonStore(session).get_by_key(key)
            if existing is None:
                raise FatalError(
                    "comparison key conflict without a stored comparison",
                    code="storage_error",
                )
            return await self._duplicate_result(
                SetRepository(session), existing.id, winner_id, loser_id
            )

    @staticmethod
    async def _duplicate_result(
        sets: SetRepository, comparison_id: str, winner_id: str, loser_id: str
    ) -> VoteResult:
        return VoteResult(
            comparison_id=comparison_id,
            winner_id=winner_id,
            loser_id=loser_id,
            winner_rating=await sets.get_rating(winner_id),
            loser_rating=await sets.get_rating(loser_id),
            duplicate=True,
        )
