"""Opponent queue construction for newly logged sets."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from typing import Mapping, Protocol, Sequence

from ..exceptions import ValidationError
from ..models import LiveSet
from .repository import ComparisonStore, SetRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueueResult:
    skip: bool
    queue: list[str] = field(default_factory=list)


class OrderingPolicy(Protocol):
    uses_comparison_counts: bool

    def order(
        self, candidates: Sequence[LiveSet], comparison_counts: Mapping[str, int]
    ) -> list[LiveSet]:
        ...


class ShuffleOrdering:
    """Random order; deterministic for a fixed ``seed``."""

    uses_comparison_counts = False

    def __init__(self, seed: int | None = None) -> None:
        self.seed = seed

    def order(
        self, candidates: Sequence[LiveSet], comparison_counts: Mapping[str, int]
    ) -> list[LiveSet]:
        # Sort first so the seed alone decides the result, not storage order.
        ordered = sorted(candidates, key=lambda s: s.id)
        random.Random(self.seed).shuffle(ordered)
        return ordered


class LeastComparedOrdering:
    """Sets with the fewest recorded comparisons first, ties shuffled."""

    uses_comparison_counts = True

    def __init__(self, seed: int | None = None) -> None:
        self._tiebreak = ShuffleOrdering(seed)

    def order(
        self, candidates: Sequence[LiveSet], comparison_counts: Mapping[str, int]
    ) -> list[LiveSet]:
        shuffled = self._tiebreak.order(candidates, comparison_counts)
        # sorted() is stable, so the shuffle survives within each count.
        return sorted(shuffled, key=lambda s: comparison_counts.get(s.id, 0))


async def build_queue(
    repository: SetRepository,
    new_set_id: str,
    owner_id: str,
    bucket: str,
    max_size: int,
    *,
    ordering: OrderingPolicy | None = None,
    comparisons: ComparisonStore | None = None,
) -> QueueResult:
    """Select the opponents ``new_set_id`` must be compared against.

    Returns ``skip=True`` with an empty queue when the owner has no other set
    in ``bucket``; this covers both the first set ever logged and the first
    set in a bucket. Otherwise up to ``max_size`` opponent ids are returned
    in the order chosen by ``ordering`` (``ShuffleOrdering`` by default).
    """

    if max_size < 1:
        raise ValidationError("max_size must be at least 1", code="invalid_queue_size")

    same_bucket = await repository.get_sets_by_owner_and_bucket(owner_id, bucket)
    candidates = [s for s in same_bucket if s.id != new_set_id]
    if not candidates:
        logger.info(
            "No %s sets to compare set %s against for owner %s; skipping ranking",
            bucket,
            new_set_id,
            owner_id,
        )
        return QueueResult(skip=True)

    policy = ordering or ShuffleOrdering()
    counts: Mapping[str, int] = {}
    if policy.uses_comparison_counts:
        if comparisons is None:
            raise ValueError(f"{type(policy).__name__} requires a ComparisonStore")
        counts = await comparisons.count_for_sets([s.id for s in candidates])

    ordered = policy.order(candidates, counts)
    queue = [s.id for s in ordered[:max_size]]
    logger.debug(
        "Built queue of %d/%d opponents for set %s", len(queue), len(candidates), new_set_id
    )
    return QueueResult(skip=False, queue=queue)
