from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import current_user_id
from ..cache import TTLCache
from ..db import get_session
from ..dependencies import get_ranking_workflow, get_rankings_cache
from ..exceptions import ProblemDetail
from ..models import LiveSet
from ..schemas import (
    Bucket,
    Pair,
    RankedSetOut,
    RankingCancelOut,
    RankingDecideIn,
    RankingDecideOut,
    RankingListOut,
    RankingOpenIn,
    RankingOpenOut,
)
from ..services.repository import SetRepository
from ..services.workflow import RankingWorkflow
from ..time_utils import coerce_utc

# Resource-only prefix; no /api or /api/v0 here
router = APIRouter(
    prefix="/rankings",
    tags=["rankings"],
    responses={
        401: {"model": ProblemDetail},
        409: {"model": ProblemDetail},
        503: {"model": ProblemDetail},
    },
)


def _pair(pair: Optional[tuple[str, str]]) -> Optional[Pair]:
    if pair is None:
        return None
    return Pair(a=pair[0], b=pair[1])


def _ranked_out(row: LiveSet, rank: int) -> RankedSetOut:
    return RankedSetOut(
        id=row.id,
        artist_name=row.artist_name,
        location_name=row.location_name,
        event_name=row.event_name,
        event_date=row.event_date,
        bucket=row.bucket,
        rating=row.rating,
        source=row.source,
        external_id=row.external_id,
        created_at=coerce_utc(row.created_at),
        rank=rank,
    )


# POST /api/v0/rankings/open
@router.post("/open", response_model=RankingOpenOut, response_model_exclude_none=True)
async def open_ranking(
    body: RankingOpenIn,
    owner_id: str = Depends(current_user_id),
    workflow: RankingWorkflow = Depends(get_ranking_workflow),
) -> RankingOpenOut:
    result = await workflow.open(body.set_id, owner_id)
    return RankingOpenOut(skip=result.skip, first_pair=_pair(result.pair))


# POST /api/v0/rankings/decide
@router.post("/decide", response_model=RankingDecideOut, response_model_exclude_none=True)
async def decide_ranking(
    body: RankingDecideIn,
    owner_id: str = Depends(current_user_id),
    workflow: RankingWorkflow = Depends(get_ranking_workflow),
) -> RankingDecideOut:
    result = await workflow.decide(
        owner_id, body.winner_id, idempotency_token=body.idempotency_token
    )
    return RankingDecideOut(done=result.done, next_pair=_pair(result.next_pair))


# POST /api/v0/rankings/cancel
@router.post("/cancel", response_model=RankingCancelOut)
async def cancel_ranking(
    owner_id: str = Depends(current_user_id),
    workflow: RankingWorkflow = Depends(get_ranking_workflow),
) -> RankingCancelOut:
    await workflow.cancel(owner_id)
    return RankingCancelOut(closed=True)


# GET /api/v0/rankings?bucket=liked
@router.get("", response_model=RankingListOut, response_model_exclude_none=True)
async def list_rankings(
    bucket: Optional[Bucket] = Query(None, description="Only rank sets in this bucket"),
    owner_id: str = Depends(current_user_id),
    session: AsyncSession = Depends(get_session),
    cache: TTLCache = Depends(get_rankings_cache),
) -> RankingListOut:
    cache_key = (owner_id, bucket)
    cached = await cache.get(cache_key)
    if cached is not None:
        return cached

    rows = await SetRepository(session).ranked_sets(owner_id, bucket)
    out = RankingListOut(
        bucket=bucket,
        items=[_ranked_out(row, rank) for rank, row in enumerate(rows, start=1)],
    )
    await cache.set(cache_key, out)
    return out
