import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import current_user_id
from ..cache import TTLCache
from ..db import get_session
from ..db_errors import STORAGE_ERRORS, classify_error
from ..dependencies import get_rankings_cache
from ..exceptions import ProblemDetail, SetNotFound
from ..models import LiveSet
from ..schemas import Bucket, CandidateSet, SetCountOut, SetCreate, SetImport, SetOut
from ..services.rating import DEFAULT_RATING
from ..services.repository import SetRepository
from ..time_utils import coerce_utc

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/sets",
    tags=["sets"],
    responses={401: {"model": ProblemDetail}, 404: {"model": ProblemDetail}},
)


def _to_set_out(live_set: LiveSet) -> SetOut:
    return SetOut(
        id=live_set.id,
        artist_name=live_set.artist_name,
        location_name=live_set.location_name,
        event_name=live_set.event_name,
        event_date=live_set.event_date,
        bucket=live_set.bucket,
        rating=live_set.rating,
        source=live_set.source,
        external_id=live_set.external_id,
        created_at=coerce_utc(live_set.created_at),
    )


async def _save_set(
    session: AsyncSession,
    cache: TTLCache,
    owner_id: str,
    candidate: CandidateSet,
    bucket: str,
    notes: Optional[str],
) -> SetOut:
    live_set = LiveSet(
        id=uuid.uuid4().hex,
        owner_id=owner_id,
        artist_name=candidate.artist_name,
        location_name=candidate.location_name,
        event_name=candidate.event_name,
        event_date=candidate.event_date,
        source=candidate.source,
        external_id=candidate.external_id,
        notes=notes,
        bucket=bucket,
        rating=DEFAULT_RATING,
    )
    session.add(live_set)
    try:
        await session.commit()
    except STORAGE_ERRORS as exc:
        await session.rollback()
        raise classify_error(exc, action="logging set") from exc
    await session.refresh(live_set)
    await cache.invalidate(owner_id)
    logger.info(
        "Logged %s set %s (%s) for owner %s",
        live_set.bucket,
        live_set.id,
        live_set.source,
        owner_id,
    )
    return _to_set_out(live_set)


# POST /api/v0/sets
@router.post("", response_model=SetOut, status_code=status.HTTP_201_CREATED)
async def log_set(
    body: SetCreate,
    owner_id: str = Depends(current_user_id),
    session: AsyncSession = Depends(get_session),
    cache: TTLCache = Depends(get_rankings_cache),
) -> SetOut:
    return await _save_set(session, cache, owner_id, body, body.bucket, body.notes)


# POST /api/v0/sets/import
@router.post("/import", response_model=SetOut, status_code=status.HTTP_201_CREATED)
async def import_set(
    body: SetImport,
    owner_id: str = Depends(current_user_id),
    session: AsyncSession = Depends(get_session),
    cache: TTLCache = Depends(get_rankings_cache),
) -> SetOut:
    candidate = CandidateSet.from_provider(body.provider, body.payload)
    return await _save_set(session, cache, owner_id, candidate, body.bucket, body.notes)


# GET /api/v0/sets/count?bucket=liked
@router.get("/count", response_model=SetCountOut)
async def count_sets(
    bucket: Optional[Bucket] = Query(None),
    owner_id: str = Depends(current_user_id),
    session: AsyncSession = Depends(get_session),
) -> SetCountOut:
    count = await SetRepository(session).count_sets(owner_id, bucket)
    return SetCountOut(count=count)


# GET /api/v0/sets/{set_id}
@router.get("/{set_id}", response_model=SetOut)
async def get_set(
    set_id: str,
    owner_id: str = Depends(current_user_id),
    session: AsyncSession = Depends(get_session),
) -> SetOut:
    live_set = await SetRepository(session).get_set(set_id)
    if live_set.owner_id != owner_id:
        raise SetNotFound(set_id)
    return _to_set_out(live_set)
