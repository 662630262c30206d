"""Application-scoped ranking components.

The workflow (which holds the per-user session registry) and the ranked-list
cache live on ``app.state`` so every request shares them. They are built on
first use; tests may assign their own instances to ``app.state`` beforehand.
"""

from fastapi import Request

from . import config
from .cache import TTLCache
from .db import get_session_factory
from .services.queue import ShuffleOrdering
from .services.votes import VoteSubmitter
from .services.workflow import RankingWorkflow


def build_ranking_workflow(session_factory, cache: TTLCache | None = None) -> RankingWorkflow:
    submitter = VoteSubmitter(
        session_factory,
        k_factor=config.ELO_K_FACTOR,
        retry_attempts=config.RANKING_RETRY_ATTEMPTS,
        retry_wait=config.RANKING_RETRY_WAIT_SECONDS,
        step_timeout=config.RANKING_STEP_TIMEOUT_SECONDS,
        cache=cache,
    )
    return RankingWorkflow(
        session_factory,
        submitter,
        max_comparisons=config.RANKING_MAX_COMPARISONS,
        ordering=ShuffleOrdering(config.RANKING_QUEUE_SEED),
        retry_attempts=config.RANKING_RETRY_ATTEMPTS,
        retry_wait=config.RANKING_RETRY_WAIT_SECONDS,
        step_timeout=config.RANKING_STEP_TIMEOUT_SECONDS,
        session_ttl_seconds=config.RANKING_SESSION_TTL_SECONDS,
    )


def get_rankings_cache(request: Request) -> TTLCache:
    cache = getattr(request.app.state, "rankings_cache", None)
    if cache is None:
        cache = TTLCache(ttl_seconds=config.RANKINGS_CACHE_TTL_SECONDS)
        request.app.state.rankings_cache = cache
    return cache


def get_ranking_workflow(request: Request) -> RankingWorkflow:
    workflow = getattr(request.app.state, "ranking_workflow", None)
    if workflow is None:
        workflow = build_ranking_workflow(
            get_session_factory(), get_rankings_cache(request)
        )
        request.app.state.ranking_workflow = workflow
    return workflow
