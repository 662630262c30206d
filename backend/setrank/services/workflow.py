"""Ranking workflow: a pure state machine plus the async driver around it.

``RankingSession.transition`` takes an event and returns the new state and
the effects the caller must carry out; it performs no I/O. ``RankingWorkflow``
owns the per-user session registry, runs the effects (queue loading, vote
submission) and feeds their outcomes back in as events.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Optional

from sqlalchemy.orm import sessionmaker

from ..db_errors import STORAGE_ERRORS, classify_error
from ..exceptions import ConflictError, NotFoundError, SetNotFound, ValidationError
from .queue import OrderingPolicy, build_queue
from .repository import ComparisonStore, SetRepository
from .retry import transient_retrying
from .votes import VoteResult, VoteSubmitter

logger = logging.getLogger(__name__)


class WorkflowState(str, enum.Enum):
    CLOSED = "closed"
    INITIALIZING = "initializing"
    AWAITING_COMPARISON = "awaiting_comparison"
    SUBMITTING = "submitting"
    ERROR = "error"


# Events


@dataclass(frozen=True)
class Open:
    set_id: str


@dataclass(frozen=True)
class QueueLoaded:
    bucket: str
    queue: tuple[str, ...]


@dataclass(frozen=True)
class LoadFailed:
    error: BaseException


@dataclass(frozen=True)
class Decide:
    winner_id: str


@dataclass(frozen=True)
class VoteSucceeded:
    pass


@dataclass(frozen=True)
class VoteFailed:
    error: BaseException


@dataclass(frozen=True)
class Cancel:
    pass


@dataclass(frozen=True)
class Close:
    pass


# Effects


@dataclass(frozen=True)
class LoadQueue:
    set_id: str


@dataclass(frozen=True)
class Skip:
    pass


@dataclass(frozen=True)
class PresentPair:
    a: str
    b: str


@dataclass(frozen=True)
class SubmitVote:
    winner_id: str
    loser_id: str
    position: int


@dataclass(frozen=True)
class Complete:
    pass


@dataclass(frozen=True)
class Abort:
    error: Optional[BaseException] = None


@dataclass
class RankingSession:
    """In-memory state of one ranking pass; never persisted."""

    owner_id: str
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    new_set_id: Optional[str] = None
    bucket: Optional[str] = None
    queue: tuple[str, ...] = ()
    position: int = 0
    state: WorkflowState = WorkflowState.CLOSED

    @property
    def current_pair(self) -> Optional[tuple[str, str]]:
        if self.state is not WorkflowState.AWAITING_COMPARISON:
            return None
        return self.new_set_id, self.queue[self.position]

    @property
    def remaining(self) -> int:
        return max(len(self.queue) - self.position, 0)

    def transition(self, event) -> tuple[WorkflowState, list]:
        state = self.state
        S = WorkflowState

        if isinstance(event, Open) and state is S.CLOSED:
            self.new_set_id = event.set_id
            self.bucket = None
            self.queue = ()
            self.position = 0
            return self._move(S.INITIALIZING, [LoadQueue(event.set_id)])

        if isinstance(event, QueueLoaded) and state is S.INITIALIZING:
            self.bucket = event.bucket
            self.queue = tuple(event.queue)
            self.position = 0
            if not self.queue:
                return self._move(S.CLOSED, [Skip()])
            return self._move(S.AWAITING_COMPARISON, [self._present()])

        if isinstance(event, LoadFailed) and state is S.INITIALIZING:
            return self._move(S.ERROR, [Abort(event.error)])

        if isinstance(event, Decide) and state is S.AWAITING_COMPARISON:
            opponent = self.queue[self.position]
            if event.winner_id == self.new_set_id:
                loser_id = opponent
            elif event.winner_id == opponent:
                loser_id = self.new_set_id
            else:
                raise ValidationError(
                    f"winner '{event.winner_id}' is not part of the current pair",
                    code="invalid_winner",
                )
            return self._move(
                S.SUBMITTING, [SubmitVote(event.winner_id, loser_id, self.position)]
            )

        if isinstance(event, VoteSucceeded) and state is S.SUBMITTING:
            self.position += 1
            if self.position < len(self.queue):
                return self._move(S.AWAITING_COMPARISON, [self._present()])
            return self._move(S.CLOSED, [Complete()])

        if isinstance(event, VoteFailed) and state is S.SUBMITTING:
            return self._move(S.ERROR, [Abort(event.error)])

        if isinstance(event, Close) and state is S.ERROR:
            return self._move(S.CLOSED, [])

        if isinstance(event, Cancel):
            if state in (S.AWAITING_COMPARISON, S.SUBMITTING):
                return self._move(S.CLOSED, [Abort()])
            if state is S.CLOSED:
                return self._move(S.CLOSED, [])

        # A vote that lands after cancellation stays committed; nothing to do.
        if isinstance(event, (VoteSucceeded, VoteFailed)) and state is S.CLOSED:
            return self._move(S.CLOSED, [])

        raise ValidationError(
            f"cannot handle {type(event).__name__} while {state.value}",
            code="invalid_transition",
        )

    def _present(self) -> PresentPair:
        return PresentPair(self.new_set_id, self.queue[self.position])

    def _move(self, state: WorkflowState, effects: list) -> tuple[WorkflowState, list]:
        self.state = state
        return state, effects


@dataclass(frozen=True)
class OpenResult:
    skip: bool
    pair: Optional[tuple[str, str]] = None
    session_id: Optional[str] = None


@dataclass(frozen=True)
class DecideResult:
    done: bool
    next_pair: Optional[tuple[str, str]] = None
    vote: Optional[VoteResult] = None


class RankingWorkflow:
    """Drive users through the comparisons for a newly logged set.

    At most one session is active per user. Queue loading and vote submission
    are the only suspension points; each attempt is bounded by ``step_timeout``
    and ``TransientError`` is retried within a small budget before the session
    is closed and the error surfaced. A ``decide`` repeated with the client's
    last idempotency token replays the recorded result instead of voting again.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        vote_submitter: VoteSubmitter,
        *,
        max_comparisons: int = 5,
        ordering: OrderingPolicy | None = None,
        retry_attempts: int = 3,
        retry_wait: float = 0.2,
        step_timeout: float | None = 5.0,
        session_ttl_seconds: float = 1800.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session_factory = session_factory
        self.vote_submitter = vote_submitter
        self.max_comparisons = max_comparisons
        self.ordering = ordering
        self.retry_attempts = retry_attempts
        self.retry_wait = retry_wait
        self.step_timeout = step_timeout
        self.session_ttl_seconds = session_ttl_seconds
        self._clock = clock
        self._sessions: dict[str, RankingSession] = {}
        self._touched: dict[str, float] = {}
        # owner -> (client idempotency token, result, when it was recorded)
        self._replies: dict[str, tuple[str, DecideResult, float]] = {}
        self._lock = asyncio.Lock()

    def current(self, owner_id: str) -> Optional[RankingSession]:
        return self._sessions.get(owner_id)

    async def open(self, set_id: str, owner_id: str) -> OpenResult:
        async with self._lock:
            self._sweep_stale()
            if owner_id in self._sessions:
                raise ConflictError(
                    "a ranking session is already active for this user",
                    code="ranking_session_active",
                )
            session = RankingSession(owner_id=owner_id)
            session.transition(Open(set_id))
            self._register(owner_id, session)
            self._replies.pop(owner_id, None)

        try:
            bucket, queue = await self._load_queue(set_id, owner_id)
        except BaseException as exc:
            self._fail(owner_id, session, LoadFailed(exc))
            raise

        state, _ = session.transition(QueueLoaded(bucket, tuple(queue)))
        if state is WorkflowState.CLOSED:
            self._release(owner_id, session)
            return OpenResult(skip=True)

        logger.info(
            "Opened ranking session %s for set %s (%d comparisons)",
            session.session_id,
            set_id,
            len(session.queue),
        )
        return OpenResult(
            skip=False, pair=session.current_pair, session_id=session.session_id
        )

    async def decide(
        self, owner_id: str, winner_id: str, *, idempotency_token: str | None = None
    ) -> DecideResult:
        if idempotency_token is not None:
            replay = self._replay(owner_id, idempotency_token)
            if replay is not None:
                logger.info(
                    "Replaying decision for token %r of owner %s", idempotency_token, owner_id
                )
                return replay

        session = self._require_active(owner_id)
        _, effects = session.transition(Decide(winner_id))
        submit: SubmitVote = effects[0]
        self._touch(owner_id)

        token = idempotency_token or f"{session.session_id}:{submit.position}"
        try:
            vote = await self.vote_submitter.submit_vote(
                submit.winner_id,
                submit.loser_id,
                owner_id,
                auth_user_id=owner_id,
                idempotency_token=token,
            )
        except BaseException as exc:
            if session.state is WorkflowState.SUBMITTING:
                logger.warning(
                    "Vote failed in ranking session %s; closing after %d/%d comparisons",
                    session.session_id,
                    session.position,
                    len(session.queue),
                )
                self._fail(owner_id, session, VoteFailed(exc))
            raise

        state, _ = session.transition(VoteSucceeded())
        if state is WorkflowState.CLOSED:
            self._release(owner_id, session)
            result = DecideResult(done=True, vote=vote)
        else:
            self._touch(owner_id)
            result = DecideResult(done=False, next_pair=session.current_pair, vote=vote)
        if idempotency_token is not None:
            self._replies[owner_id] = (idempotency_token, result, self._clock())
        return result

    async def cancel(self, owner_id: str) -> bool:
        """Close the user's session; returns ``False`` if none was active.

        Comparisons committed before the cancel are kept.
        """

        session = self._sessions.get(owner_id)
        if session is None:
            return False
        session.transition(Cancel())
        self._release(owner_id, session)
        logger.info(
            "Cancelled ranking session %s with %d comparisons left",
            session.session_id,
            session.remaining,
        )
        return True

    async def _load_queue(self, set_id: str, owner_id: str) -> tuple[str, list[str]]:
        async for attempt in transient_retrying(self.retry_attempts, self.retry_wait):
            with attempt:
                try:
                    loaded = await asyncio.wait_for(
                        self._read_queue(set_id, owner_id), self.step_timeout
                    )
                except STORAGE_ERRORS as exc:
                    raise classify_error(exc, action="queue loading") from exc
        return loaded

    async def _read_queue(self, set_id: str, owner_id: str) -> tuple[str, list[str]]:
        async with self.session_factory() as db:
            repository = SetRepository(db)
            live_set = await repository.get_set(set_id)
            if live_set.owner_id != owner_id:
                raise SetNotFound(set_id)
            result = await build_queue(
                repository,
                set_id,
                owner_id,
                live_set.bucket,
                self.max_comparisons,
                ordering=self.ordering,
                comparisons=ComparisonStore(db),
            )
        return live_set.bucket, result.queue

    def _require_active(self, owner_id: str) -> RankingSession:
        session = self._sessions.get(owner_id)
        if session is None:
            raise NotFoundError(
                "no active ranking session", code="ranking_session_not_found"
            )
        return session

    def _replay(self, owner_id: str, token: str) -> Optional[DecideResult]:
        recorded = self._replies.get(owner_id)
        if recorded is None or recorded[0] != token:
            return None
        return recorded[1]

    def _sweep_stale(self) -> None:
        """Drop idle sessions and expired decision replies for every owner."""

        for owner_id, session in list(self._sessions.items()):
            if self._is_stale(owner_id, session):
                logger.info(
                    "Discarding idle ranking session %s for owner %s",
                    session.session_id,
                    owner_id,
                )
                self._release(owner_id, session)
        cutoff = self._clock() - self.session_ttl_seconds
        for owner_id, (_, _, recorded_at) in list(self._replies.items()):
            if recorded_at < cutoff:
                del self._replies[owner_id]

    def _is_stale(self, owner_id: str, session: RankingSession) -> bool:
        if session.state is not WorkflowState.AWAITING_COMPARISON:
            return False
        touched = self._touched.get(owner_id, self._clock())
        return self._clock() - touched > self.session_ttl_seconds

    def _fail(self, owner_id: str, session: RankingSession, event) -> None:
        session.transition(event)
        session.transition(Close())
        self._release(owner_id, session)

    def _register(self, owner_id: str, session: RankingSession) -> None:
        self._sessions[owner_id] = session
        self._touch(owner_id)

    def _touch(self, owner_id: str) -> None:
        self._touched[owner_id] = self._clock()

    def _release(self, owner_id: str, session: RankingSession) -> None:
        if self._sessions.get(owner_id) is session:
            del self._sessions[owner_id]
            self._touched.pop(owner_id, None)
