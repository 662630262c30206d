import asyncio

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from setrank.exceptions import (
    ConflictError,
    FatalError,
    NotFoundError,
    TransientError,
    ValidationError,
)
from setrank.models import Comparison, LiveSet
from setrank.services import repository as repository_module
from setrank.services.queue import ShuffleOrdering
from setrank.services.votes import VoteSubmitter
from setrank.services.workflow import RankingWorkflow, WorkflowState

from conftest import add_sets, make_set, seed


def _workflow(maker, *, submitter=None, **kwargs):
    kwargs.setdefault("retry_wait", 0)
    kwargs.setdefault("ordering", ShuffleOrdering(11))
    submitter = submitter or VoteSubmitter(maker, retry_wait=0)
    return RankingWorkflow(maker, submitter, **kwargs)


async def _ratings(maker):
    async with maker() as session:
        rows = (await session.execute(select(LiveSet.id, LiveSet.rating))).all()
        return {sid: rating for sid, rating in rows}


async def _comparison_count(maker):
    async with maker() as session:
        return (await session.execute(select(func.count(Comparison.id)))).scalar_one()


class FailingSubmitter:
    def __init__(self, error, fail_on=1):
        self.error = error
        self.fail_on = fail_on
        self.calls = []

    async def submit_vote(self, winner_id, loser_id, owner_id, *, auth_user_id, idempotency_token=None):
        self.calls.append((winner_id, loser_id, idempotency_token))
        if len(self.calls) >= self.fail_on:
            raise self.error
        return None


def test_first_set_ever_skips_ranking(session_maker):
    seed(session_maker, make_set("u1", "liked", set_id="first"))
    workflow = _workflow(session_maker)

    result = asyncio.run(workflow.open("first", "u1"))
    assert result.skip is True
    assert result.pair is None
    assert workflow.current("u1") is None
    assert asyncio.run(_comparison_count(session_maker)) == 0


def test_first_set_in_new_bucket_skips_ranking(session_maker):
    seed(
        session_maker,
        make_set("u1", "disliked", set_id="old"),
        make_set("u1", "liked", set_id="new", minutes=1),
    )
    result = asyncio.run(_workflow(session_maker).open("new", "u1"))
    assert result.skip is True


def test_second_liked_set_single_comparison_end_to_end(session_maker):
    seed(
        session_maker,
        make_set("u1", "liked", set_id="old"),
        make_set("u1", "liked", set_id="new", minutes=1),
    )
    workflow = _workflow(session_maker)

    async def run_test():
        opened = await workflow.open("new", "u1")
        decided = await workflow.decide("u1", "new")
        return opened, decided, await _ratings(session_maker)

    opened, decided, ratings = asyncio.run(run_test())
    assert opened.skip is False
    assert opened.pair == ("new", "old")
    assert decided.done is True
    assert decided.next_pair is None
    assert ratings == {"new": 1516, "old": 1484}
    assert workflow.current("u1") is None


def test_walks_the_whole_queue_in_order(session_maker):
    seed(
        session_maker,
        *[make_set("u1", "liked", set_id=f"old{i}", minutes=i) for i in range(3)],
        make_set("u1", "liked", set_id="new", minutes=10),
    )
    workflow = _workflow(session_maker)

    async def run_test():
        opened = await workflow.open("new", "u1")
        queue = list(workflow.current("u1").queue)
        results = []
        for _ in queue:
            results.append(await workflow.decide("u1", "new"))
        return opened, queue, results, await _ratings(session_maker)

    opened, queue, results, ratings = asyncio.run(run_test())
    assert sorted(queue) == ["old0", "old1", "old2"]
    assert opened.pair == ("new", queue[0])
    assert [r.done for r in results] == [False, False, True]
    assert results[0].next_pair == ("new", queue[1])
    assert results[1].next_pair == ("new", queue[2])
    # Each later opponent faces a stronger new set and loses fewer points.
    assert ratings[queue[0]] == 1484
    assert 1484 < ratings[queue[1]] < ratings[queue[2]] < 1500
    assert ratings["new"] > 1540
    assert sum(ratings.values()) == pytest.approx(4 * 1500)


def test_queue_is_capped_at_max_comparisons(session_maker):
    seed(
        session_maker,
        *[make_set("u1", "neutral", set_id=f"s{i}", minutes=i) for i in range(8)],
        make_set("u1", "neutral", set_id="new", minutes=20),
    )
    workflow = _workflow(session_maker, max_comparisons=5)
    asyncio.run(workflow.open("new", "u1"))
    assert len(workflow.current("u1").queue) == 5


def test_second_open_while_active_conflicts(session_maker):
    seed(
        session_maker,
        make_set("u1", "liked", set_id="old"),
        make_set("u1", "liked", set_id="new", minutes=1),
    )
    workflow = _workflow(session_maker)

    async def run_test():
        await workflow.open("new", "u1")
        with pytest.raises(ConflictError) as excinfo:
            await workflow.open("old", "u1")
        return excinfo.value

    error = asyncio.run(run_test())
    assert error.code == "ranking_session_active"
    session = workflow.current("u1")
    assert session.new_set_id == "new"
    assert session.state is WorkflowState.AWAITING_COMPARISON


def test_idle_session_is_replaced_after_ttl(session_maker):
    seed(
        session_maker,
        make_set("u1", "liked", set_id="old"),
        make_set("u1", "liked", set_id="new", minutes=1),
    )
    now = {"t": 0.0}
    workflow = _workflow(session_maker, session_ttl_seconds=60, clock=lambda: now["t"])

    async def run_test():
        await workflow.open("new", "u1")
        now["t"] = 61.0
        return await workflow.open("old", "u1")

    result = asyncio.run(run_test())
    assert result.pair == ("old", "new")


def test_sessions_are_per_user(session_maker):
    seed(
        session_maker,
        make_set("u1", "liked", set_id="a1"),
        make_set("u1", "liked", set_id="a2", minutes=1),
        make_set("u2", "liked", set_id="b1"),
        make_set("u2", "liked", set_id="b2", minutes=1),
    )
    workflow = _workflow(session_maker)

    async def run_test():
        return await workflow.open("a2", "u1"), await workflow.open("b2", "u2")

    first, second = asyncio.run(run_test())
    assert first.pair == ("a2", "a1")
    assert second.pair == ("b2", "b1")


def test_invalid_winner_leaves_session_waiting(session_maker):
    seed(
        session_maker,
        make_set("u1", "liked", set_id="old"),
        make_set("u1", "liked", set_id="new", minutes=1),
    )
    workflow = _workflow(session_maker)

    async def run_test():
        await workflow.open("new", "u1")
        with pytest.raises(ValidationError):
            await workflow.decide("u1", "somebody-else")
        return await workflow.decide("u1", "old")

    result = asyncio.run(run_test())
    assert result.done is True
    assert asyncio.run(_ratings(session_maker)) == {"old": 1516, "new": 1484}


def test_open_unknown_or_foreign_set_is_not_found_and_closes(session_maker):
    seed(session_maker, make_set("u2", "liked", set_id="theirs"))
    workflow = _workflow(session_maker)
    with pytest.raises(NotFoundError):
        asyncio.run(workflow.open("missing", "u1"))
    with pytest.raises(NotFoundError):
        asyncio.run(workflow.open("theirs", "u1"))
    assert workflow.current("u1") is None


def test_queue_load_retries_transient_errors(session_maker, monkeypatch):
    seed(
        session_maker,
        make_set("u1", "liked", set_id="old"),
        make_set("u1", "liked", set_id="new", minutes=1),
    )
    calls = {"n": 0}
    original = repository_module.SetRepository.get_sets_by_owner_and_bucket

    async def flaky(self, owner_id, bucket):
        calls["n"] += 1
        if calls["n"] == 1:
            raise OperationalError("SELECT", {}, Exception("timeout expired"))
        return await original(self, owner_id, bucket)

    monkeypatch.setattr(repository_module.SetRepository, "get_sets_by_owner_and_bucket", flaky)
    result = asyncio.run(_workflow(session_maker, retry_attempts=2).open("new", "u1"))
    assert calls["n"] == 2
    assert result.pair == ("new", "old")


def test_queue_load_gives_up_and_closes(session_maker, monkeypatch):
    seed(
        session_maker,
        make_set("u1", "liked", set_id="old"),
        make_set("u1", "liked", set_id="new", minutes=1),
    )

    async def down(self, owner_id, bucket):
        raise OperationalError("SELECT", {}, Exception("connection reset"))

    monkeypatch.setattr(repository_module.SetRepository, "get_sets_by_owner_and_bucket", down)
    workflow = _workflow(session_maker, retry_attempts=2)
    with pytest.raises(TransientError):
        asyncio.run(workflow.open("new", "u1"))
    assert workflow.current("u1") is None


@pytest.mark.parametrize("error", [TransientError("timeout"), FatalError("constraint")])
def test_vote_failure_closes_session_and_keeps_prior_votes(session_maker, error):
    seed(
        session_maker,
        *[make_set("u1", "liked", set_id=f"old{i}", minutes=i) for i in range(3)],
        make_set("u1", "liked", set_id="new", minutes=10),
    )
    real = VoteSubmitter(session_maker, retry_wait=0)

    class FlakySecondVote:
        def __init__(self):
            self.calls = 0

        async def submit_vote(self, *args, **kwargs):
            self.calls += 1
            if self.calls == 2:
                raise error
            return await real.submit_vote(*args, **kwargs)

    workflow = _workflow(session_maker, submitter=FlakySecondVote())

    async def run_test():
        await workflow.open("new", "u1")
        first = await workflow.decide("u1", "new")
        with pytest.raises(type(error)):
            await workflow.decide("u1", "new")
        return first

    first = asyncio.run(run_test())
    assert first.done is False
    assert workflow.current("u1") is None
    assert asyncio.run(_comparison_count(session_maker)) == 1
    assert asyncio.run(_ratings(session_maker))["new"] == 1516


def test_cancel_keeps_committed_comparisons(session_maker):
    seed(
        session_maker,
        *[make_set("u1", "liked", set_id=f"old{i}", minutes=i) for i in range(3)],
        make_set("u1", "liked", set_id="new", minutes=10),
    )
    workflow = _workflow(session_maker)

    async def run_test():
        await workflow.open("new", "u1")
        await workflow.decide("u1", "new")
        cancelled = await workflow.cancel("u1")
        again = await workflow.cancel("u1")
        return cancelled, again

    cancelled, again = asyncio.run(run_test())
    assert cancelled is True
    assert again is False
    assert workflow.current("u1") is None
    assert asyncio.run(_comparison_count(session_maker)) == 1
    assert asyncio.run(_ratings(session_maker))["new"] == 1516


def test_decide_without_session_is_not_found(session_maker):
    workflow = _workflow(session_maker)
    with pytest.raises(NotFoundError) as excinfo:
        asyncio.run(workflow.decide("u1", "anything"))
    assert excinfo.value.code == "ranking_session_not_found"


def test_workflow_supplies_per_position_idempotency_tokens(session_maker):
    seed(
        session_maker,
        make_set("u1", "liked", set_id="old"),
        make_set("u1", "liked", set_id="new", minutes=1),
    )
    submitter = FailingSubmitter(TransientError("down"))
    workflow = _workflow(session_maker, submitter=submitter)

    async def run_test():
        opened = await workflow.open("new", "u1")
        with pytest.raises(TransientError):
            await workflow.decide("u1", "old")
        return opened

    asyncio.run(run_test())
    (winner, loser, token), = submitter.calls
    assert (winner, loser) == ("old", "new")
    assert token.endswith(":0")


@pytest.mark.anyio
async def test_concurrent_opens_admit_a_single_session(session_maker):
    await add_sets(
        session_maker,
        make_set("u1", "liked", set_id="old"),
        make_set("u1", "liked", set_id="new", minutes=1),
    )
    workflow = _workflow(session_maker)

    results = await asyncio.gather(
        workflow.open("new", "u1"),
        workflow.open("new", "u1"),
        return_exceptions=True,
    )

    conflicts = [r for r in results if isinstance(r, ConflictError)]
    opened = [r for r in results if not isinstance(r, BaseException)]
    assert len(conflicts) == 1
    assert len(opened) == 1
    assert opened[0].pair == ("new", "old")


def test_queue_load_retries_connection_errors_then_times_out(session_maker, monkeypatch):
    seed(
        session_maker,
        make_set("u1", "liked", set_id="old"),
        make_set("u1", "liked", set_id="new", minutes=1),
    )
    calls = {"n": 0}

    async def flaky(self, owner_id, bucket):
        calls["n"] += 1
        if calls["n"] == 1:
            raise ConnectionResetError("connection reset by peer")
        await asyncio.sleep(30)

    monkeypatch.setattr(repository_module.SetRepository, "get_sets_by_owner_and_bucket", flaky)
    workflow = _workflow(session_maker, retry_attempts=2, step_timeout=0.05)
    with pytest.raises(TransientError):
        asyncio.run(workflow.open("new", "u1"))
    assert calls["n"] == 2
    assert workflow.current("u1") is None


def test_repeated_token_replays_decision_without_voting_again(session_maker):
    seed(
        session_maker,
        *[make_set("u1", "liked", set_id=f"old{i}", minutes=i) for i in range(2)],
        make_set("u1", "liked", set_id="new", minutes=10),
    )
    workflow = _workflow(session_maker)

    async def run_test():
        await workflow.open("new", "u1")
        first = await workflow.decide("u1", "new", idempotency_token="tok-1")
        # The response was lost and the client sends the same request again.
        again = await workflow.decide("u1", "new", idempotency_token="tok-1")
        position = workflow.current("u1").position
        last = await workflow.decide("u1", "new", idempotency_token="tok-2")
        last_again = await workflow.decide("u1", "new", idempotency_token="tok-2")
        return first, again, position, last, last_again

    first, again, position, last, last_again = asyncio.run(run_test())
    assert again == first
    assert first.done is False
    assert position == 1
    assert last.done is True
    assert last_again == last
    assert asyncio.run(_comparison_count(session_maker)) == 2


def test_open_sweeps_idle_sessions_of_other_users(session_maker):
    seed(
        session_maker,
        make_set("u1", "liked", set_id="a1"),
        make_set("u1", "liked", set_id="a2", minutes=1),
        make_set("u2", "liked", set_id="b1"),
        make_set("u2", "liked", set_id="b2", minutes=1),
    )
    now = {"t": 0.0}
    workflow = _workflow(session_maker, session_ttl_seconds=60, clock=lambda: now["t"])

    async def run_test():
        await workflow.open("a2", "u1")
        now["t"] = 61.0
        await workflow.open("b2", "u2")

    asyncio.run(run_test())
    assert workflow.current("u1") is None
    assert workflow.current("u2") is not None
