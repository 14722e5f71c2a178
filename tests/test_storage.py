"""Tests for the SQLite Attempt Store."""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest
from factories import APP_ID, OTHER_APP_ID, T0, make_event, make_subscription

from hook0.exceptions import StorageError, StoreUnavailableError
from hook0.models import AttemptStatus, RequestAttempt, Response, ResponseError, RetrySchedule
from hook0.storage import Hook0Storage, from_db_time, to_db_time


async def _seed(storage, subscription=None, event=None, delay_until=T0):
    """Store a subscription, an event and one due attempt for the pair."""
    subscription = subscription or make_subscription()
    event = event or make_event()
    await storage.save_subscription(subscription)
    await storage.insert_event(event)
    attempt = RequestAttempt(
        application_id=event.application_id,
        event_id=event.event_id,
        subscription_id=subscription.subscription_id,
        created_at=T0,
        delay_until=delay_until,
    )
    assert await storage.insert_attempt(attempt, f"{event.event_id}:{subscription.subscription_id}")
    return attempt


def _response(attempt, error=None, http_code=200):
    return Response(
        request_attempt_id=attempt.request_attempt_id,
        application_id=attempt.application_id,
        response_error_name=error,
        http_code=http_code,
        created_at=T0,
    )


class TestTimeConversion:
    """Tests for database timestamps."""

    def test_microsecond_round_trip(self):
        """Timestamps survive storage exactly."""
        value = T0.replace(microsecond=123456)
        assert from_db_time(to_db_time(value)) == value

    def test_none(self):
        """NULL maps to None both ways."""
        assert to_db_time(None) is None
        assert from_db_time(None) is None


class TestLifecycle:
    """Tests for opening and closing the store."""

    async def test_requires_initialize(self, database_path):
        """Using the store before initialize() is a programming error."""
        storage = Hook0Storage(database_path)
        with pytest.raises(RuntimeError):
            _ = storage.conn

    async def test_unreachable_database(self, tmp_path):
        """A database that cannot be opened makes the store unavailable."""
        blocker = tmp_path / "not-a-directory"
        blocker.write_text("")
        storage = Hook0Storage(blocker / "hook0.db")
        with pytest.raises(StoreUnavailableError):
            await storage.initialize()

    async def test_reopen_keeps_data(self, database_path):
        """Data persists across connections."""
        event = make_event()
        async with Hook0Storage(database_path) as first:
            await first.insert_event(event)
        async with Hook0Storage(database_path) as second:
            assert await second.get_event(event.event_id) == event


class TestEvents:
    """Tests for event persistence."""

    async def test_insert_is_idempotent(self, storage):
        """Re-inserting an event ID is ignored."""
        event = make_event()
        assert await storage.insert_event(event)
        assert not await storage.insert_event(event)

    async def test_binary_payload_preserved(self, storage):
        """Payload bytes are stored verbatim."""
        event = make_event(payload=b"\x00\xff\x10binary")
        await storage.insert_event(event)
        stored = await storage.get_event(event.event_id)
        assert stored.payload == b"\x00\xff\x10binary"

    async def test_application_scope(self, storage):
        """Scoped lookups ignore other applications' events."""
        event = make_event()
        await storage.insert_event(event)
        assert await storage.get_event(event.event_id, APP_ID) is not None
        assert await storage.get_event(event.event_id, OTHER_APP_ID) is None

    async def test_undispatched_events(self, storage):
        """Events leave the undispatched list once marked."""
        event = make_event()
        await storage.insert_event(event)
        assert [e.event_id for e in await storage.list_undispatched_events()] == [event.event_id]
        assert await storage.mark_event_dispatched(event.event_id, T0)
        assert not await storage.mark_event_dispatched(event.event_id, T0)
        assert await storage.list_undispatched_events() == []


class TestSubscriptions:
    """Tests for subscription persistence."""

    async def test_round_trip(self, storage):
        """Every field survives storage."""
        subscription = make_subscription(
            dedicated_workers=["eu-west-1"],
            retry_schedule=RetrySchedule(intervals=[2, 30], max_attempts=3),
            description="CRM sync",
        )
        await storage.save_subscription(subscription)
        assert await storage.get_subscription(subscription.subscription_id) == subscription

    async def test_upsert_and_enable(self, storage):
        """Saving again updates; disabled subscriptions can be filtered out."""
        subscription = make_subscription()
        await storage.save_subscription(subscription)
        assert await storage.set_subscription_enabled(subscription.subscription_id, False)
        assert await storage.list_subscriptions(APP_ID, enabled_only=True) == []
        assert len(await storage.list_subscriptions(APP_ID)) == 1

        subscription.label_value = "staging"
        await storage.save_subscription(subscription)
        stored = await storage.get_subscription(subscription.subscription_id)
        assert stored.label_value == "staging"

    async def test_enable_unknown(self, storage):
        """Enabling an unknown subscription reports it."""
        assert not await storage.set_subscription_enabled(uuid4(), True)


class TestClaim:
    """Tests for claim_next_attempt()."""

    async def test_claim_sets_worker_fields(self, storage):
        """The claimed row records who picked it and when."""
        attempt = await _seed(storage)
        claim = await storage.claim_next_attempt("w1", "1.2.3", now=T0)
        assert claim.attempt.request_attempt_id == attempt.request_attempt_id
        assert claim.attempt.picked_at == T0
        assert claim.attempt.worker_name == "w1"
        assert claim.attempt.worker_version == "1.2.3"
        assert claim.event.event_id == attempt.event_id
        assert claim.subscription.subscription_id == attempt.subscription_id

    async def test_not_claimable_twice(self, storage):
        """A picked attempt is not claimed again."""
        await _seed(storage)
        assert await storage.claim_next_attempt("w1", "1", now=T0) is not None
        assert await storage.claim_next_attempt("w2", "1", now=T0) is None

    async def test_not_before_delay(self, storage):
        """An attempt is not claimable before delay_until."""
        await _seed(storage, delay_until=T0 + timedelta(seconds=30))
        assert await storage.claim_next_attempt("w1", "1", now=T0) is None
        assert await storage.claim_next_attempt("w1", "1", now=T0 + timedelta(seconds=30))

    async def test_disabled_subscription_not_claimed(self, storage):
        """Attempts of a disabled subscription are skipped."""
        attempt = await _seed(storage)
        await storage.set_subscription_enabled(attempt.subscription_id, False)
        assert await storage.claim_next_attempt("w1", "1", now=T0) is None

    async def test_oldest_due_first(self, storage):
        """Attempts are claimed in order of due time."""
        subscription = make_subscription()
        late = await _seed(storage, subscription, delay_until=T0 + timedelta(seconds=5))
        early = await _seed(storage, subscription, delay_until=T0)
        now = T0 + timedelta(seconds=10)
        first = await storage.claim_next_attempt("w1", "1", now=now)
        second = await storage.claim_next_attempt("w1", "1", now=now)
        assert first.attempt.request_attempt_id == early.request_attempt_id
        assert second.attempt.request_attempt_id == late.request_attempt_id

    async def test_dedicated_scope(self, storage):
        """Dedicated subscriptions are only served by the workers they name."""
        await _seed(storage, make_subscription(dedicated_workers=["eu-west-1"]))
        assert await storage.claim_next_attempt("eu-west-1", "1", now=T0) is None
        assert await storage.claim_next_attempt("us-east-1", "1", now=T0, dedicated=True) is None
        claim = await storage.claim_next_attempt("eu-west-1", "1", now=T0, dedicated=True)
        assert claim is not None

    async def test_general_worker_skips_dedicated(self, storage):
        """The general pool still serves subscriptions without dedicated workers."""
        await _seed(storage, make_subscription(dedicated_workers=["eu-west-1"]))
        general = await _seed(storage)
        claim = await storage.claim_next_attempt("default", "1", now=T0)
        assert claim.attempt.request_attempt_id == general.request_attempt_id

    async def test_concurrent_claims_in_one_process(self, storage):
        """Concurrent claimers never share an attempt."""
        await _seed(storage)
        results = await asyncio.gather(
            *(storage.claim_next_attempt(f"w{i}", "1", now=T0) for i in range(8))
        )
        assert len([r for r in results if r is not None]) == 1

    async def test_concurrent_claims_across_connections(self, storage, database_path):
        """Workers on separate connections to one database never share an attempt."""
        subscription = make_subscription()
        seeded = {(await _seed(storage, subscription)).request_attempt_id for _ in range(3)}

        workers = [Hook0Storage(database_path) for _ in range(6)]
        for worker in workers:
            await worker.initialize()
        try:
            results = await asyncio.gather(
                *(w.claim_next_attempt(f"w{i}", "1", now=T0) for i, w in enumerate(workers))
            )
        finally:
            for worker in workers:
                await worker.close()

        claimed = [r.attempt.request_attempt_id for r in results if r is not None]
        assert len(claimed) == 3
        assert set(claimed) == seeded


class TestFinalize:
    """Tests for finalize_attempt()."""

    async def test_success(self, storage):
        """A successful execution marks the attempt succeeded."""
        await _seed(storage)
        claim = await storage.claim_next_attempt("w1", "1", now=T0)
        response = _response(claim.attempt)
        assert await storage.finalize_attempt(claim.attempt, response, now=T0)

        stored = await storage.get_attempt(claim.attempt.request_attempt_id)
        assert stored.succeeded_at == T0
        assert stored.response_id == response.response_id
        assert await storage.list_responses(stored.request_attempt_id) == [response]

    async def test_retry_reschedules_same_row(self, storage):
        """A retry clears the claim and pushes delay_until."""
        await _seed(storage)
        claim = await storage.claim_next_attempt("w1", "1", now=T0)
        retry_at = T0 + timedelta(seconds=5)
        response = _response(claim.attempt, ResponseError.HTTP, 503)
        assert await storage.finalize_attempt(claim.attempt, response, now=T0, retry_at=retry_at)

        stored = await storage.get_attempt(claim.attempt.request_attempt_id)
        assert stored.retry_count == 1
        assert stored.delay_until == retry_at
        assert stored.picked_at is None
        assert stored.worker_name is None
        assert stored.succeeded_at is None and stored.failed_at is None
        assert stored.status_at(T0) is AttemptStatus.WAITING

    async def test_give_up(self, storage):
        """A failure without retry_at is terminal."""
        await _seed(storage)
        claim = await storage.claim_next_attempt("w1", "1", now=T0)
        response = _response(claim.attempt, ResponseError.HTTP, 404)
        assert await storage.finalize_attempt(claim.attempt, response, now=T0)
        stored = await storage.get_attempt(claim.attempt.request_attempt_id)
        assert stored.failed_at == T0
        assert stored.retry_count == 0

    async def test_lost_claim_writes_nothing(self, storage):
        """Finalizing a claim that is no longer held records nothing."""
        await _seed(storage)
        claim = await storage.claim_next_attempt("w1", "1", now=T0)
        first = _response(claim.attempt, ResponseError.TIMEOUT, None)
        retry_at = T0 + timedelta(seconds=1)
        assert await storage.finalize_attempt(claim.attempt, first, now=T0, retry_at=retry_at)

        late = _response(claim.attempt)
        assert not await storage.finalize_attempt(claim.attempt, late, now=T0)
        assert await storage.list_responses(claim.attempt.request_attempt_id) == [first]

    async def test_unclaimed_attempt_rejected(self, storage):
        """Only claimed attempts can be finalized."""
        attempt = await _seed(storage)
        with pytest.raises(ValueError):
            await storage.finalize_attempt(attempt, _response(attempt), now=T0)


class TestImmutability:
    """Tests for constraints enforced by the database."""

    async def _succeeded(self, storage):
        await _seed(storage)
        claim = await storage.claim_next_attempt("w1", "1", now=T0)
        response = _response(claim.attempt)
        await storage.finalize_attempt(claim.attempt, response, now=T0)
        return claim.attempt, response

    async def test_terminal_attempt_cannot_change(self, storage):
        """Terminal attempts reject every update."""
        attempt, _ = await self._succeeded(storage)
        with pytest.raises(StorageError):
            async with storage.transaction() as conn:
                await conn.execute(
                    "UPDATE request_attempt SET picked_at = NULL WHERE request_attempt_id = ?",
                    (str(attempt.request_attempt_id),),
                )
        stored = await storage.get_attempt(attempt.request_attempt_id)
        assert stored.succeeded_at == T0

    async def test_responses_cannot_change(self, storage):
        """Recorded responses reject updates."""
        _, response = await self._succeeded(storage)
        with pytest.raises(StorageError):
            async with storage.transaction() as conn:
                await conn.execute(
                    "UPDATE response SET http_code = 500 WHERE response_id = ?",
                    (str(response.response_id),),
                )

    async def test_retry_count_cannot_decrease(self, storage):
        """retry_count only grows."""
        await _seed(storage)
        claim = await storage.claim_next_attempt("w1", "1", now=T0)
        response = _response(claim.attempt, ResponseError.TIMEOUT, None)
        await storage.finalize_attempt(claim.attempt, response, now=T0, retry_at=T0)
        with pytest.raises(StorageError):
            async with storage.transaction() as conn:
                await conn.execute(
                    "UPDATE request_attempt SET retry_count = 0 WHERE request_attempt_id = ?",
                    (str(claim.attempt.request_attempt_id),),
                )

    async def test_duplicate_dispatch_key_ignored(self, storage):
        """A dispatch key can only create one attempt."""
        attempt = await _seed(storage)
        duplicate = attempt.model_copy(update={"request_attempt_id": uuid4()})
        key = f"{attempt.event_id}:{attempt.subscription_id}"
        assert not await storage.insert_attempt(duplicate, key)
        assert await storage.get_attempt_by_dispatch_key(key) == attempt

    async def test_transaction_rolls_back(self, storage):
        """Nothing is kept from a transaction that raised."""
        event = make_event()
        with pytest.raises(RuntimeError):
            async with storage.transaction():
                await storage.insert_event(event)
                raise RuntimeError("boom")
        assert await storage.get_event(event.event_id) is None


class TestHistory:
    """Tests for listing, stale claims and stats."""

    async def test_list_filters(self, storage):
        """Attempts can be filtered by event, subscription and status."""
        subscription = make_subscription()
        first = await _seed(storage, subscription)
        second = await _seed(storage, subscription, delay_until=T0 + timedelta(hours=1))

        all_attempts = await storage.list_attempts(APP_ID, now=T0)
        assert {a.request_attempt_id for a in all_attempts} == {
            first.request_attempt_id,
            second.request_attempt_id,
        }
        by_event = await storage.list_attempts(APP_ID, now=T0, event_id=first.event_id)
        assert [a.request_attempt_id for a in by_event] == [first.request_attempt_id]
        waiting = await storage.list_attempts(APP_ID, now=T0, status=AttemptStatus.WAITING)
        assert [a.request_attempt_id for a in waiting] == [second.request_attempt_id]
        pending = await storage.list_attempts(APP_ID, now=T0, status=AttemptStatus.PENDING)
        assert [a.request_attempt_id for a in pending] == [first.request_attempt_id]
        assert await storage.list_attempts(OTHER_APP_ID, now=T0) == []

    async def test_list_created_range_and_paging(self, storage):
        """Created-at bounds and paging narrow the result."""
        await _seed(storage)
        assert await storage.list_attempts(APP_ID, now=T0, min_created_at=T0)
        assert await storage.list_attempts(APP_ID, now=T0, max_created_at=T0) == []
        assert await storage.list_attempts(APP_ID, now=T0, offset=1) == []

    async def test_find_stale_attempts(self, storage):
        """Claims older than the cutoff are reported."""
        await _seed(storage)
        await storage.claim_next_attempt("w1", "1", now=T0)
        assert await storage.find_stale_attempts(T0) == []
        stale = await storage.find_stale_attempts(T0 + timedelta(seconds=1))
        assert len(stale) == 1
        assert stale[0].attempt.worker_name == "w1"

    async def test_stats(self, storage):
        """Attempts are counted by status."""
        subscription = make_subscription()
        await _seed(storage, subscription)
        await _seed(storage, subscription)
        await _seed(storage, subscription, delay_until=T0 + timedelta(hours=1))
        await storage.claim_next_attempt("w1", "1", now=T0)

        stats = await storage.get_attempt_stats(APP_ID, now=T0)
        assert stats.pending == 1
        assert stats.in_progress == 1
        assert stats.waiting == 1
        assert stats.successful == 0
        assert stats.failed == 0
