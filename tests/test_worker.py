"""Tests for output workers."""

import asyncio
import random
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import httpx
import pytest
import structlog
from factories import APP_ID, make_event, make_subscription, public_resolver

from hook0.config import RetrySettings, WorkerSettings
from hook0.exceptions import StoreUnavailableError
from hook0.models import AttemptStatus, ResponseError, Target, utc_now
from hook0.storage import Hook0Storage
from hook0.webhooks.delivery import DeliveryClient
from hook0.webhooks.dispatcher import Dispatcher
from hook0.webhooks.retry import RetryPolicy
from hook0.webhooks.worker import OutputWorker, WorkerPool, idle_sleep_seconds


class Receiver:
    """MockTransport handler answering with a scripted list of status codes."""

    def __init__(self, *status_codes: int) -> None:
        self.status_codes = list(status_codes)
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        status_code = self.status_codes[min(self.calls, len(self.status_codes) - 1)]
        self.calls += 1
        return httpx.Response(status_code, content=b"{}")


def _policy(max_retries=5):
    return RetryPolicy(
        RetrySettings(base_delay_seconds=1, max_delay_seconds=10, max_retries=max_retries),
        rng=random.Random(0),
    )


def _worker(storage, receiver, clock, settings=None, policy=None):
    settings = settings or WorkerSettings()
    client = DeliveryClient(
        settings, transport=httpx.MockTransport(receiver), resolver=public_resolver
    )
    return OutputWorker(storage, client, policy or _policy(), settings, clock=clock)


async def _dispatch(storage, clock, subscription=None):
    subscription = subscription or make_subscription()
    await storage.save_subscription(subscription)
    [attempt] = await Dispatcher(storage).on_event_ingested(make_event(), now=clock())
    return attempt


class TestDeliveryScenarios:
    """End-to-end delivery through the store, worker and retry policy."""

    async def test_retries_until_success(self, storage, clock):
        """Three 500s then a 200: one attempt, three retries, four responses."""
        attempt = await _dispatch(storage, clock)
        receiver = Receiver(500, 500, 500, 200)
        worker = _worker(storage, receiver, clock)

        for _ in range(4):
            assert await worker.run_once()
            assert not await worker.run_once()  # not due until the backoff elapsed
            clock.advance(60)

        stored = await storage.get_attempt(attempt.request_attempt_id)
        assert stored.succeeded_at is not None
        assert stored.failed_at is None
        assert stored.retry_count == 3
        assert stored.status_at(clock()) is AttemptStatus.SUCCESSFUL

        responses = await storage.list_responses(attempt.request_attempt_id)
        assert [r.http_code for r in responses] == [500, 500, 500, 200]
        assert [r.response_error_name for r in responses] == [ResponseError.HTTP] * 3 + [None]
        assert stored.response_id == responses[-1].response_id
        assert receiver.calls == 4

    async def test_client_error_not_retried(self, storage, clock):
        """A 404 fails the attempt immediately."""
        attempt = await _dispatch(storage, clock)
        worker = _worker(storage, Receiver(404), clock)

        assert await worker.run_once()
        clock.advance(3600)
        assert not await worker.run_once()

        stored = await storage.get_attempt(attempt.request_attempt_id)
        assert stored.failed_at is not None
        assert stored.retry_count == 0
        assert len(await storage.list_responses(attempt.request_attempt_id)) == 1

    async def test_invalid_target_not_retried(self, storage, clock):
        """A forbidden target is recorded once and never called."""
        subscription = make_subscription(target=Target(url="http://127.0.0.1:9000/hook"))
        attempt = await _dispatch(storage, clock, subscription)
        receiver = Receiver(200)
        worker = _worker(storage, receiver, clock)

        assert await worker.run_once()

        stored = await storage.get_attempt(attempt.request_attempt_id)
        assert stored.failed_at is not None
        [response] = await storage.list_responses(attempt.request_attempt_id)
        assert response.response_error_name is ResponseError.INVALID_TARGET
        assert receiver.calls == 0

    async def test_gives_up_after_max_retries(self, storage, clock):
        """The attempt fails once the retry ceiling is reached."""
        attempt = await _dispatch(storage, clock)
        worker = _worker(storage, Receiver(503), clock, policy=_policy(max_retries=2))

        for _ in range(3):
            assert await worker.run_once()
            clock.advance(60)
        assert not await worker.run_once()

        stored = await storage.get_attempt(attempt.request_attempt_id)
        assert stored.failed_at is not None
        assert stored.retry_count == 2
        assert len(await storage.list_responses(attempt.request_attempt_id)) == 3

    async def test_disabled_subscription_not_delivered(self, storage, clock):
        """Pending attempts of a disabled subscription stay pending."""
        attempt = await _dispatch(storage, clock)
        await storage.set_subscription_enabled(attempt.subscription_id, False)
        receiver = Receiver(200)

        assert not await _worker(storage, receiver, clock).run_once()
        assert receiver.calls == 0

    async def test_records_worker_identity(self, storage, clock):
        """The claim records the worker's name and version."""
        await _dispatch(storage, clock)
        settings = WorkerSettings(name="eu-west-1", version="2.0.0")
        worker = _worker(storage, Receiver(200), clock, settings)
        claim = await storage.claim_next_attempt(worker.name, worker.version, now=clock())
        assert claim.attempt.worker_name == "eu-west-1"
        assert claim.attempt.worker_version == "2.0.0"

    async def test_delivery_logged_with_attempt_context(self, storage, clock):
        """Lines logged while delivering carry the attempt identifiers."""
        attempt = await _dispatch(storage, clock)
        seen: list[dict] = []

        def receiver(request):
            seen.append(structlog.contextvars.get_contextvars())
            return httpx.Response(200)

        assert await _worker(storage, receiver, clock).run_once()

        assert seen[0]["request_attempt_id"] == str(attempt.request_attempt_id)
        assert seen[0]["event_id"] == str(attempt.event_id)
        assert "request_attempt_id" not in structlog.contextvars.get_contextvars()

    async def test_dedicated_worker(self, storage, clock):
        """Only the named dedicated worker delivers a dedicated subscription."""
        subscription = make_subscription(dedicated_workers=["eu-west-1"])
        await _dispatch(storage, clock, subscription)
        receiver = Receiver(200)

        general = _worker(storage, receiver, clock, WorkerSettings(name="eu-west-1"))
        other = _worker(
            storage, receiver, clock, WorkerSettings(name="us-east-1", dedicated=True)
        )
        dedicated = _worker(
            storage, receiver, clock, WorkerSettings(name="eu-west-1", dedicated=True)
        )

        assert not await general.run_once()
        assert not await other.run_once()
        assert await dedicated.run_once()
        assert receiver.calls == 1


class TestStaleClaims:
    """Tests for reaping abandoned claims."""

    async def test_reaped_claim_is_retried(self, storage, clock):
        """A claim held past timeout plus grace is recorded as a timeout and retried."""
        attempt = await _dispatch(storage, clock)
        crashed = await storage.claim_next_attempt("crashed", "0.0.1", now=clock())
        settings = WorkerSettings(timeout_seconds=10, claim_grace_seconds=5)
        worker = _worker(storage, Receiver(200), clock, settings)

        clock.advance(10)
        assert await worker.reap_stale_claims() == 0
        clock.advance(6)
        assert await worker.reap_stale_claims() == 1

        stored = await storage.get_attempt(attempt.request_attempt_id)
        assert stored.retry_count == 1
        assert stored.picked_at is None
        assert stored.worker_name is None
        [response] = await storage.list_responses(attempt.request_attempt_id)
        assert response.response_error_name is ResponseError.TIMEOUT
        assert response.elapsed_time_ms == 16_000

        # The original worker finishing late no longer owns the attempt
        late = await storage.finalize_attempt(
            crashed.attempt, response.model_copy(update={"response_id": uuid4()}),
            now=clock(),
        )
        assert late is False

    async def test_reaped_claim_fails_without_retries(self, storage, clock):
        """With no retries left the reaped attempt fails."""
        attempt = await _dispatch(storage, clock)
        await storage.claim_next_attempt("crashed", "0.0.1", now=clock())
        worker = _worker(storage, Receiver(200), clock, policy=_policy(max_retries=0))

        clock.advance(WorkerSettings().stale_claim_seconds + 1)
        assert await worker.reap_stale_claims() == 1
        stored = await storage.get_attempt(attempt.request_attempt_id)
        assert stored.failed_at is not None

    async def test_run_once_reaps_then_delivers(self, storage, clock):
        """A unit reaps a stale claim and delivers it once due."""
        attempt = await _dispatch(storage, clock)
        await storage.claim_next_attempt("crashed", "0.0.1", now=clock())
        receiver = Receiver(200)
        worker = _worker(storage, receiver, clock)

        clock.advance(WorkerSettings().stale_claim_seconds + 1)
        await worker.run_once()
        clock.advance(60)
        assert await worker.run_once()

        stored = await storage.get_attempt(attempt.request_attempt_id)
        assert stored.succeeded_at is not None
        assert receiver.calls == 1


class TestUnexpectedErrors:
    """Tests for failures outside HTTP delivery."""

    async def test_unexpected_error_leaves_claim(self, storage, clock):
        """A bug while processing keeps the claim for the reaper."""
        attempt = await _dispatch(storage, clock)
        client = MagicMock(spec=DeliveryClient)
        client.execute = AsyncMock(side_effect=RuntimeError("bug"))
        worker = OutputWorker(storage, client, _policy(), clock=clock)

        assert await worker.run_once()

        stored = await storage.get_attempt(attempt.request_attempt_id)
        assert stored.status_at(clock()) is AttemptStatus.IN_PROGRESS

    async def test_store_failure_propagates(self, clock):
        """Store failures stop the unit."""
        storage = MagicMock(spec=Hook0Storage)
        storage.find_stale_attempts = AsyncMock(return_value=[])
        storage.claim_next_attempt = AsyncMock(side_effect=StoreUnavailableError("locked"))
        worker = OutputWorker(storage, MagicMock(spec=DeliveryClient), _policy(), clock=clock)

        with pytest.raises(StoreUnavailableError):
            await worker.run(asyncio.Event())


class TestIdleSleep:
    """Tests for unit polling intervals."""

    def test_unit_staggering(self):
        """Unit 0 polls fastest, units beyond 2 slowest."""
        assert idle_sleep_seconds(0, 1, 10) == 1
        assert idle_sleep_seconds(1, 1, 10) == 5.5
        assert idle_sleep_seconds(2, 1, 10) == 5.5
        assert idle_sleep_seconds(3, 1, 10) == 10
        assert idle_sleep_seconds(12, 1, 10) == 10


class TestWorkerPool:
    """Tests for WorkerPool."""

    async def test_units_from_concurrency(self, storage):
        """One unit per configured concurrency slot."""
        pool = WorkerPool(storage, WorkerSettings(concurrency=3))
        assert [unit.unit_id for unit in pool.units] == [0, 1, 2]

    async def test_stop(self, storage):
        """A stopped pool returns after its units finish."""
        pool = WorkerPool(storage, WorkerSettings(concurrency=2, min_poll_seconds=0.01))
        task = asyncio.create_task(pool.run())
        await asyncio.sleep(0.05)
        pool.stop()
        await asyncio.wait_for(task, timeout=5)

    async def test_delivers_until_stopped(self, storage):
        """Units of a running pool deliver due attempts."""
        await storage.save_subscription(make_subscription())
        event = make_event()
        await Dispatcher(storage).on_event_ingested(event)
        receiver = Receiver(200)
        settings = WorkerSettings(concurrency=2, min_poll_seconds=0.01, max_poll_seconds=0.05)
        client = DeliveryClient(
            settings, transport=httpx.MockTransport(receiver), resolver=public_resolver
        )
        pool = WorkerPool(storage, settings, client=client)

        task = asyncio.create_task(pool.run())
        for _ in range(100):
            stats = await storage.get_attempt_stats(APP_ID, now=utc_now())
            if stats.successful:
                break
            await asyncio.sleep(0.02)
        pool.stop()
        await asyncio.wait_for(task, timeout=5)
        await client.close()

        assert receiver.calls == 1
        [attempt] = await storage.list_attempts(APP_ID, now=utc_now())
        assert attempt.succeeded_at is not None

    async def test_store_failure_stops_pool(self):
        """A unit hitting a store failure stops the whole pool."""
        storage = MagicMock(spec=Hook0Storage)
        storage.find_stale_attempts = AsyncMock(return_value=[])
        storage.claim_next_attempt = AsyncMock(side_effect=StoreUnavailableError("locked"))
        pool = WorkerPool(storage, WorkerSettings(concurrency=3))

        with pytest.raises(StoreUnavailableError):
            await asyncio.wait_for(pool.run(), timeout=5)
