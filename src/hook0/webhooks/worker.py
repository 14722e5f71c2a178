"""Output workers: claim, execute and finalize request attempts.

A WorkerPool runs N independent units in one process. Each unit loops:

1. reap stale claims (attempts picked by a worker that never finalized them),
2. claim one due attempt,
3. execute the HTTP call,
4. record the response and apply the Retry Policy.

Units share nothing but the Attempt Store, so any number of pools can run
against the same database. When the store becomes unavailable the pool
stops instead of delivering without a record.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from datetime import datetime, timedelta

from hook0 import __version__
from hook0.config import RetrySettings, WorkerSettings
from hook0.exceptions import StorageError
from hook0.logging import attempt_context, bind_worker_context, get_logger
from hook0.models import Response, ResponseError, utc_now
from hook0.storage import ClaimedAttempt, Hook0Storage

from .delivery import DeliveryClient
from .retry import GiveUp, RetryAt, RetryDecision, RetryPolicy

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def idle_sleep_seconds(unit_id: int, min_seconds: float, max_seconds: float) -> float:
    """Sleep between two empty polls.

    Unit 0 polls often so that new attempts are picked up quickly; the other
    units only matter under load and poll less often.
    """
    if unit_id == 0:
        return min_seconds
    if unit_id <= 2:
        return (min_seconds + max_seconds) / 2
    return max_seconds


class OutputWorker:
    """One unit of an output worker pool.

    Example:
        ```python
        unit = OutputWorker(storage, client, RetryPolicy(), settings.worker, unit_id=0)
        processed = await unit.run_once()
        ```
    """

    def __init__(
        self,
        storage: Hook0Storage,
        client: DeliveryClient,
        policy: RetryPolicy,
        settings: WorkerSettings | None = None,
        unit_id: int = 0,
        clock: Clock = utc_now,
    ) -> None:
        """Initialize a worker unit.

        Args:
            storage: Attempt Store.
            client: HTTP delivery client.
            policy: Retry policy applied to failed executions.
            settings: Worker settings (name, scope, timeouts, polling).
            unit_id: Index of this unit in its pool.
            clock: Source of the current time.
        """
        self._storage = storage
        self._client = client
        self._policy = policy
        self._settings = settings or WorkerSettings()
        self._clock = clock
        self.unit_id = unit_id
        self._next_reap: datetime | None = None

    @property
    def name(self) -> str:
        """Worker name recorded on claimed attempts."""
        return self._settings.name

    @property
    def version(self) -> str:
        """Worker version recorded on claimed attempts."""
        return self._settings.version or __version__

    @property
    def idle_delay(self) -> float:
        """Seconds to sleep after a poll found nothing to do."""
        return idle_sleep_seconds(
            self.unit_id, self._settings.min_poll_seconds, self._settings.max_poll_seconds
        )

    async def run(self, stop: asyncio.Event | None = None) -> None:
        """Process attempts until stop is set.

        Raises:
            StorageError: If the Attempt Store fails; the unit stops claiming.
        """
        stop = stop or asyncio.Event()
        bind_worker_context(self.name, self.unit_id, self.version)
        logger.info("Worker unit started", dedicated=self._settings.dedicated)

        while not stop.is_set():
            try:
                processed = await self.run_once()
            except StorageError:
                logger.error("Attempt Store failed, stopping unit", exc_info=True)
                raise
            if not processed:
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(stop.wait(), timeout=self.idle_delay)

        logger.info("Worker unit stopped")

    async def run_once(self) -> bool:
        """Reap stale claims if due, then claim and process one attempt.

        Returns:
            True if an attempt was processed, False if none was due.
        """
        now = self._clock()
        if self._next_reap is None or now >= self._next_reap:
            await self.reap_stale_claims(now)
            self._next_reap = now + timedelta(seconds=self._settings.max_poll_seconds)

        claim = await self._storage.claim_next_attempt(
            self.name,
            self.version,
            now=now,
            dedicated=self._settings.dedicated,
        )
        if claim is None:
            return False

        with attempt_context(claim.attempt):
            try:
                await self.process(claim)
            except StorageError:
                raise
            except Exception:
                # The claim stays held and is reaped once stale
                logger.exception("Unexpected error processing attempt")
        return True

    async def process(self, claim: ClaimedAttempt) -> bool:
        """Execute a claimed attempt and record its outcome.

        Returns:
            True if the outcome was recorded, False if the claim was lost.
        """
        attempt = claim.attempt
        response = await self._client.execute(
            attempt, claim.event, claim.subscription, now=self._clock()
        )
        return await self._finalize(claim, response)

    async def reap_stale_claims(self, now: datetime | None = None) -> int:
        """Release claims held longer than the HTTP timeout plus grace.

        Each stale claim is recorded as an E_TIMEOUT execution and goes
        through the Retry Policy, as if the HTTP call had timed out.

        Returns:
            Number of claims reaped by this unit.
        """
        now = now or self._clock()
        cutoff = now - timedelta(seconds=self._settings.stale_claim_seconds)
        reaped = 0
        for claim in await self._storage.find_stale_attempts(cutoff):
            attempt = claim.attempt
            picked_at = attempt.picked_at or now
            response = Response(
                request_attempt_id=attempt.request_attempt_id,
                application_id=attempt.application_id,
                response_error_name=ResponseError.TIMEOUT,
                elapsed_time_ms=max(int((now - picked_at).total_seconds() * 1000), 0),
                created_at=now,
            )
            with attempt_context(attempt):
                if await self._finalize(claim, response, now=now):
                    logger.warning("Reaped stale claim", previous_worker=attempt.worker_name)
                    reaped += 1
        return reaped

    async def _finalize(
        self,
        claim: ClaimedAttempt,
        response: Response,
        now: datetime | None = None,
    ) -> bool:
        now = now or self._clock()
        attempt = claim.attempt
        decision: RetryDecision | None = None
        failure = response.failure
        if failure is not None:
            decision = self._policy.decide(
                attempt.retry_count, failure, now, claim.subscription.retry_schedule
            )
        retry_at = decision.at if isinstance(decision, RetryAt) else None

        recorded = await self._storage.finalize_attempt(
            attempt, response, now=now, retry_at=retry_at
        )
        if not recorded:
            return False

        if decision is None:
            logger.info("Attempt succeeded")
        elif isinstance(decision, GiveUp):
            logger.warning("Attempt failed", reason=decision.reason)
        else:
            logger.info(
                "Attempt scheduled for retry",
                error=failure.error.value if failure else None,
                retry_at=decision.at.isoformat(),
            )
        return True


class WorkerPool:
    """Runs the units of one output worker process.

    Example:
        ```python
        async with Hook0Storage() as storage:
            pool = WorkerPool(storage, settings.worker, settings.retry)
            await pool.run()  # until pool.stop() or a store failure
        ```
    """

    def __init__(
        self,
        storage: Hook0Storage,
        settings: WorkerSettings | None = None,
        retry_settings: RetrySettings | None = None,
        client: DeliveryClient | None = None,
        policy: RetryPolicy | None = None,
        clock: Clock = utc_now,
    ) -> None:
        """Initialize the pool.

        Args:
            storage: Attempt Store shared by all units.
            settings: Worker settings; concurrency is the number of units.
            retry_settings: Global retry settings.
            client: Delivery client (created from settings if omitted).
            policy: Retry policy (created from retry_settings if omitted).
            clock: Source of the current time.
        """
        self._settings = settings or WorkerSettings()
        self._owns_client = client is None
        self._client = client or DeliveryClient(self._settings)
        policy = policy or RetryPolicy(retry_settings)
        self._stop = asyncio.Event()
        self.units = [
            OutputWorker(storage, self._client, policy, self._settings, unit_id, clock)
            for unit_id in range(self._settings.concurrency)
        ]

    def stop(self) -> None:
        """Ask every unit to stop after its current attempt."""
        self._stop.set()

    async def run(self) -> None:
        """Run all units until stop() is called.

        Raises:
            StorageError: If a unit hit a store failure; the other units are
                cancelled first.
        """
        logger.info(
            "Worker pool starting",
            worker_name=self._settings.name,
            units=len(self.units),
            dedicated=self._settings.dedicated,
        )
        tasks = [
            asyncio.create_task(unit.run(self._stop), name=f"hook0-unit-{unit.unit_id}")
            for unit in self.units
        ]
        try:
            await asyncio.gather(*tasks)
        finally:
            self._stop.set()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            if self._owns_client:
                await self._client.close()
            logger.info("Worker pool stopped", worker_name=self._settings.name)
