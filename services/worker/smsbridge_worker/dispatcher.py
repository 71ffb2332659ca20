"""Dispatch worker process.

Claims pending SMS jobs from the queue and sends them through the
gateway with at most ``dispatch_concurrency`` sends in flight. Each job
is processed in its own database session so one failure cannot roll
back another job's state.

Run with ``python -m smsbridge_worker.dispatcher``.
"""

import asyncio
import os
import random
import signal
import socket
import time
from typing import Callable, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from smsbridge_core.config import get_settings
from smsbridge_core.domain.services.dispatch import DispatchService
from smsbridge_core.domain.services.jobs import JobService
from smsbridge_core.domain.services.tenants import TenantCache
from smsbridge_core.infra.db import get_sync_session_factory, session_scope
from smsbridge_core.observability.logging import configure_logging, get_logger
from smsbridge_core.observability.metrics import DISPATCH_IN_FLIGHT, get_collector

logger = get_logger(__name__)

DB_WAIT_ATTEMPTS = 30


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class DispatchWorker:
    """Bounded-concurrency loop over the SMS job queue.

    Attributes:
        worker_id: Identifier written on every lease this worker takes.
        concurrency: Maximum number of sends in flight.
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker[Session]] = None,
        worker_id: Optional[str] = None,
        concurrency: Optional[int] = None,
        poll_interval: Optional[float] = None,
        poll_jitter: Optional[float] = None,
        shutdown_grace: Optional[float] = None,
        service_factory: Optional[Callable[[Session], DispatchService]] = None,
    ):
        settings = get_settings()
        self.session_factory = session_factory or get_sync_session_factory()
        self.worker_id = worker_id or settings.worker_id or default_worker_id()
        self.concurrency = concurrency or settings.dispatch_concurrency
        self.poll_interval = (
            settings.dispatch_poll_interval_seconds if poll_interval is None else poll_interval
        )
        self.poll_jitter = (
            settings.dispatch_poll_jitter_seconds if poll_jitter is None else poll_jitter
        )
        self.shutdown_grace = (
            settings.dispatch_shutdown_grace_seconds
            if shutdown_grace is None
            else shutdown_grace
        )
        self.tenant_cache = TenantCache(ttl_seconds=settings.tenant_cache_ttl_seconds)
        self.service_factory = service_factory or self._default_service

        self._semaphore = asyncio.Semaphore(self.concurrency)
        self._in_flight: set[asyncio.Task] = set()
        self._stopping = asyncio.Event()

    def _default_service(self, db: Session) -> DispatchService:
        return DispatchService(db, tenant_cache=self.tenant_cache)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def free_slots(self) -> int:
        return self.concurrency - len(self._in_flight)

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    async def run(self) -> None:
        """Claim and dispatch until stop() is called."""
        logger.info(
            "dispatcher.started",
            worker_id=self.worker_id,
            concurrency=self.concurrency,
        )
        while not self._stopping.is_set():
            try:
                claimed = await self.run_once()
            except SQLAlchemyError:
                logger.error("dispatcher.claim_failed", exc_info=True, worker_id=self.worker_id)
                claimed = 0

            if claimed == 0:
                await self._idle()

        await self._drain()
        logger.info("dispatcher.stopped", worker_id=self.worker_id)

    async def run_once(self) -> int:
        """Claim as many jobs as there are free slots and start them.

        When every slot is busy, waits for a send to finish and claims
        into the freed slots straight away.

        Returns:
            Number of jobs claimed.
        """
        if self.free_slots <= 0:
            done, _ = await asyncio.wait(self._in_flight, return_when=asyncio.FIRST_COMPLETED)
            self._in_flight.difference_update(done)
            if self._stopping.is_set():
                return 0
        free = self.free_slots

        with session_scope(self.session_factory) as db:
            jobs = JobService(db).claim(free, self.worker_id)
            job_ids = [job.job_id for job in jobs]

        for job_id in job_ids:
            task = asyncio.create_task(self._process(job_id))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

        get_collector().set_gauge(DISPATCH_IN_FLIGHT, len(self._in_flight))
        return len(job_ids)

    async def _process(self, job_id: str) -> None:
        async with self._semaphore:
            db = self.session_factory()
            try:
                await self.service_factory(db).process_job(job_id)
            except Exception:
                # The job keeps its lease and is reaped later
                db.rollback()
                logger.error(
                    "dispatcher.job_crashed",
                    exc_info=True,
                    job_id=job_id,
                    worker_id=self.worker_id,
                )
            finally:
                db.close()

    async def _idle(self) -> None:
        delay = self.poll_interval + random.uniform(0, self.poll_jitter)
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    def stop(self) -> None:
        """Stop claiming new jobs; run() returns once in-flight sends end."""
        if not self._stopping.is_set():
            logger.info("dispatcher.stopping", worker_id=self.worker_id, in_flight=self.in_flight)
            self._stopping.set()

    async def _drain(self) -> None:
        if not self._in_flight:
            return

        pending = set(self._in_flight)
        _, still_running = await asyncio.wait(pending, timeout=self.shutdown_grace)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning(
                "dispatcher.cancelled_in_flight",
                worker_id=self.worker_id,
                count=len(still_running),
            )


def wait_for_database(
    session_factory: sessionmaker[Session],
    attempts: int = DB_WAIT_ATTEMPTS,
    delay: float = 2.0,
) -> None:
    """Block until the database answers, or raise after the last attempt."""
    for attempt in range(1, attempts + 1):
        try:
            with session_scope(session_factory) as db:
                db.execute(text("SELECT 1"))
            return
        except SQLAlchemyError:
            if attempt == attempts:
                raise
            logger.warning("dispatcher.database_unavailable", attempt=attempt)
            time.sleep(delay)


async def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json, "smsbridge-dispatcher")

    session_factory = get_sync_session_factory()
    wait_for_database(session_factory)

    worker = DispatchWorker(session_factory=session_factory)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, worker.stop)

    await worker.run()


if __name__ == "__main__":
    asyncio.run(main())
