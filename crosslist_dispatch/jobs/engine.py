from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from opentelemetry import trace

from crosslist_dispatch.jobs.executor import ExecutionOutcome, RecoverableExecutionError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

JobRunner = Callable[[dict[str, Any]], Awaitable[ExecutionOutcome]]


class QueueEngine:
    """Local worker pool for jobs the server executes itself.

    Jobs are claimed through the store's conditional ``queued -> processing``
    transition, so a job another party already owns is skipped. Every attempt
    is recorded on the job row before the engine sleeps or moves on.
    """

    def __init__(
        self,
        store: Any,
        run_job: JobRunner,
        *,
        concurrency: int = 2,
        max_attempts: int = 3,
        backoff_base_seconds: float = 5.0,
        backoff_max_seconds: float = 300.0,
        keep_completed_count: int = 1000,
        keep_completed_seconds: int = 24 * 3600,
        keep_failed_count: int = 5000,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.run_job = run_job
        self.concurrency = max(1, concurrency)
        self.max_attempts = max(1, max_attempts)
        self.backoff_base_seconds = max(0.0, backoff_base_seconds)
        self.backoff_max_seconds = max(self.backoff_base_seconds, backoff_max_seconds)
        self.keep_completed_count = max(0, keep_completed_count)
        self.keep_completed_age = timedelta(seconds=max(0, keep_completed_seconds))
        self.keep_failed_count = max(0, keep_failed_count)
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._pending: set[str] = set()
        self._workers: list[asyncio.Task[None]] = []
        self._completed: deque[dict[str, Any]] = deque()
        self._failed: deque[dict[str, Any]] = deque()

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def submit(self, job_id: str) -> bool:
        if job_id in self._pending:
            return False
        self._pending.add(job_id)
        self._queue.put_nowait(job_id)
        return True

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker_loop(index), name=f"queue-worker-{index}")
            for index in range(self.concurrency)
        ]
        logger.info("queue engine started concurrency=%s", self.concurrency)

    async def stop(self) -> None:
        workers, self._workers = self._workers, []
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        if workers:
            logger.info("queue engine stopped")

    async def join(self) -> None:
        await self._queue.join()

    def history(self) -> dict[str, list[dict[str, Any]]]:
        self._prune()
        return {
            "completed": [dict(entry) for entry in self._completed],
            "failed": [dict(entry) for entry in self._failed],
        }

    def compute_backoff_seconds(self, attempt: int) -> float:
        exponent = max(0, attempt - 1)
        return min(self.backoff_base_seconds * (2**exponent), self.backoff_max_seconds)

    async def process(self, job_id: str) -> str | None:
        """Claim and run one job; returns its terminal status, or None when skipped."""
        with tracer.start_as_current_span("queue.process_job") as span:
            span.set_attribute("job.id", job_id)
            claimed = await self.store.transition([job_id], "queued", "processing")
            if not claimed:
                logger.info("job already claimed elsewhere job_id=%s", job_id)
                span.set_attribute("job.skipped", True)
                return None

            job = await self.store.get_job(job_id)
            span.set_attribute("job.platform", job["platform"])
            last_error = "Unknown error"

            for attempt in range(1, self.max_attempts + 1):
                span.set_attribute("job.attempt", attempt)
                try:
                    outcome = await self.run_job(job)
                except RecoverableExecutionError as exc:
                    last_error = _describe(exc)
                    await self.store.record_attempt(job_id, attempt=attempt, error_message=last_error)
                    if attempt >= self.max_attempts:
                        break
                    delay = self.compute_backoff_seconds(attempt)
                    logger.warning(
                        "job attempt failed job_id=%s attempt=%s retry_in=%.1fs error=%s",
                        job_id,
                        attempt,
                        delay,
                        last_error,
                    )
                    await self._sleep(delay)
                    continue
                except Exception as exc:
                    last_error = _describe(exc)
                    await self.store.record_attempt(job_id, attempt=attempt, error_message=last_error)
                    logger.warning("job failed without retry job_id=%s attempt=%s error=%s", job_id, attempt, last_error)
                    break

                await self.store.record_attempt(job_id, attempt=attempt, error_message=None)
                await self._complete(job, outcome)
                span.set_attribute("job.status", "completed")
                return "completed"

            await self.store.mark_terminal(job_id, "failed", error_message=last_error)
            self._remember(self._failed, job_id, job["platform"], last_error)
            logger.info("job failed job_id=%s attempts=%s", job_id, attempt)
            span.set_attribute("job.status", "failed")
            return "failed"

    async def _complete(self, job: dict[str, Any], outcome: ExecutionOutcome) -> None:
        job_id = job["job_id"]
        changed = await self.store.mark_terminal(
            job_id,
            "completed",
            platform_listing_id=outcome.platform_listing_id,
            platform_url=outcome.platform_url,
        )
        if not changed:
            logger.warning("job left processing before completion was recorded job_id=%s", job_id)
            return
        if job["operation"] == "CREATE" and outcome.platform_listing_id:
            await self.store.record_platform_listing(
                listing_id=job["listing_id"],
                user_id=job["user_id"],
                platform=job["platform"],
                platform_listing_id=outcome.platform_listing_id,
                platform_url=outcome.platform_url,
            )
        elif job["operation"] == "DELETE" and job["platform_listing_id"]:
            await self.store.mark_platform_listing_delisted(
                platform=job["platform"],
                platform_listing_id=job["platform_listing_id"],
            )
        self._remember(self._completed, job_id, job["platform"], None)
        logger.info("job completed job_id=%s platform=%s", job_id, job["platform"])

    async def _worker_loop(self, index: int) -> None:
        while True:
            job_id = await self._queue.get()
            try:
                await self.process(job_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("queue worker %s failed processing job_id=%s", index, job_id)
            finally:
                self._pending.discard(job_id)
                self._queue.task_done()

    def _remember(self, bucket: deque[dict[str, Any]], job_id: str, platform: str, error: str | None) -> None:
        bucket.append(
            {
                "job_id": job_id,
                "platform": platform,
                "error_message": error,
                "finished_at": self._clock(),
            }
        )
        self._prune()

    def _prune(self) -> None:
        cutoff = self._clock() - self.keep_completed_age
        while self._completed and (
            len(self._completed) > self.keep_completed_count or self._completed[0]["finished_at"] < cutoff
        ):
            self._completed.popleft()
        while len(self._failed) > self.keep_failed_count:
            self._failed.popleft()


def _describe(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__
