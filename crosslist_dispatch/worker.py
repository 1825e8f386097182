from __future__ import annotations

import asyncio
import functools
import logging
import random
import time

from opentelemetry import trace

from crosslist_dispatch.core.config import WorkerSettings, get_worker_settings
from crosslist_dispatch.core.crypto import CredentialCipher
from crosslist_dispatch.core.telemetry import (
    configure_logging,
    setup_worker_telemetry,
    shutdown_worker_telemetry,
)
from crosslist_dispatch.jobs.engine import QueueEngine
from crosslist_dispatch.jobs.executor import HttpAutomationExecutor, execute_job
from crosslist_dispatch.jobs.stale_sweep import sweep_stale_processing
from crosslist_dispatch.services.repository import PostgresRepository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def build_engine(store, settings: WorkerSettings) -> QueueEngine:
    automation = HttpAutomationExecutor(
        settings.automation_base_url,
        timeout_seconds=settings.automation_timeout_seconds,
    )
    executors = {platform: automation for platform in settings.server_executed_platforms}
    cipher = None
    if settings.credentials_encryption_key:
        cipher = CredentialCipher(settings.credentials_encryption_key)
    return QueueEngine(
        store,
        functools.partial(execute_job, store=store, executors=executors, cipher=cipher),
        concurrency=settings.queue_concurrency,
        max_attempts=settings.queue_max_attempts,
        backoff_base_seconds=settings.queue_backoff_base_seconds,
        backoff_max_seconds=settings.queue_backoff_max_seconds,
        keep_completed_count=settings.queue_keep_completed_count,
        keep_completed_seconds=settings.queue_keep_completed_seconds,
        keep_failed_count=settings.queue_keep_failed_count,
    )


async def run_cycle(store, engine: QueueEngine, settings: WorkerSettings, *, sweep: bool) -> int:
    """One pass of the worker loop; returns the number of jobs handed to the engine."""
    if sweep:
        failed = await sweep_stale_processing(
            store,
            max_age_seconds=settings.stale_processing_seconds,
            limit=settings.stale_sweep_batch_size,
        )
        if failed:
            logger.info("failed stale jobs: %s", len(failed))

    queued = await store.list_queued_for_platforms(
        list(settings.server_executed_platforms),
        settings.poll_batch_size,
    )
    return sum(1 for job in queued if engine.submit(job["job_id"]))


async def run_worker() -> None:
    settings = get_worker_settings()
    configure_logging()
    telemetry_runtime = setup_worker_telemetry(settings)
    store = PostgresRepository(
        settings.database_url,
        settings.database_pool_min_size,
        settings.database_pool_max_size,
        command_timeout_seconds=settings.database_command_timeout_seconds,
    )
    engine = build_engine(store, settings)
    engine.start()

    backoff = settings.poll_interval_seconds
    last_sweep_at = 0.0

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    now = time.monotonic()
                    sweep = now - last_sweep_at >= settings.stale_sweep_interval_seconds
                    submitted = await run_cycle(store, engine, settings, sweep=sweep)
                    if sweep:
                        last_sweep_at = now
                    if submitted:
                        logger.info("submitted server jobs: %s", submitted)

                backoff = settings.poll_interval_seconds
                await asyncio.sleep(settings.poll_interval_seconds)
            except Exception as exc:  # pragma: no cover - bootstrap robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        await engine.stop()
        await store.close()
        shutdown_worker_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
