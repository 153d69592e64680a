# backend/callscribe/pipelines/dispatch.py
"""
Background execution for the transcription pipeline.

Usage:
    - Kick off a job with: trigger_transcription(tenant_id, message_id, contact_id, callback_url)
    - Start the sweep with: await start_reconcile_sweep()
    - On shutdown: stop_reconcile_sweep(); await dispatcher.drain()
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, Set

from callscribe.config import settings
from callscribe.database import get_db_context
from callscribe.pipelines.transcription_pipeline import (
    build_orchestrator,
    run_completion_job,
    run_transcription_job,
)
from callscribe.utils.logger import logger


class PipelineDispatcher:
    """Keeps a reference to every in-flight job so shutdown can wait for them."""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(self, job: Awaitable, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(job, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning(f"[dispatch] {task.get_name()} cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[dispatch] {task.get_name()} crashed: {type(exc).__name__}: {exc}")

    async def drain(self, timeout: float = 30.0) -> int:
        """Wait for in-flight jobs; cancel what is still running after `timeout`."""
        if not self._tasks:
            return 0
        logger.info(f"[dispatch] waiting for {len(self._tasks)} pipeline job(s)")
        _, still_running = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning(f"[dispatch] cancelled {len(still_running)} unfinished job(s)")
        return len(still_running)


dispatcher = PipelineDispatcher()


def trigger_transcription(
    tenant_id: str,
    message_id: str,
    contact_id: Optional[str],
    callback_url: Optional[str],
) -> asyncio.Task:
    return dispatcher.dispatch(
        run_transcription_job(tenant_id, message_id, contact_id, callback_url),
        name=f"transcribe:{message_id}",
    )


def trigger_completion(job_id: str) -> asyncio.Task:
    return dispatcher.dispatch(run_completion_job(job_id), name=f"complete:{job_id}")


# =============================================================================
# Reconciliation sweep
# =============================================================================

_sweep_task: Optional[asyncio.Task] = None
_sweep_running = False


async def start_reconcile_sweep():
    """Start the stale-record sweep. Call once on application startup."""
    global _sweep_task, _sweep_running

    if _sweep_running:
        logger.warning("Reconcile sweep already running")
        return

    _sweep_running = True
    _sweep_task = asyncio.create_task(_sweep_loop())
    logger.info(f"Reconcile sweep started (every {settings.RECONCILE_INTERVAL_SECONDS}s)")


def stop_reconcile_sweep():
    global _sweep_task, _sweep_running

    _sweep_running = False
    if _sweep_task and not _sweep_task.done():
        _sweep_task.cancel()
        logger.info("Reconcile sweep stopped")


async def run_reconcile_once() -> dict:
    with get_db_context() as db:
        orchestrator = build_orchestrator(db)
        try:
            return await orchestrator.reconcile_stale()
        finally:
            await orchestrator.aclose()


async def _sweep_loop():
    while _sweep_running:
        try:
            await run_reconcile_once()
        except Exception as e:
            logger.error(f"Reconcile sweep error: {e}")

        await asyncio.sleep(settings.RECONCILE_INTERVAL_SECONDS)
