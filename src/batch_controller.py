"""
batch_controller.py

Async orchestration layer for business-card recognition.

Batch path ("recognize all"):
    1. Snapshot the registry epoch and pick eligible jobs in display order:
         pending             → always
         failed              → only when rerun_failed is on
         running / succeeded → never
    2. Wrap each job in a zero-argument task:
         recheck eligibility → mark running → recognition call → resolve succeeded | failed
    3. Hand the tasks to scheduler.run_bounded with the concurrency cap.
    One job failing never stops the others; its slot in the report is
    NO_RESULT and the error is recorded on the job.

Single-job path (recognize_one):
    Same state contract, also allowed from failed (manual retry).  Safe to
    call while a batch is in flight — it only ever touches its own job.

Busy signal:
    `busy` is True from the moment a batch is accepted until it settles.
    A second batch request while busy raises BatchBusyError.  There is no
    cancellation: a submitted batch always runs to completion.

Clear:
    clear() empties the registry and bumps its epoch.  Tasks already in
    flight keep running; their completions carry the old epoch and are
    discarded by the registry.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Awaitable, Callable, Optional

from config import BATCH_CONCURRENCY, RERUN_FAILED
from excel_writer import build_excel, get_output_filename
from job_registry import (
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_RUNNING,
    STATUS_SUCCEEDED,
    InvalidTransitionError,
    Job,
    JobRegistry,
)
from recognition_client import RecognitionError, recognize_card
from scheduler import NO_RESULT, run_bounded
from validator import CARD_FIELDS, count_fields

logger = logging.getLogger(__name__)

RecognizeFn = Callable[[bytes, str], Awaitable[dict]]

ERROR_KIND_INTERNAL = "internal"
_INTERNAL_ERROR_MESSAGE = "Failed to recognize image."


class BatchBusyError(Exception):
    """A batch is already in flight."""


# ── Data structures ────────────────────────────────────────────────────────────

@dataclass
class BatchReport:
    epoch: int
    job_ids: list[str] = field(default_factory=list)
    results: list = field(default_factory=list)   # record dict or NO_RESULT, aligned with job_ids

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r is not NO_RESULT)

    @property
    def without_result(self) -> int:
        return len(self.results) - self.succeeded


class BatchController:
    def __init__(
        self,
        registry: JobRegistry,
        recognize: RecognizeFn = recognize_card,
        concurrency: int = BATCH_CONCURRENCY,
        rerun_failed: bool = RERUN_FAILED,
    ) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}.")
        self.registry     = registry
        self.concurrency  = concurrency
        self.rerun_failed = rerun_failed
        self._recognize   = recognize
        self._busy        = False
        self._batch_task: Optional[asyncio.Task] = None

    @property
    def busy(self) -> bool:
        return self._busy

    def _batch_statuses(self) -> set[str]:
        return {STATUS_PENDING, STATUS_FAILED} if self.rerun_failed else {STATUS_PENDING}

    def eligible_jobs(self) -> list[Job]:
        runnable = self._batch_statuses()
        return [job for job in self.registry.jobs() if job.status in runnable]

    # ── One job ────────────────────────────────────────────────────────────────

    async def _run_job(self, job_id: str, epoch: int, runnable: Optional[set[str]] = None):
        """
        Execute one job end to end.
        Returns the card record, or NO_RESULT if the job was cleared before
        it started.  Re-raises recognition failures after recording them so
        the scheduler puts NO_RESULT in the slot.

        runnable: batch path only.  Statuses the job must still be in when a
        worker claims it; the single-job path may have settled it meanwhile.
        """
        job = self.registry.get(job_id)
        if job is None:
            return NO_RESULT
        if runnable is not None and job.status not in runnable:
            logger.info(
                f"[{job.filename}] Skipped by batch: job is already '{job.status}'."
            )
            return NO_RESULT
        if not self.registry.mark_running(job_id, epoch):
            return NO_RESULT

        filename   = job.filename
        payload    = job.payload
        media_type = job.media_type
        logger.info(f"[{filename}] Recognition started (job {job_id}).")

        try:
            record = await self._recognize(payload, media_type)
        except RecognitionError as exc:
            logger.warning(f"[{filename}] Recognition failed ({exc.kind}): {exc.describe()}")
            self.registry.resolve(job_id, epoch, error=exc.describe(), error_kind=exc.kind)
            raise
        except Exception as exc:
            logger.error(f"[{filename}] Unexpected recognition error: {exc}", exc_info=True)
            self.registry.resolve(
                job_id, epoch,
                error=_INTERNAL_ERROR_MESSAGE,
                error_kind=ERROR_KIND_INTERNAL,
            )
            raise

        if self.registry.resolve(job_id, epoch, result=record):
            filled, _ = count_fields(record)
            logger.info(
                f"[{filename}] Recognition succeeded (job {job_id}): "
                f"{filled}/{len(CARD_FIELDS)} fields filled."
            )
        return record

    async def recognize_one(self, job_id: str) -> Job:
        """
        Single-job path.
        Raises JobNotFoundError / InvalidTransitionError before any call is made.
        A recognition failure is recorded on the returned job, not raised.
        """
        job = self.registry.require(job_id)
        if job.status == STATUS_SUCCEEDED:
            raise InvalidTransitionError(f"Job '{job_id}' is already '{job.status}'.")

        try:
            await self._run_job(job_id, self.registry.epoch)
        except RecognitionError:
            # Already recorded on the job by _run_job.
            pass
        return job

    # ── Batch ──────────────────────────────────────────────────────────────────

    async def _run_batch(self) -> BatchReport:
        epoch = self.registry.epoch
        job_ids = [job.job_id for job in self.eligible_jobs()]

        if not job_ids:
            logger.info("Recognize all: no eligible jobs — nothing to do.")
            return BatchReport(epoch=epoch)

        logger.info(
            f"Recognize all: {len(job_ids)} job(s), concurrency {self.concurrency}, "
            f"epoch {epoch}."
        )
        runnable = self._batch_statuses()
        tasks = [partial(self._run_job, job_id, epoch, runnable) for job_id in job_ids]
        results = await run_bounded(tasks, self.concurrency)

        report = BatchReport(epoch=epoch, job_ids=job_ids, results=results)
        logger.info(
            f"Recognize all finished: {report.succeeded} succeeded, "
            f"{report.without_result} without result."
        )
        return report

    async def recognize_all(self) -> BatchReport:
        """Run one batch and wait for it. Raises BatchBusyError if one is running."""
        if self._busy:
            raise BatchBusyError("A batch is already running.")
        self._busy = True
        try:
            return await self._run_batch()
        finally:
            self._busy = False

    def start_batch(self) -> asyncio.Task:
        """
        Start a batch in the background and return immediately.
        busy is raised synchronously, so two back-to-back requests cannot
        both start one.  Must be called from inside the running event loop.
        """
        if self._busy:
            raise BatchBusyError("A batch is already running.")
        self._busy = True
        self._batch_task = asyncio.create_task(self._run_batch_background())
        return self._batch_task

    async def _run_batch_background(self) -> None:
        try:
            await self._run_batch()
        except Exception as exc:
            logger.error(f"Background batch crashed: {exc}", exc_info=True)
        finally:
            self._busy = False

    async def join(self) -> None:
        """Wait for the background batch, if any, to settle."""
        if self._batch_task is not None:
            await self._batch_task

    # ── Registry-level actions ─────────────────────────────────────────────────

    def clear(self) -> int:
        return self.registry.clear()

    def get_status_payload(self) -> dict:
        """JSON-serializable snapshot for GET /jobs."""
        counts = self.registry.counts()
        jobs = self.registry.jobs()
        return {
            "total":     len(jobs),
            "pending":   counts[STATUS_PENDING],
            "running":   counts[STATUS_RUNNING],
            "succeeded": counts[STATUS_SUCCEEDED],
            "failed":    counts[STATUS_FAILED],
            "busy":      self._busy,
            "epoch":     self.registry.epoch,
            "jobs":      [job.to_payload() for job in jobs],
        }

    def export_excel(self) -> tuple[bytes, str]:
        rows = [job.to_payload() for job in self.registry.jobs()]
        return build_excel(rows), get_output_filename()
