"""
job_registry.py

In-memory state store for recognition jobs.

One Job per uploaded card image.  The registry is the only shared mutable
state in the service; it is an explicit object (not module globals) so the
batch controller, the HTTP layer and the tests can each hold their own.

Lifecycle:
    pending → running → succeeded | failed
    failed  → running               (single-job retry only)

    clear() drops every job, releases the image bytes, and bumps the epoch.
    Completions carrying an older epoch, or targeting a job that is gone,
    are discarded — they never re-add a stale entry.

Display order is submission order (dict insertion order).

No locks: everything runs on one event loop and no method awaits, so a
mutation can never be interleaved with another.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)

# ── Job status constants ───────────────────────────────────────────────────────

STATUS_PENDING   = "pending"
STATUS_RUNNING   = "running"
STATUS_SUCCEEDED = "succeeded"
STATUS_FAILED    = "failed"

TERMINAL_STATUSES = {STATUS_SUCCEEDED, STATUS_FAILED}

# Statuses a job may be started from.
_RUNNABLE_STATUSES = {STATUS_PENDING, STATUS_FAILED}


class JobNotFoundError(LookupError):
    """No job with the given id in the current registry."""


class InvalidTransitionError(Exception):
    """A status change that the lifecycle does not allow."""


# ── Data structures ────────────────────────────────────────────────────────────

@dataclass
class Job:
    job_id: str
    filename: str
    payload: bytes = field(repr=False, default=b"")
    media_type: str = "image/jpeg"
    status: str = STATUS_PENDING
    result: Optional[dict] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    epoch: int = 0
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return round(self.finished_at - self.started_at, 2)

    def to_payload(self) -> dict:
        return {
            "job_id":     self.job_id,
            "filename":   self.filename,
            "status":     self.status,
            "result":     dict(self.result) if self.result is not None else None,
            "error":      self.error,
            "error_kind": self.error_kind,
            "duration":   self.duration,
        }


class JobRegistry:
    """Job id → Job, plus the epoch used to fence off stale completions."""

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}
        self.epoch = 0

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    # ── Reads ──────────────────────────────────────────────────────────────────

    def get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job '{job_id}' not found.")
        return job

    def jobs(self) -> list[Job]:
        """Snapshot of all jobs in display (submission) order."""
        return list(self._jobs.values())

    def counts(self) -> dict[str, int]:
        counts = {
            STATUS_PENDING:   0,
            STATUS_RUNNING:   0,
            STATUS_SUCCEEDED: 0,
            STATUS_FAILED:    0,
        }
        for job in self._jobs.values():
            counts[job.status] += 1
        return counts

    def _live_job(self, job_id: str, epoch: int) -> Optional[Job]:
        """Return the job if the (id, epoch) pair still refers to it."""
        job = self._jobs.get(job_id)
        if job is None:
            logger.info(f"Job {job_id}: no longer registered — update discarded.")
            return None
        if job.epoch != epoch:
            logger.info(
                f"Job {job_id}: stale epoch {epoch} (job is epoch {job.epoch}) — update discarded."
            )
            return None
        return job

    # ── Mutations ──────────────────────────────────────────────────────────────

    def submit(self, filename: str, payload: bytes, media_type: str) -> Job:
        """Register a new pending job under a fresh synthetic id."""
        job = Job(
            job_id=str(uuid.uuid4()),
            filename=filename,
            payload=payload,
            media_type=media_type,
            epoch=self.epoch,
        )
        self._jobs[job.job_id] = job
        logger.info(f"[{filename}] Submitted as job {job.job_id}.")
        return job

    def mark_running(self, job_id: str, epoch: int) -> bool:
        """
        pending/failed → running.
        Returns False when the job was cleared out from under the caller.
        Raises InvalidTransitionError for a running or succeeded job.
        """
        job = self._live_job(job_id, epoch)
        if job is None:
            return False
        if job.status not in _RUNNABLE_STATUSES:
            raise InvalidTransitionError(
                f"Job '{job_id}' is '{job.status}' and cannot be started."
            )
        job.status      = STATUS_RUNNING
        job.result      = None
        job.error       = None
        job.error_kind  = None
        job.started_at  = time.monotonic()
        job.finished_at = None
        return True

    def resolve(
        self,
        job_id: str,
        epoch: int,
        *,
        result: Optional[dict] = None,
        error: Optional[str] = None,
        error_kind: Optional[str] = None,
    ) -> bool:
        """
        running → succeeded (result given) or failed (error given).
        Exactly one of result / error must be provided.
        Returns False when the completion is stale and was discarded.
        """
        if (result is None) == (error is None):
            raise ValueError("resolve() needs exactly one of result or error.")

        job = self._live_job(job_id, epoch)
        if job is None:
            return False
        if job.status != STATUS_RUNNING:
            raise InvalidTransitionError(
                f"Job '{job_id}' is '{job.status}', expected '{STATUS_RUNNING}'."
            )

        job.finished_at = time.monotonic()
        if result is not None:
            job.status     = STATUS_SUCCEEDED
            job.result     = result
            job.error      = None
            job.error_kind = None
        else:
            job.status     = STATUS_FAILED
            job.result     = None
            job.error      = error
            job.error_kind = error_kind
        return True

    def clear(self) -> int:
        """Drop every job, release its image bytes, start a new epoch."""
        removed = len(self._jobs)
        for job in self._jobs.values():
            job.payload = b""
        self._jobs.clear()
        self.epoch += 1
        logger.info(f"Registry cleared: {removed} job(s) removed, epoch now {self.epoch}.")
        return removed
