"""
Processing queue and workers.

Jobs wait in a FIFO list and are admitted while fewer than
`concurrency_limit` jobs are running. Each admitted job runs start to
finish on its own worker thread: resolve extractor → extract → call the
AI provider (with retry) → completed / error / cancelled.

Only the pending list, the running set and the job index are shared
between threads; every change to them happens under `self._lock`.
With storage attached, a finished job is dropped from the index once its
final state is saved, and later reads come from storage.
"""

import logging
import threading
import uuid
from collections import deque
from typing import Callable, Optional

from distiller.core.constants import (
    ErrorKind, JobStatus, LogLevel, ACTIVE_STATUSES,
    DEFAULT_CONCURRENT_JOBS, MAX_CONCURRENT_JOBS, DEFAULT_MAX_PENDING_JOBS,
)
from distiller.core.error_codes import (
    ConfigurationError, JobError, QueueFullError, cancelled_error,
)
from distiller.core.extractors import (
    Extractor, default_extractors, resolve_extractor, run_extractor,
)
from distiller.core.job_state import advance, cancel, fail
from distiller.core.models import Job
from distiller.core.provider_base import ProviderAdapter
from distiller.core.provider_registry import ProviderRegistry
from distiller.core.retry_policy import RetryPolicy

logger = logging.getLogger(__name__)

_LOG_METHODS = {
    LogLevel.INFO: logger.info,
    LogLevel.WARNING: logger.warning,
    LogLevel.ERROR: logger.error,
}


def _configuration_error_kind(error: ConfigurationError) -> str:
    # A missing credential surfaces as the adapter's AuthError
    cause = error.__cause__
    if isinstance(cause, JobError):
        return cause.kind
    return ErrorKind.PROVIDER_UNAVAILABLE


class ProcessingQueue:
    """
    Schedules distillation jobs under a concurrency limit.
    Emits `on_job_updated(job)` after every status change and log line,
    and `on_queue_empty()` when the last running job finishes.
    """

    def __init__(self, registry: ProviderRegistry, storage=None,
                 extractors: dict[str, Extractor] | None = None,
                 concurrency_limit: int = DEFAULT_CONCURRENT_JOBS,
                 max_pending: int = DEFAULT_MAX_PENDING_JOBS,
                 retry_policy: RetryPolicy | None = None,
                 summary_options: dict | None = None):
        self.registry = registry
        self.storage = storage
        self.extractors = extractors if extractors is not None else default_extractors()
        self.retry_policy = retry_policy or RetryPolicy()
        self.summary_options = dict(summary_options or {})
        self.max_pending = max_pending

        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)
        self._limit = min(max(1, int(concurrency_limit)), MAX_CONCURRENT_JOBS)
        self._pending: deque[str] = deque()
        self._running: set[str] = set()
        self._jobs: dict[str, Job] = {}

        # Callbacks
        self.on_job_updated: Optional[Callable[[Job], None]] = None
        self.on_queue_empty: Optional[Callable[[], None]] = None

    # ── Introspection ─────────────────────────────────────────────────

    @property
    def concurrency_limit(self) -> int:
        with self._lock:
            return self._limit

    @property
    def running_count(self) -> int:
        with self._lock:
            return len(self._running)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def pending_ids(self) -> list[str]:
        with self._lock:
            return list(self._pending)

    def get_job(self, job_id: str) -> Job | None:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None and self.storage is not None:
            job = self.storage.get_job(job_id)
        return job

    def get_status(self, job_id: str) -> dict | None:
        job = self.get_job(job_id)
        return job.to_dict() if job else None

    def list_status(self) -> list[dict]:
        with self._lock:
            by_id = dict(self._jobs)
        if self.storage is not None:
            try:
                for job in self.storage.list_jobs():
                    by_id.setdefault(job.id, job)
            except Exception as e:
                logger.error("Failed to list stored jobs: %s", e)
        jobs = list(by_id.values())
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [j.to_dict(include_content=False) for j in jobs]

    # ── Queue management ──────────────────────────────────────────────

    def submit(self, source_kind: str, source_ref: str) -> str:
        """Enqueue a new job and return its id. Never waits for processing."""
        job = Job(id=str(uuid.uuid4()), source_kind=source_kind, source_ref=source_ref)
        job.add_log(f"Queued {source_kind} source: {source_ref}")

        with self._lock:
            if len(self._pending) >= self.max_pending:
                raise QueueFullError(
                    f"Processing queue is full ({self.max_pending} jobs waiting)")
            self._jobs[job.id] = job
            self._pending.append(job.id)
            self._persist(job, create=True)

        logger.info("Job %s queued (%s: %s)", job.id, source_kind, source_ref)
        self._notify(job)
        self._admit()
        return job.id

    def request_stop(self, job_id: str) -> tuple[bool, str]:
        """
        Ask a job to stop. Queued jobs are cancelled at once; running jobs
        stop at their next checkpoint. Returns (accepted, message).
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return False, f"Unknown job {job_id}"
            if job.is_terminal:
                return False, f"Job already {job.status}"
            if job.cancel_requested:
                return True, "Stop already requested"

            job.request_cancel()
            if job_id in self._pending:
                self._pending.remove(job_id)
                cancel(job, "Removed from queue before processing started")
                message = "Cancelled"
            else:
                job.add_log("Stop requested; stopping at the next checkpoint", LogLevel.WARNING)
                message = "Stop requested"
            self._changed.notify_all()

        logger.info("Job %s: %s", job_id, message.lower())
        saved = self._persist(job)
        self._notify(job)
        if job.is_terminal and saved:
            self._release(job)
        return True, message

    def set_concurrency_limit(self, limit: int) -> int:
        """Change the admission limit; running jobs are never preempted."""
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise ValueError(f"Concurrency limit must be an integer >= 1, got {limit!r}")
        effective = min(limit, MAX_CONCURRENT_JOBS)
        with self._lock:
            self._limit = effective
        logger.info("Concurrency limit set to %d", effective)
        self._admit()
        return effective

    def resubmit(self, job_id: str) -> str:
        """Queue a fresh job for the source of a finished one."""
        job = self.get_job(job_id)
        if job is None:
            raise KeyError(job_id)
        if not job.is_terminal:
            raise ValueError(f"Job {job_id} is still {job.status}")
        return self.submit(job.source_kind, job.source_ref)

    def remove_job(self, job_id: str) -> bool:
        """Forget a finished job (memory and storage)."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is not None and not job.is_terminal:
                return False
            self._jobs.pop(job_id, None)
        if self.storage is not None:
            try:
                self.storage.delete_job(job_id)
            except Exception as e:
                logger.error("Failed to delete job %s from storage: %s", job_id, e)
        return True

    def clear_queue(self) -> int:
        """Cancel every job still waiting for admission."""
        count = 0
        for job_id in self.pending_ids():
            accepted, _ = self.request_stop(job_id)
            count += 1 if accepted else 0
        return count

    def restore_from_storage(self) -> tuple[int, int]:
        """
        Reload persisted jobs after a restart: queued jobs go back in line,
        jobs that were mid-flight are failed. Returns (requeued, failed).
        """
        if self.storage is None:
            return 0, 0

        requeued = failed = 0
        for job in self.storage.get_jobs_by_status(JobStatus.QUEUED, *ACTIVE_STATUSES):
            with self._lock:
                if job.id in self._jobs:
                    continue
                self._jobs[job.id] = job
                if job.status == JobStatus.QUEUED and not job.cancel_requested:
                    self._pending.append(job.id)
                    job.add_log("Restored to queue after restart")
                    requeued += 1
                elif job.status == JobStatus.QUEUED:
                    cancel(job, "Stop was requested before restart")
                    failed += 1
                else:
                    fail(job, JobError(ErrorKind.UNKNOWN,
                                       "Interrupted before completion (application restarted)"))
                    failed += 1
            if self._persist(job) and job.is_terminal:
                self._release(job)

        logger.info("Restored jobs from storage: %d requeued, %d closed", requeued, failed)
        self._admit()
        return requeued, failed

    def wait_until_idle(self, timeout: float | None = None) -> bool:
        """Block until nothing is pending or running."""
        with self._changed:
            return self._changed.wait_for(
                lambda: not self._pending and not self._running, timeout)

    def shutdown(self, timeout: float | None = None) -> bool:
        """Cancel queued jobs, ask running jobs to stop, wait for the workers."""
        self.clear_queue()
        with self._lock:
            running = list(self._running)
        for job_id in running:
            self.request_stop(job_id)
        return self.wait_until_idle(timeout)

    # ── Admission ─────────────────────────────────────────────────────

    def _admit(self):
        """Start pending jobs while there are free slots (FIFO)."""
        started = []
        with self._lock:
            while self._pending and len(self._running) < self._limit:
                job = self._jobs[self._pending.popleft()]
                advance(job, JobStatus.INITIALIZING, step="Initializing")
                self._running.add(job.id)
                started.append(job)

        for job in started:
            worker = threading.Thread(target=self._worker, args=(job,),
                                      name=f"job-{job.id[:8]}", daemon=True)
            worker.start()

    def _worker(self, job: Job):
        try:
            self._persist(job)
            self._notify(job)
            self._process_job(job)
        except Exception as e:
            logger.error("Worker error on job %s: %s", job.id, e, exc_info=True)
        finally:
            # A finished job leaves memory only once storage holds its final state
            evict = job.is_terminal and self._persist(job)
            with self._lock:
                self._running.discard(job.id)
                if evict:
                    self._jobs.pop(job.id, None)
                self._changed.notify_all()
            self._admit()
            self._notify_if_idle()

    # ── Job processing pipeline ───────────────────────────────────────

    def _process_job(self, job: Job):
        """Run one admitted job to a terminal status."""
        try:
            # Provider settings are read once; later swaps don't affect this job
            snapshot = self.registry.snapshot()
            config = snapshot.config
            job.provider = config.provider
            job.model = config.model
            job.config_version = snapshot.version
            self._log(job, f"Using {config.provider} model '{config.model}' "
                           f"(configuration v{snapshot.version})")
            self._checkpoint(job)

            # ── Stage 1: Extract ──
            extractor = resolve_extractor(self.extractors, job.source_kind)
            self._advance(job, JobStatus.EXTRACTING, extractor.describe(job.source_ref))
            text = run_extractor(extractor, job.source_ref)
            job.set_raw_content(text)
            self._log(job, f"Extracted {len(text)} characters")
            self._checkpoint(job)

            # ── Stage 2: Summarize ──
            self._advance(job, JobStatus.SUMMARIZING, "Preparing AI request")
            adapter = self.registry.create_adapter(config)
            try:
                summary = self._summarize_with_retry(job, adapter, text)
            finally:
                adapter.close()
            self._checkpoint(job)

            job.set_result_content(summary)
            self._advance(job, JobStatus.COMPLETED, "Distillation complete",
                          message=f"Completed: {len(summary)} characters "
                                  f"in {job.elapsed_seconds():.1f}s")

        except ConfigurationError as e:
            self._fail(job, JobError(_configuration_error_kind(e), str(e)))
        except JobError as e:
            if e.kind == ErrorKind.CANCELLED:
                self._cancel(job, e.message)
            else:
                self._fail(job, e)
        except Exception as e:
            logger.error("Unexpected error processing job %s: %s", job.id, e, exc_info=True)
            self._fail(job, JobError(ErrorKind.UNKNOWN, f"{type(e).__name__}: {e}"))

    def _summarize_with_retry(self, job: Job, adapter: ProviderAdapter, text: str) -> str:
        """
        Call the provider until it succeeds, fails permanently, runs out of
        attempts, or a stop is requested (checked before every attempt and
        during backoff).
        """
        limit = adapter.get_max_input_length()
        if len(text) > limit:
            self._log(job, f"Input is {len(text)} characters; truncating to {limit} "
                           f"for {adapter.display_name}", LogLevel.WARNING)

        attempt = 0
        while True:
            self._checkpoint(job)
            attempt += 1
            job.processing_step = f"Calling {adapter.display_name}"
            self._log(job, f"Provider attempt {attempt}: calling {adapter.display_name} "
                           f"model '{adapter.model}'")
            try:
                return adapter.generate_summary(text, self.summary_options)
            except JobError as e:
                if not self.retry_policy.should_retry(e, attempt):
                    if e.retryable and self.retry_policy.wait_too_long(e):
                        self._log(job, f"{adapter.display_name} asked to wait "
                                       f"{e.retry_after:.0f}s; not retrying", LogLevel.WARNING)
                    elif e.retryable:
                        self._log(job, f"Giving up after {attempt} attempts", LogLevel.WARNING)
                    raise
                delay = self.retry_policy.backoff_delay(e, attempt)
                self._log(job, f"[{e.kind}] {e.message}; retrying in {delay:.1f}s",
                          LogLevel.WARNING)
                if job.wait_for_cancel(delay):
                    raise cancelled_error()

    # ── Helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _checkpoint(job: Job):
        if job.cancel_requested:
            raise cancelled_error()

    def _log(self, job: Job, message: str, level: str = LogLevel.INFO):
        job.add_log(message, level)
        _LOG_METHODS.get(level, logger.info)("Job %s: %s", job.id, message)
        self._persist(job)
        self._notify(job)

    def _advance(self, job: Job, status: str, step: str, message: str | None = None):
        with self._lock:
            advance(job, status, step=step, message=message)
        logger.info("Job %s: %s (%s)", job.id, status, step)
        self._persist(job)
        self._notify(job)

    def _fail(self, job: Job, error: JobError):
        with self._lock:
            fail(job, error)
        logger.warning("Job %s failed [%s]: %s", job.id, error.kind, error.message)
        self._persist(job)
        self._notify(job)

    def _cancel(self, job: Job, reason: str):
        with self._lock:
            cancel(job, reason)
        logger.info("Job %s cancelled: %s", job.id, reason)
        self._persist(job)
        self._notify(job)

    def _persist(self, job: Job, create: bool = False) -> bool:
        """
        Best effort: storage failures never change job progress.
        Returns True when storage now holds the job.
        """
        if self.storage is None:
            return False
        try:
            if create:
                self.storage.create_job(job)
            else:
                self.storage.update_job(job)
        except Exception as e:
            logger.error("Failed to persist job %s: %s", job.id, e)
            return False
        return True

    def _release(self, job: Job):
        """Drop a stored terminal job from memory; reads fall back to storage."""
        with self._lock:
            self._jobs.pop(job.id, None)

    def _notify(self, job: Job):
        if self.on_job_updated:
            try:
                self.on_job_updated(job)
            except Exception as e:
                logger.warning("on_job_updated callback failed: %s", e)

    def _notify_if_idle(self):
        with self._lock:
            idle = not self._pending and not self._running
        if idle and self.on_queue_empty:
            try:
                self.on_queue_empty()
            except Exception as e:
                logger.warning("on_queue_empty callback failed: %s", e)
