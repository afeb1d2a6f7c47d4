"""
Job state machine.

queued → initializing → extracting → summarizing → completed
Any active status may fail to `error`; any non-terminal status may be
`cancelled`. Terminal statuses never change again.
"""

import logging

from distiller.core.constants import JobStatus, LogLevel, TERMINAL_STATUSES
from distiller.core.error_codes import IllegalTransitionError, JobError
from distiller.core.models import Job, JobFailure, utc_now

logger = logging.getLogger(__name__)

_TRANSITIONS = {
    JobStatus.QUEUED: {JobStatus.INITIALIZING, JobStatus.CANCELLED},
    JobStatus.INITIALIZING: {JobStatus.EXTRACTING, JobStatus.ERROR, JobStatus.CANCELLED},
    JobStatus.EXTRACTING: {JobStatus.SUMMARIZING, JobStatus.ERROR, JobStatus.CANCELLED},
    JobStatus.SUMMARIZING: {JobStatus.COMPLETED, JobStatus.ERROR, JobStatus.CANCELLED},
}


def can_transition(current: str, new: str) -> bool:
    return new in _TRANSITIONS.get(current, ())


def advance(job: Job, status: str, step: str | None = None,
            level: str = LogLevel.INFO, message: str | None = None):
    """Move `job` to `status`, stamping timestamps and appending a log line."""
    if not can_transition(job.status, status):
        raise IllegalTransitionError(
            f"Job {job.id}: illegal transition {job.status} -> {status}")

    if status == JobStatus.COMPLETED and job.result_content is None:
        raise IllegalTransitionError(f"Job {job.id}: completed without a distillation")

    now = utc_now()
    if job.status == JobStatus.QUEUED and status != JobStatus.CANCELLED:
        job.started_at = now
    if status in TERMINAL_STATUSES:
        job.completed_at = now

    logger.debug("Job %s: %s -> %s", job.id, job.status, status)
    job.status = status
    if step:
        job.processing_step = step
    job.add_log(message or f"Status: {status}" + (f" ({step})" if step else ""), level)


def fail(job: Job, error: JobError):
    """Transition to `error`, recording kind + message. Keeps processing_step."""
    if not can_transition(job.status, JobStatus.ERROR):
        raise IllegalTransitionError(
            f"Job {job.id}: illegal transition {job.status} -> {JobStatus.ERROR}")
    job.error = JobFailure(kind=error.kind, message=error.message)
    advance(job, JobStatus.ERROR, level=LogLevel.ERROR,
            message=f"Failed [{error.kind}] during '{job.processing_step}': {error.message}")


def cancel(job: Job, reason: str = "Processing stopped by user"):
    """Transition to `cancelled`; a distillation not yet final is discarded."""
    if not can_transition(job.status, JobStatus.CANCELLED):
        raise IllegalTransitionError(
            f"Job {job.id}: cannot cancel a job in status {job.status}")
    job.result_content = None
    advance(job, JobStatus.CANCELLED, level=LogLevel.WARNING,
            message=f"Cancelled: {reason}")
