"""Job progress tracking backed by the jobs/job_logs tables."""
import logging
import uuid

from . import database

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warning': logging.WARNING,
    'error': logging.ERROR,
}


def new_job_id(prefix: str = 'job') -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class SqliteJobTracker:
    """
    Records job steps, progress counters and log lines so a long batch can
    be watched from another process. Cancellation is a flag another process
    sets with ``request_cancel``; the running job polls ``is_cancelled``.
    """

    def create(self, job_id: str, name: str, total_steps: int | None = None) -> str:
        database.create_job(job_id, name, total_steps)
        return job_id

    def report_step(self, job_id: str, step: int, name: str, total: int | None = None) -> None:
        database.update_job_step(job_id, step, name, total)

    def report_progress(self, job_id: str, processed: int, total: int, current: str | None = None) -> None:
        database.update_job_progress(job_id, processed, total, current)

    def log(self, job_id: str, level: str, message: str) -> None:
        logger.log(_LOG_LEVELS.get(level, logging.INFO), f"[{job_id}] {message}")
        database.add_job_log(job_id, level, message)

    def is_cancelled(self, job_id: str) -> bool:
        return database.is_job_cancel_requested(job_id)

    def request_cancel(self, job_id: str) -> bool:
        return database.request_job_cancel(job_id)

    def complete(self, job_id: str, result: dict | None = None) -> None:
        database.finish_job(job_id, 'completed', result=result)

    def fail(self, job_id: str, error: str) -> None:
        database.finish_job(job_id, 'failed', error_message=error)

    def get(self, job_id: str) -> dict | None:
        job = database.get_job(job_id)
        if job is not None:
            job['logs'] = database.get_job_logs(job_id)
        return job
