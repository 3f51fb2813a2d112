from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

from redis import Redis
from rq import Queue, Retry
from rq.exceptions import NoSuchJobError
from rq.job import Job, JobStatus

from .logging_utils import get_logger

JOB_PROCESS_CALL = "process-call"
JOB_FETCH_TRANSCRIPT = "fetch-transcript"

JOB_FUNCTIONS: Dict[str, str] = {
    JOB_PROCESS_CALL: "callsight.jobs.process_call",
    JOB_FETCH_TRANSCRIPT: "callsight.jobs.fetch_transcript",
}

_ACTIVE_STATUSES = {
    JobStatus.QUEUED,
    JobStatus.STARTED,
    JobStatus.DEFERRED,
    JobStatus.SCHEDULED,
}

logger = get_logger(__name__)


@dataclass(frozen=True)
class FailedJob:
    job_id: str
    job_type: Optional[str]
    payload: Optional[Dict[str, Any]]
    failed_reason: str


def failure_reason_from_exc_info(exc_info: Optional[str]) -> str:
    """Last non-empty traceback line, e.g. ``module.Error: message``."""
    if not exc_info:
        return ""
    lines = [line.strip() for line in exc_info.strip().splitlines() if line.strip()]
    return lines[-1] if lines else ""


class JobQueue:
    """Durable queue over RQ; the failed-job registry is the dead-letter set."""

    def __init__(self, name: str, connection: Redis) -> None:
        self._connection = connection
        self._queue = Queue(name, connection=connection)

    @property
    def name(self) -> str:
        return self._queue.name

    def _fetch(self, job_id: str) -> Optional[Job]:
        try:
            return Job.fetch(job_id, connection=self._connection)
        except NoSuchJobError:
            return None

    def enqueue(
        self,
        job_type: str,
        payload: Dict[str, Any],
        *,
        job_id: Optional[str] = None,
        retry: Optional[Retry] = None,
        delay_s: float = 0,
        job_timeout: Optional[int] = None,
    ) -> str:
        func = JOB_FUNCTIONS[job_type]
        if job_id:
            existing = self._fetch(job_id)
            if existing is not None:
                status = existing.get_status(refresh=True)
                if status in _ACTIVE_STATUSES:
                    logger.info(
                        "queue.enqueue_skipped job_id=%s queue=%s status=%s",
                        job_id,
                        self.name,
                        status,
                    )
                    return job_id
                if status == JobStatus.FAILED:
                    self._queue.failed_job_registry.remove(existing)

        options: Dict[str, Any] = {
            "job_id": job_id,
            "retry": retry,
            "meta": {"job_type": job_type},
        }
        if job_timeout:
            options["job_timeout"] = job_timeout
        if delay_s > 0:
            rq_job = self._queue.enqueue_in(timedelta(seconds=delay_s), func, payload, **options)
        else:
            rq_job = self._queue.enqueue(func, payload, **options)
        return rq_job.id

    def list_failed_jobs(self, offset: int = 0, limit: int = 50) -> List[FailedJob]:
        registry = self._queue.failed_job_registry
        job_ids = registry.get_job_ids(offset, offset + max(1, limit) - 1)
        jobs = Job.fetch_many(job_ids, connection=self._connection)
        failed: List[FailedJob] = []
        for job_id, job in zip(job_ids, jobs):
            if job is None:
                failed.append(FailedJob(job_id=job_id, job_type=None, payload=None, failed_reason=""))
                continue
            payload = job.args[0] if job.args and isinstance(job.args[0], dict) else None
            failed.append(
                FailedJob(
                    job_id=job_id,
                    job_type=job.meta.get("job_type"),
                    payload=payload,
                    failed_reason=failure_reason_from_exc_info(job.exc_info),
                )
            )
        return failed

    def retry_job(self, job_id: str) -> None:
        self._queue.failed_job_registry.requeue(job_id)
