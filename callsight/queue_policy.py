from __future__ import annotations

import random
import time
from typing import Any, Callable, Dict, Optional, Protocol

from redis.exceptions import RedisError
from rq import Retry

from .audit import AuditEvent, AuditSink
from .config import Settings
from .logging_utils import get_logger
from .queue import JOB_PROCESS_CALL
from .schemas import ProcessCallJob

MIN_ENQUEUE_BASE_DELAY_S = 0.05
ENQUEUE_JITTER_S = 0.06

logger = get_logger(__name__)


class EnqueueError(RuntimeError):
    pass


class ProcessingQueue(Protocol):
    name: str

    def enqueue(self, job_type: str, payload: dict, **options) -> str:
        ...


def process_call_job_id(call_id: str) -> str:
    return f"{JOB_PROCESS_CALL}-{call_id}"


def build_retry_policy(max_attempts: int, base_backoff_s: int) -> Optional[Retry]:
    normalized_attempts = max(1, int(max_attempts))
    max_retries = max(0, normalized_attempts - 1)
    if max_retries == 0:
        return None
    base = max(1, int(base_backoff_s))
    intervals = [base * (2 ** idx) for idx in range(max_retries)]
    return Retry(max=max_retries, interval=intervals)


def enqueue_guarded(
    queue: ProcessingQueue,
    job_type: str,
    payload: Dict[str, Any],
    *,
    job_id: str,
    organization_id: str,
    call_id: str,
    settings: Settings,
    source: str,
    retry: Optional[Retry] = None,
    delay_s: float = 0,
    job_timeout: Optional[int] = None,
    audit: Optional[AuditSink] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """Enqueue a job, retrying transient broker failures.

    Gives up after ``settings.enqueue_attempts`` tries with a jittered linear
    delay, records the failure to the audit sink and raises EnqueueError.
    """
    attempts = max(1, int(settings.enqueue_attempts))
    base_delay_s = max(MIN_ENQUEUE_BASE_DELAY_S, float(settings.enqueue_base_delay_s))
    options: Dict[str, Any] = {"job_id": job_id, "retry": retry, "job_timeout": job_timeout}
    if delay_s > 0:
        options["delay_s"] = delay_s

    last_error: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        try:
            enqueued_id = queue.enqueue(job_type, payload, **options)
        except (RedisError, OSError) as exc:
            last_error = exc
            if attempt >= attempts:
                break
            delay = base_delay_s * attempt + random.uniform(0, ENQUEUE_JITTER_S)
            logger.warning(
                "queue.enqueue_retry job_type=%s source=%s call_id=%s attempt=%s delay_s=%.3f error=%s",
                job_type,
                source,
                call_id,
                attempt,
                delay,
                str(exc),
            )
            sleep(delay)
            continue

        if attempt > 1:
            logger.warning(
                "queue.enqueue_recovered job_type=%s source=%s call_id=%s attempt=%s",
                job_type,
                source,
                call_id,
                attempt,
            )
        logger.info(
            "queue.enqueued job_type=%s source=%s call_id=%s job_id=%s queue=%s",
            job_type,
            source,
            call_id,
            enqueued_id,
            queue.name,
        )
        return enqueued_id

    error = str(last_error)
    logger.error(
        "queue.enqueue_failed job_type=%s source=%s call_id=%s attempts=%s error=%s",
        job_type,
        source,
        call_id,
        attempts,
        error,
    )
    if audit is not None:
        audit.record(
            AuditEvent(
                category="QUEUE",
                action=f"{job_type.upper().replace('-', '_')}_ENQUEUE_FAILED",
                organization_id=organization_id,
                target_type="call",
                target_id=call_id,
                severity="CRITICAL",
                metadata={"source": source, "attempts": attempts, "error": error},
            )
        )
    raise EnqueueError(
        f"failed to enqueue {job_type} job for call {call_id}: {error}"
    ) from last_error


def enqueue_process_call(
    queue: ProcessingQueue,
    job: ProcessCallJob,
    *,
    settings: Settings,
    source: str,
    audit: Optional[AuditSink] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    return enqueue_guarded(
        queue,
        JOB_PROCESS_CALL,
        job.model_dump(),
        job_id=process_call_job_id(job.call_id),
        organization_id=job.organization_id,
        call_id=job.call_id,
        settings=settings,
        source=source,
        retry=build_retry_policy(settings.process_call_max_attempts, settings.process_call_backoff_s),
        job_timeout=settings.process_call_job_timeout_s,
        audit=audit,
        sleep=sleep,
    )
