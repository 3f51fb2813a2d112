"""RQ entrypoints. Workers import these by dotted path."""
from __future__ import annotations

from typing import Any, Dict

from rq import get_current_job

from .logging_utils import get_logger, job_context
from .schemas import ProcessCallJob, TranscriptFetchJob
from .services import get_services
from .transcript_fetcher import TranscriptFetchError

logger = get_logger(__name__)


def _current_job_id() -> str:
    job = get_current_job()
    return job.id if job is not None else "-"


def process_call(payload: Dict[str, Any]) -> Dict[str, Any]:
    job = ProcessCallJob.model_validate(payload)
    with job_context(_current_job_id()):
        summary = get_services().processor.process_call(job)
        return {
            "call_id": summary.call_id,
            "status": summary.status,
            "chunks": summary.chunks,
            "tagged": summary.tagged,
            "indexed": summary.indexed,
        }


def fetch_transcript(payload: Dict[str, Any]) -> Dict[str, Any]:
    job = TranscriptFetchJob.model_validate(payload)
    with job_context(_current_job_id()):
        try:
            get_services().fetcher.fetch_transcript(job)
        except TranscriptFetchError as exc:
            if not exc.retryable:
                rq_job = get_current_job()
                if rq_job is not None:
                    rq_job.retries_left = 0
                logger.error(
                    "transcript_fetch.terminal call_id=%s recording_id=%s error=%s",
                    job.call_id,
                    job.recording_id,
                    str(exc),
                )
            raise
        return {"call_id": job.call_id, "status": "stored"}
