"""Polls the recording provider for transcripts that did not arrive inline.

Some providers publish the transcript minutes after the recording webhook, so
a fetch job is retried on a provider-specific exponential schedule until the
transcript shows up or the attempt budget runs out. Once stored, the call is
handed to the normal processing pipeline.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Literal, Optional

import httpx
from rq import Retry

from .audit import AuditSink
from .config import Settings
from .logging_utils import get_logger
from .queue_policy import ProcessingQueue, enqueue_process_call
from .schemas import ProcessCallJob, TranscriptFetchJob
from .store import TranscriptStore

LookupStatus = Literal[
    "ready",
    "not_ready",
    "not_found",
    "rate_limited",
    "upstream_error",
    "rejected",
    "network_error",
]

logger = get_logger(__name__)


@dataclass(frozen=True)
class PollingConfig:
    initial_delay_s: int
    max_delay_s: int
    max_attempts: int


PROVIDER_POLLING_CONFIG: Dict[str, PollingConfig] = {
    "GONG": PollingConfig(initial_delay_s=30, max_delay_s=300, max_attempts=10),
    "CHORUS": PollingConfig(initial_delay_s=20, max_delay_s=300, max_attempts=10),
}
DEFAULT_POLLING_CONFIG = PollingConfig(initial_delay_s=10, max_delay_s=300, max_attempts=8)


def get_polling_config(provider: str) -> PollingConfig:
    return PROVIDER_POLLING_CONFIG.get(provider.upper(), DEFAULT_POLLING_CONFIG)


def transcript_fetch_backoff_s(attempt: int, provider: str) -> int:
    config = get_polling_config(provider)
    return min(config.initial_delay_s * 2 ** (max(1, attempt) - 1), config.max_delay_s)


def build_fetch_retry(provider: str) -> Optional[Retry]:
    config = get_polling_config(provider)
    retries = config.max_attempts - 1
    if retries <= 0:
        return None
    intervals: List[int] = [transcript_fetch_backoff_s(n, provider) for n in range(1, retries + 1)]
    return Retry(max=retries, interval=intervals)


class TranscriptFetchError(RuntimeError):
    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


@dataclass(frozen=True)
class TranscriptLookup:
    status: LookupStatus
    retryable: bool
    transcript: Optional[str] = None
    detail: str = ""

    def to_error(self) -> TranscriptFetchError:
        return TranscriptFetchError(self.detail, retryable=self.retryable)


class MergeRecordingsClient:
    def __init__(self, api_key: str, base_url: str, timeout_s: float = 30.0) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s

    def get_recording_transcript(self, recording_id: str, linked_account_id: str) -> TranscriptLookup:
        url = f"{self._base_url}/recordings/{recording_id}"
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "X-Account-Token": linked_account_id,
        }
        try:
            with httpx.Client(timeout=httpx.Timeout(self._timeout_s)) as client:
                response = client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            return TranscriptLookup(
                status="network_error",
                retryable=True,
                detail=f"recording API request failed for {recording_id}: {exc}",
            )

        if response.status_code == 404:
            return TranscriptLookup(
                status="not_found",
                retryable=False,
                detail=f"recording {recording_id} not found",
            )
        if response.status_code == 429:
            return TranscriptLookup(
                status="rate_limited",
                retryable=True,
                detail=f"recording API rate limited (429) for recording {recording_id}",
            )
        if response.status_code < 200 or response.status_code >= 300:
            upstream = response.status_code >= 500
            return TranscriptLookup(
                status="upstream_error" if upstream else "rejected",
                retryable=upstream,
                detail=f"recording API error: {response.status_code} for recording {recording_id}",
            )

        body = response.json()
        transcript = body.get("transcript") if isinstance(body, dict) else None
        if not isinstance(transcript, str) or not transcript.strip():
            return TranscriptLookup(
                status="not_ready",
                retryable=True,
                detail=f"transcript not yet available for recording {recording_id}",
            )
        return TranscriptLookup(status="ready", retryable=False, transcript=transcript)


class TranscriptFetcher:
    def __init__(
        self,
        store: TranscriptStore,
        client: MergeRecordingsClient,
        processing_queue: ProcessingQueue,
        settings: Settings,
        audit: Optional[AuditSink] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._client = client
        self._queue = processing_queue
        self._settings = settings
        self._audit = audit
        self._sleep = sleep

    def fetch_transcript(self, job: TranscriptFetchJob) -> None:
        if self._store.get_transcript_for_call(job.call_id) is not None:
            logger.info(
                "transcript_fetch.already_present call_id=%s recording_id=%s",
                job.call_id,
                job.recording_id,
            )
            self._enqueue_processing(job)
            return

        logger.info(
            "transcript_fetch.poll call_id=%s recording_id=%s provider=%s",
            job.call_id,
            job.recording_id,
            job.provider,
        )
        lookup = self._client.get_recording_transcript(job.recording_id, job.linked_account_id)
        if lookup.status != "ready" or lookup.transcript is None:
            logger.info(
                "transcript_fetch.not_available call_id=%s status=%s retryable=%s",
                job.call_id,
                lookup.status,
                lookup.retryable,
            )
            raise lookup.to_error()

        self._store.save_transcript(job.call_id, lookup.transcript)
        logger.info(
            "transcript_fetch.stored call_id=%s provider=%s words=%s",
            job.call_id,
            job.provider,
            len(lookup.transcript.split()),
        )
        self._enqueue_processing(job)

    def _enqueue_processing(self, job: TranscriptFetchJob) -> None:
        enqueue_process_call(
            self._queue,
            ProcessCallJob(
                call_id=job.call_id,
                organization_id=job.organization_id,
                account_id=job.account_id,
                has_transcript=True,
            ),
            settings=self._settings,
            source="transcript-fetcher",
            audit=self._audit,
            sleep=self._sleep,
        )
