from __future__ import annotations

import hashlib
import hmac
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .audit import AuditSink
from .config import Settings
from .idempotency import IdempotencyLedger
from .logging_utils import get_logger
from .queue import JOB_FETCH_TRANSCRIPT
from .queue_policy import ProcessingQueue, enqueue_guarded, enqueue_process_call
from .schemas import ProcessCallJob, RecordingWebhookPayload, TranscriptFetchJob
from .store import TranscriptStore
from .transcript_fetcher import build_fetch_retry, get_polling_config

SIGNATURE_HEADER = "X-Callsight-Signature"
HANDLED_EVENTS = frozenset({"recording.completed", "transcript.ready"})

logger = get_logger(__name__)


class WebhookSignatureError(PermissionError):
    pass


@dataclass(frozen=True)
class WebhookOutcome:
    status: str
    call_id: Optional[str] = None
    job_id: Optional[str] = None


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature: Optional[str], secret: str) -> None:
    if not secret:
        raise WebhookSignatureError("webhook secret is not configured")
    if not signature:
        raise WebhookSignatureError("missing webhook signature")
    candidate = signature.strip()
    if candidate.startswith("sha256="):
        candidate = candidate[len("sha256="):]
    if not hmac.compare_digest(candidate.lower(), compute_signature(raw_body, secret)):
        raise WebhookSignatureError("invalid webhook signature")


def webhook_event_key(payload: RecordingWebhookPayload) -> str:
    return f"{payload.provider}:{payload.organization_id}:{payload.event}:{payload.recording_id}"


class RecordingWebhookHandler:
    """Turns a verified recording-provider event into stored calls and queued work.

    Deliveries are de-duplicated through the idempotency ledger, so provider
    redelivery inside the TTL window is acknowledged without side effects.
    """

    def __init__(
        self,
        store: TranscriptStore,
        ledger: IdempotencyLedger,
        processing_queue: ProcessingQueue,
        fetch_queue: ProcessingQueue,
        settings: Settings,
        audit: Optional[AuditSink] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._processing_queue = processing_queue
        self._fetch_queue = fetch_queue
        self._settings = settings
        self._audit = audit
        self._sleep = sleep

    def handle(self, payload: RecordingWebhookPayload) -> WebhookOutcome:
        if payload.event not in HANDLED_EVENTS:
            logger.info(
                "webhook.ignored provider=%s event=%s recording_id=%s",
                payload.provider,
                payload.event,
                payload.recording_id,
            )
            return WebhookOutcome(status="ignored")

        event_key = webhook_event_key(payload)
        if not self._ledger.mark_if_new(event_key, self._settings.webhook_idempotency_ttl_s):
            logger.info("webhook.duplicate key=%s", event_key)
            return WebhookOutcome(status="duplicate")

        try:
            return self._accept(payload)
        except Exception:
            # A failed delivery must stay redeliverable.
            self._ledger.release(event_key)
            logger.warning("webhook.released key=%s", event_key)
            raise

    def _accept(self, payload: RecordingWebhookPayload) -> WebhookOutcome:
        call_id = self._store.upsert_call(
            organization_id=payload.organization_id,
            provider=payload.provider,
            external_id=payload.recording_id,
            title=payload.title,
            occurred_at=payload.occurred_at,
            account_id=payload.account_id,
        )

        if payload.transcript and payload.transcript.strip():
            self._store.save_transcript(call_id, payload.transcript)
            job_id = enqueue_process_call(
                self._processing_queue,
                ProcessCallJob(
                    call_id=call_id,
                    organization_id=payload.organization_id,
                    account_id=payload.account_id,
                    has_transcript=True,
                ),
                settings=self._settings,
                source=f"webhook:{payload.provider}",
                audit=self._audit,
                sleep=self._sleep,
            )
            logger.info(
                "webhook.accepted provider=%s call_id=%s transcript=inline",
                payload.provider,
                call_id,
            )
            return WebhookOutcome(status="accepted", call_id=call_id, job_id=job_id)

        polling = get_polling_config(payload.provider)
        fetch_job = TranscriptFetchJob(
            call_id=call_id,
            organization_id=payload.organization_id,
            account_id=payload.account_id,
            recording_id=payload.recording_id,
            linked_account_id=payload.linked_account_id or "",
            provider=payload.provider,
        )
        job_id = enqueue_guarded(
            self._fetch_queue,
            JOB_FETCH_TRANSCRIPT,
            fetch_job.model_dump(),
            job_id=f"{JOB_FETCH_TRANSCRIPT}-{call_id}",
            organization_id=payload.organization_id,
            call_id=call_id,
            settings=self._settings,
            source=f"webhook:{payload.provider}",
            retry=build_fetch_retry(payload.provider),
            delay_s=polling.initial_delay_s,
            job_timeout=self._settings.transcript_fetch_job_timeout_s,
            audit=self._audit,
            sleep=self._sleep,
        )
        logger.info(
            "webhook.accepted provider=%s call_id=%s transcript=pending delay_s=%s",
            payload.provider,
            call_id,
            polling.initial_delay_s,
        )
        return WebhookOutcome(status="accepted", call_id=call_id, job_id=job_id)
