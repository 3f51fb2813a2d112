from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, Literal, Optional, Protocol, Sequence, Set

from redis.exceptions import RedisError
from rq.exceptions import InvalidJobOperation, NoSuchJobError

from .audit import AuditEvent, AuditSink
from .logging_utils import get_logger
from .queue import FailedJob

FailureClass = Literal["rate_limit", "upstream_transient", "network_or_redis", "non_retryable"]
ReplayTrigger = Literal["manual", "scheduled"]

DEFAULT_REPLAY_BATCH_SIZE = 50
MAX_REPLAY_BATCH_SIZE = 200

_RETRYABLE_PATTERNS: Sequence[tuple] = (
    ("rate_limit", re.compile(r"\b(429|rate.?limit|too many requests|quota exceeded)\b", re.IGNORECASE)),
    (
        "upstream_transient",
        re.compile(
            r"\b(5\d{2}|gateway timeout|bad gateway|service unavailable|temporar(?:y|ily)|upstream)\b",
            re.IGNORECASE,
        ),
    ),
    (
        "network_or_redis",
        re.compile(
            r"\b(redis|econnreset|etimedout|timeout|timed out|connection reset|network|socket hang up|connect"
            r"|connection (?:refused|failed|closed|aborted|error)|connecterror|connectionerror|connecttimeout"
            r"|timeouterror|readtimeout|operationalerror)\b",
            re.IGNORECASE,
        ),
    ),
)

logger = get_logger(__name__)


class DeadLetterQueue(Protocol):
    name: str

    def list_failed_jobs(self, offset: int = 0, limit: int = 50) -> List[FailedJob]:
        ...

    def retry_job(self, job_id: str) -> None:
        ...


@dataclass(frozen=True)
class FailureClassification:
    class_name: FailureClass
    retryable: bool


@dataclass
class DeadLetterReplaySummary:
    trigger: ReplayTrigger
    scanned: int = 0
    replayed: int = 0
    skipped: Dict[str, int] = field(
        default_factory=lambda: {
            "missing_payload": 0,
            "different_organization": 0,
            "duplicate_call": 0,
            "non_retryable": 0,
            "replay_error": 0,
        }
    )
    replayed_calls: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, object]:
        return {
            "trigger": self.trigger,
            "scanned": self.scanned,
            "replayed": self.replayed,
            "skipped": dict(self.skipped),
            "replayed_calls": list(self.replayed_calls),
        }


def classify_failure(reason: Optional[str]) -> FailureClassification:
    text = (reason or "").strip()
    if not text:
        return FailureClassification(class_name="non_retryable", retryable=False)
    for class_name, pattern in _RETRYABLE_PATTERNS:
        if pattern.search(text):
            return FailureClassification(class_name=class_name, retryable=True)
    return FailureClassification(class_name="non_retryable", retryable=False)


def clamp_replay_limit(limit: Optional[int]) -> int:
    if limit is None:
        return DEFAULT_REPLAY_BATCH_SIZE
    return max(1, min(MAX_REPLAY_BATCH_SIZE, int(limit)))


def replay_retryable_dead_letter_jobs(
    queue: DeadLetterQueue,
    organization_id: Optional[str] = None,
    limit: Optional[int] = DEFAULT_REPLAY_BATCH_SIZE,
    trigger: ReplayTrigger = "manual",
    audit: Optional[AuditSink] = None,
    actor_user_id: Optional[str] = None,
) -> DeadLetterReplaySummary:
    """Re-queue failed process-call jobs whose failure looks transient.

    Each call id is replayed at most once per run. When ``organization_id``
    is given, jobs for other tenants are counted and left alone.
    """
    failed_jobs = queue.list_failed_jobs(0, clamp_replay_limit(limit))
    summary = DeadLetterReplaySummary(trigger=trigger, scanned=len(failed_jobs))
    seen_calls: Set[str] = set()
    replayed_by_org: Dict[str, List[str]] = {}

    for job in failed_jobs:
        payload = job.payload or {}
        call_id = payload.get("call_id")
        job_org = payload.get("organization_id")
        if not isinstance(call_id, str) or not isinstance(job_org, str) or not call_id or not job_org:
            summary.skipped["missing_payload"] += 1
            continue
        if organization_id and job_org != organization_id:
            summary.skipped["different_organization"] += 1
            continue
        if call_id in seen_calls:
            summary.skipped["duplicate_call"] += 1
            continue
        seen_calls.add(call_id)

        if not classify_failure(job.failed_reason).retryable:
            summary.skipped["non_retryable"] += 1
            continue

        try:
            queue.retry_job(job.job_id)
        except (RedisError, NoSuchJobError, InvalidJobOperation) as exc:
            summary.skipped["replay_error"] += 1
            logger.warning(
                "dead_letter.replay_failed call_id=%s org=%s job_id=%s trigger=%s error=%s",
                call_id,
                job_org,
                job.job_id,
                trigger,
                str(exc),
            )
            continue
        summary.replayed += 1
        summary.replayed_calls.append(call_id)
        replayed_by_org.setdefault(job_org, []).append(call_id)

    if audit is not None:
        action = (
            "CALL_PROCESSING_DEAD_LETTER_AUTO_REPLAY"
            if trigger == "scheduled"
            else "CALL_PROCESSING_DEAD_LETTER_REPLAY_TRIGGERED"
        )
        for org_id, calls in replayed_by_org.items():
            audit.record(
                AuditEvent(
                    category="QUEUE",
                    action=action,
                    organization_id=org_id,
                    actor_user_id=actor_user_id,
                    target_type="queue",
                    target_id=queue.name,
                    severity="WARN",
                    metadata={"replayed": len(calls), "replayed_calls": calls, "trigger": trigger},
                )
            )

    log = logger.warning if summary.replayed or summary.skipped["replay_error"] else logger.info
    log(
        "dead_letter.replay_run trigger=%s scanned=%s replayed=%s skipped=%s",
        trigger,
        summary.scanned,
        summary.replayed,
        summary.skipped,
    )
    return summary
