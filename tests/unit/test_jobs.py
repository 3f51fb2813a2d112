from __future__ import annotations

from types import SimpleNamespace

import pytest

import callsight.jobs as jobs_module
from callsight.processor import ProcessCallSummary
from callsight.transcript_fetcher import TranscriptFetchError


class _FakeRQJob:
    def __init__(self) -> None:
        self.id = "job-1"
        self.retries_left = 4


class _Fetcher:
    def __init__(self, error: TranscriptFetchError) -> None:
        self.error = error

    def fetch_transcript(self, job) -> None:
        raise self.error


def _payload() -> dict:
    return {
        "call_id": "call-1",
        "organization_id": "org-a",
        "recording_id": "rec-1",
        "linked_account_id": "linked-1",
        "provider": "gong",
    }


def test_non_retryable_fetch_error_exhausts_retries(monkeypatch: pytest.MonkeyPatch) -> None:
    rq_job = _FakeRQJob()
    services = SimpleNamespace(fetcher=_Fetcher(TranscriptFetchError("rejected", retryable=False)))
    monkeypatch.setattr(jobs_module, "get_current_job", lambda: rq_job)
    monkeypatch.setattr(jobs_module, "get_services", lambda: services)

    with pytest.raises(TranscriptFetchError):
        jobs_module.fetch_transcript(_payload())
    assert rq_job.retries_left == 0


def test_retryable_fetch_error_keeps_retry_budget(monkeypatch: pytest.MonkeyPatch) -> None:
    rq_job = _FakeRQJob()
    services = SimpleNamespace(fetcher=_Fetcher(TranscriptFetchError("not ready", retryable=True)))
    monkeypatch.setattr(jobs_module, "get_current_job", lambda: rq_job)
    monkeypatch.setattr(jobs_module, "get_services", lambda: services)

    with pytest.raises(TranscriptFetchError):
        jobs_module.fetch_transcript(_payload())
    assert rq_job.retries_left == 4


def test_process_call_returns_summary(monkeypatch: pytest.MonkeyPatch) -> None:
    class _Processor:
        def process_call(self, job):
            return ProcessCallSummary(call_id=job.call_id, status="completed", chunks=3, tagged=3, indexed=3)

    monkeypatch.setattr(jobs_module, "get_current_job", lambda: None)
    monkeypatch.setattr(jobs_module, "get_services", lambda: SimpleNamespace(processor=_Processor()))

    result = jobs_module.process_call({"call_id": "call-1", "organization_id": "org-a"})
    assert result == {"call_id": "call-1", "status": "completed", "chunks": 3, "tagged": 3, "indexed": 3}
