from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx
import pytest

from callsight.config import Settings
from callsight.store import TranscriptRecord
from callsight.transcript_fetcher import (
    MergeRecordingsClient,
    TranscriptFetcher,
    TranscriptFetchError,
    TranscriptLookup,
    build_fetch_retry,
    get_polling_config,
    transcript_fetch_backoff_s,
)
from callsight.schemas import TranscriptFetchJob


class _FakeResponse:
    def __init__(self, status_code: int, body: Any = None) -> None:
        self.status_code = status_code
        self._body = body

    def json(self) -> Any:
        return self._body


class _FakeHttpClient:
    def __init__(self, response: Optional[_FakeResponse], recorder: List[Dict[str, Any]]) -> None:
        self._response = response
        self._recorder = recorder

    def __enter__(self) -> "_FakeHttpClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None

    def get(self, url: str, headers: Dict[str, str]) -> _FakeResponse:
        self._recorder.append({"url": url, "headers": headers})
        if self._response is None:
            raise httpx.ConnectError("connection refused")
        return self._response


def _lookup(monkeypatch: pytest.MonkeyPatch, response: Optional[_FakeResponse]) -> TranscriptLookup:
    calls: List[Dict[str, Any]] = []
    monkeypatch.setattr(
        "callsight.transcript_fetcher.httpx.Client",
        lambda *args, **kwargs: _FakeHttpClient(response, calls),
    )
    client = MergeRecordingsClient("mk-test", "http://merge.local/api/")
    lookup = client.get_recording_transcript("rec-1", "linked-1")
    if calls:
        assert calls[0]["url"] == "http://merge.local/api/recordings/rec-1"
        assert calls[0]["headers"]["X-Account-Token"] == "linked-1"
    return lookup


def test_polling_schedule_per_provider() -> None:
    assert get_polling_config("gong").initial_delay_s == 30
    assert get_polling_config("CHORUS").max_attempts == 10
    assert get_polling_config("zoom").initial_delay_s == 10
    assert [transcript_fetch_backoff_s(n, "gong") for n in range(1, 6)] == [30, 60, 120, 240, 300]

    retry = build_fetch_retry("default")
    assert retry is not None
    assert retry.max == 7
    assert retry.intervals == [10, 20, 40, 80, 160, 300, 300]


@pytest.mark.parametrize(
    "response,status,retryable",
    [
        (_FakeResponse(404), "not_found", False),
        (_FakeResponse(429), "rate_limited", True),
        (_FakeResponse(502), "upstream_error", True),
        (_FakeResponse(403), "rejected", False),
        (None, "network_error", True),
        (_FakeResponse(200, {"transcript": ""}), "not_ready", True),
    ],
)
def test_lookup_outcomes(
    monkeypatch: pytest.MonkeyPatch,
    response: Optional[_FakeResponse],
    status: str,
    retryable: bool,
) -> None:
    lookup = _lookup(monkeypatch, response)
    assert lookup.status == status
    assert lookup.retryable is retryable
    assert lookup.transcript is None


def test_lookup_ready(monkeypatch: pytest.MonkeyPatch) -> None:
    lookup = _lookup(monkeypatch, _FakeResponse(200, {"transcript": "Hello there."}))
    assert lookup.status == "ready"
    assert lookup.transcript == "Hello there."


class _FakeStore:
    def __init__(self, existing: Optional[str] = None) -> None:
        self.existing = existing
        self.saved: List[Dict[str, str]] = []

    def get_transcript_for_call(self, call_id: str) -> Optional[TranscriptRecord]:
        if self.existing is None:
            return None
        return TranscriptRecord(transcript_id="t-1", call_id=call_id, full_text=self.existing, word_count=1)

    def save_transcript(self, call_id: str, full_text: str) -> str:
        self.saved.append({"call_id": call_id, "full_text": full_text})
        return "t-1"


class _FakeRecordingsClient:
    def __init__(self, lookup: TranscriptLookup) -> None:
        self.lookup = lookup
        self.calls = 0

    def get_recording_transcript(self, recording_id: str, linked_account_id: str) -> TranscriptLookup:
        self.calls += 1
        return self.lookup


class _FakeQueue:
    name = "call-processing"

    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []

    def enqueue(self, job_type: str, payload: dict, **options) -> str:
        self.calls.append({"job_type": job_type, "payload": payload, **options})
        return options["job_id"]


JOB = TranscriptFetchJob(
    call_id="call-1",
    organization_id="org-a",
    account_id="acct-1",
    recording_id="rec-1",
    linked_account_id="linked-1",
    provider="gong",
)


def test_fetch_stores_transcript_and_enqueues_processing() -> None:
    store = _FakeStore()
    queue = _FakeQueue()
    client = _FakeRecordingsClient(TranscriptLookup(status="ready", retryable=False, transcript="Hi all."))
    TranscriptFetcher(store, client, queue, Settings()).fetch_transcript(JOB)

    assert store.saved == [{"call_id": "call-1", "full_text": "Hi all."}]
    assert queue.calls[0]["job_type"] == "process-call"
    assert queue.calls[0]["payload"]["account_id"] == "acct-1"


def test_fetch_skips_provider_when_transcript_exists() -> None:
    store = _FakeStore(existing="already here")
    queue = _FakeQueue()
    client = _FakeRecordingsClient(TranscriptLookup(status="not_ready", retryable=True))
    TranscriptFetcher(store, client, queue, Settings()).fetch_transcript(JOB)

    assert client.calls == 0
    assert store.saved == []
    assert len(queue.calls) == 1


@pytest.mark.parametrize("status,retryable", [("not_ready", True), ("not_found", False)])
def test_fetch_raises_with_retryable_flag(status: str, retryable: bool) -> None:
    store = _FakeStore()
    queue = _FakeQueue()
    client = _FakeRecordingsClient(TranscriptLookup(status=status, retryable=retryable, detail=status))

    with pytest.raises(TranscriptFetchError) as excinfo:
        TranscriptFetcher(store, client, queue, Settings()).fetch_transcript(JOB)
    assert excinfo.value.retryable is retryable
    assert queue.calls == []
