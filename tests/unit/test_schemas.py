from __future__ import annotations

import pytest
from pydantic import ValidationError

from callsight.schemas import (
    ChatHistoryMessage,
    DeadLetterReplayRequest,
    RAGChatRequest,
    RAGQueryRequest,
    RecordingWebhookPayload,
)


def test_query_request_bounds() -> None:
    RAGQueryRequest(query="ROI?", account_id="acct-1", top_k=20)

    with pytest.raises(ValidationError):
        RAGQueryRequest(query="hi", account_id="acct-1")

    with pytest.raises(ValidationError):
        RAGQueryRequest(query="x" * 1001, account_id="acct-1")

    with pytest.raises(ValidationError):
        RAGQueryRequest(query="pricing", account_id="acct-1", top_k=21)


def test_funnel_stage_validation() -> None:
    request = RAGQueryRequest(query="pricing", account_id="acct-1", funnel_stages=["BOFU", "TOFU"])
    assert request.funnel_stages == ["BOFU", "TOFU"]

    with pytest.raises(ValidationError):
        RAGChatRequest(query="pricing", funnel_stages=["LATE_FUNNEL"])


def test_chat_history_limits() -> None:
    message = ChatHistoryMessage(role="user", content="hello")
    RAGChatRequest(query="pricing", history=[message] * 50)

    with pytest.raises(ValidationError):
        RAGChatRequest(query="pricing", history=[message] * 51)

    with pytest.raises(ValidationError):
        ChatHistoryMessage(role="system", content="hello")


def test_webhook_provider_pattern() -> None:
    RecordingWebhookPayload(event="recording.completed", organization_id="o", recording_id="r", provider="gong")

    with pytest.raises(ValidationError):
        RecordingWebhookPayload(event="recording.completed", organization_id="o", recording_id="r", provider="Gong Inc")


def test_dead_letter_replay_limit_bounds() -> None:
    assert DeadLetterReplayRequest().limit == 50

    with pytest.raises(ValidationError):
        DeadLetterReplayRequest(limit=201)
