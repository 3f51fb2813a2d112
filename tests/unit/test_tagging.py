from __future__ import annotations

import json
from typing import Dict, List, Optional, Sequence

from callsight.llm_client import ChatCompletionOptions, ChatCompletionResult, ChatMessage
from callsight.rate_limiter import RateLimiter
from callsight.store import ChunkRecord
from callsight.tag_cache import TagCache
from callsight.tagging import ChunkTagger, ChunkTaggingResult, aggregate_call_tags, parse_tag_response
from callsight.taxonomy import ChunkTag


class _FakeModel:
    provider_name = "openai"
    model_name = "gpt-4o"

    def __init__(self, body: Dict) -> None:
        self.body = body
        self.calls: List[Dict] = []

    def chat_completion(
        self,
        messages: Sequence[ChatMessage],
        options: Optional[ChatCompletionOptions] = None,
    ) -> ChatCompletionResult:
        self.calls.append({"messages": list(messages), "options": options})
        return ChatCompletionResult(
            content=json.dumps(self.body), input_tokens=100, output_tokens=20, total_tokens=120
        )


class _FakeStore:
    def __init__(self, chunks: List[ChunkRecord]) -> None:
        self.chunks = chunks
        self.chunk_tags: Dict[str, List[ChunkTag]] = {}
        self.call_tags: Dict[str, List[ChunkTag]] = {}

    def list_chunks_with_tags(self, transcript_id: str) -> List[ChunkRecord]:
        return self.chunks

    def replace_chunk_tags(self, chunk_id: str, tags: Sequence[ChunkTag]) -> None:
        self.chunk_tags[chunk_id] = list(tags)

    def upsert_call_tags(self, call_id: str, tags: Sequence[ChunkTag]) -> None:
        self.call_tags[call_id] = list(tags)


TAG_BODY = {
    "tags": [
        {"funnel_stage": "BOFU", "topic": "roi_financial_outcomes", "confidence": 0.92},
        {"funnel_stage": "MOFU", "topic": "competitive_displacement", "confidence": 1.7},
        {"funnel_stage": "BOFU", "topic": "made_up_topic", "confidence": 0.5},
        {"funnel_stage": "NOPE", "topic": "deal_anatomy", "confidence": 0.5},
    ]
}


def _tagger(store: _FakeStore, cache: TagCache) -> ChunkTagger:
    return ChunkTagger(store, RateLimiter(max_rpm=100, max_tpm=100_000), cache, concurrency=2)


def test_parse_tag_response_filters_and_clamps() -> None:
    tags = parse_tag_response(json.dumps(TAG_BODY))
    assert tags == [
        ChunkTag(funnel_stage="BOFU", topic="roi_financial_outcomes", confidence=0.92),
        ChunkTag(funnel_stage="MOFU", topic="competitive_displacement", confidence=1.0),
    ]


def test_parse_tag_response_tolerates_garbage() -> None:
    assert parse_tag_response("not json") == []
    assert parse_tag_response(json.dumps(["tags"])) == []
    assert parse_tag_response(json.dumps({"tags": "nope"})) == []


def test_tag_chunk_uses_cache_before_model() -> None:
    cache = TagCache()
    model = _FakeModel(TAG_BODY)
    tagger = _tagger(_FakeStore([]), cache)

    first, first_cached = tagger.tag_chunk("We saved $2M in year one.", model)
    second, second_cached = tagger.tag_chunk("We saved $2M in year one.", model)

    assert first == second
    assert (first_cached, second_cached) == (False, True)
    assert len(model.calls) == 1
    options = model.calls[0]["options"]
    assert options.json_mode is True
    assert options.temperature == 0.1
    assert model.calls[0]["messages"][0].role == "system"


def test_tag_call_transcript_persists_chunk_and_call_tags() -> None:
    chunks = [
        ChunkRecord(chunk_id="c1", chunk_index=0, text="first segment"),
        ChunkRecord(chunk_id="c2", chunk_index=1, text="second segment"),
    ]
    store = _FakeStore(chunks)
    model = _FakeModel(TAG_BODY)

    results = _tagger(store, TagCache()).tag_call_transcript("call-1", "t-1", model)

    assert [r.chunk_id for r in results] == ["c1", "c2"]
    assert set(store.chunk_tags) == {"c1", "c2"}
    assert len(store.call_tags["call-1"]) == 2


def test_aggregate_keeps_highest_confidence() -> None:
    low = ChunkTag(funnel_stage="BOFU", topic="deployment_speed", confidence=0.4)
    high = ChunkTag(funnel_stage="BOFU", topic="deployment_speed", confidence=0.8)
    other = ChunkTag(funnel_stage="TOFU", topic="market_expansion", confidence=0.6)
    merged = aggregate_call_tags(
        [
            ChunkTaggingResult(chunk_id="a", tags=[low, other], cached=False),
            ChunkTaggingResult(chunk_id="b", tags=[high], cached=True),
        ]
    )
    assert sorted(merged, key=lambda t: t.topic) == [high, other]
