from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from redis import Redis
from sqlalchemy.engine import Engine

from .ai_config import AIClientResolver
from .audit import AuditSink
from .config import Settings, settings as default_settings
from .db import build_engine
from .embeddings import EmbeddingClient
from .idempotency import IdempotencyLedger, build_idempotency_ledger
from .llm_failover import CircuitBreakerRegistry
from .processor import TranscriptProcessor
from .queue import JobQueue
from .rag import RAGEngine
from .rate_limiter import RateLimiter
from .store import TranscriptStore
from .tag_cache import TagCache
from .tagging import ChunkTagger
from .transcript_fetcher import MergeRecordingsClient, TranscriptFetcher
from .vector_index import PgVectorIndex
from .webhooks import RecordingWebhookHandler


@dataclass
class Services:
    """Process-wide component graph.

    Built once per process (API or worker) and handed to callers, so the rate
    limiter, tag cache and circuit breakers are shared without module globals.
    """

    settings: Settings
    engine: Engine
    redis: Redis
    audit: AuditSink
    store: TranscriptStore
    processing_queue: JobQueue
    fetch_queue: JobQueue
    breakers: CircuitBreakerRegistry
    rate_limiter: RateLimiter
    tag_cache: TagCache
    embedder: EmbeddingClient
    vector_index: PgVectorIndex
    client_resolver: AIClientResolver
    tagger: ChunkTagger
    processor: TranscriptProcessor
    fetcher: TranscriptFetcher
    ledger: IdempotencyLedger
    webhooks: RecordingWebhookHandler
    rag: RAGEngine


def build_services(settings: Settings) -> Services:
    engine = build_engine(settings.database_url)
    redis = Redis.from_url(settings.redis_url)
    audit = AuditSink(engine)
    store = TranscriptStore(engine)
    processing_queue = JobQueue(settings.processing_queue_name, redis)
    fetch_queue = JobQueue(settings.transcript_fetch_queue_name, redis)
    breakers = CircuitBreakerRegistry(audit=audit)
    rate_limiter = RateLimiter(
        max_rpm=settings.rate_limit_rpm,
        max_tpm=settings.rate_limit_tpm,
        poll_interval_s=settings.rate_limit_poll_s,
    )
    tag_cache = TagCache(max_size=settings.tag_cache_max_size, ttl_s=settings.tag_cache_ttl_s)
    embedder = EmbeddingClient(settings)
    vector_index = PgVectorIndex(
        engine,
        dim=settings.embeddings_dim,
        exact_scan_threshold=settings.embeddings_exact_scan_threshold,
        hnsw_ef_search=settings.embeddings_hnsw_ef_search,
    )
    client_resolver = AIClientResolver(store, settings, breakers)
    tagger = ChunkTagger(store, rate_limiter, tag_cache, concurrency=settings.tagger_concurrency)
    processor = TranscriptProcessor(
        store,
        tagger,
        embedder,
        vector_index,
        client_resolver,
        target_chars=settings.chunk_target_chars,
        overlap_chars=settings.chunk_overlap_chars,
    )
    fetcher = TranscriptFetcher(
        store,
        MergeRecordingsClient(
            settings.merge_api_key,
            settings.merge_api_base,
            timeout_s=settings.merge_timeout_s,
        ),
        processing_queue,
        settings,
        audit=audit,
    )
    ledger = build_idempotency_ledger(settings, redis)
    webhooks = RecordingWebhookHandler(
        store,
        ledger,
        processing_queue,
        fetch_queue,
        settings,
        audit=audit,
    )
    rag = RAGEngine(
        store,
        vector_index,
        embedder,
        client_resolver,
        max_history=settings.rag_max_history,
    )
    return Services(
        settings=settings,
        engine=engine,
        redis=redis,
        audit=audit,
        store=store,
        processing_queue=processing_queue,
        fetch_queue=fetch_queue,
        breakers=breakers,
        rate_limiter=rate_limiter,
        tag_cache=tag_cache,
        embedder=embedder,
        vector_index=vector_index,
        client_resolver=client_resolver,
        tagger=tagger,
        processor=processor,
        fetcher=fetcher,
        ledger=ledger,
        webhooks=webhooks,
        rag=rag,
    )


@lru_cache(maxsize=1)
def get_services() -> Services:
    return build_services(default_settings)
