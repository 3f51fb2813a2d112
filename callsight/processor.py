from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from .chunking import chunk_transcript
from .embeddings import EmbeddingClient, EmbeddingClientError
from .llm_client import ChatCompletionClient
from .logging_utils import get_logger
from .pii import redact
from .schemas import ProcessCallJob
from .store import TranscriptStore
from .tagging import ChunkTagger
from .vector_index import VectorIndex

TEXT_PREVIEW_CHARS = 200

logger = get_logger(__name__)


class ClientResolver(Protocol):
    def resolve(self, organization_id: str) -> ChatCompletionClient:
        ...


@dataclass(frozen=True)
class ProcessCallSummary:
    call_id: str
    status: str
    chunks: int = 0
    redactions: int = 0
    tagged: int = 0
    indexed: int = 0
    stale_chunks_removed: int = 0


def embedding_id_for_chunk(chunk_id: str) -> str:
    return f"chunk_{chunk_id}"


class TranscriptProcessor:
    def __init__(
        self,
        store: TranscriptStore,
        tagger: ChunkTagger,
        embedder: EmbeddingClient,
        vector_index: VectorIndex,
        client_resolver: ClientResolver,
        target_chars: int = 1500,
        overlap_chars: int = 200,
    ) -> None:
        self._store = store
        self._tagger = tagger
        self._embedder = embedder
        self._vector_index = vector_index
        self._client_resolver = client_resolver
        self._target_chars = target_chars
        self._overlap_chars = overlap_chars

    def process_call(self, job: ProcessCallJob) -> ProcessCallSummary:
        transcript = self._store.get_transcript_for_call(job.call_id)
        if transcript is None:
            logger.warning("process_call.no_transcript call_id=%s", job.call_id)
            return ProcessCallSummary(call_id=job.call_id, status="skipped_no_transcript")

        raw_chunks = chunk_transcript(
            transcript.full_text,
            target_chars=self._target_chars,
            overlap_chars=self._overlap_chars,
        )

        redactions = 0
        for raw_chunk in raw_chunks:
            result = redact(raw_chunk.text)
            redactions += len(result.detections)
            self._store.upsert_chunk(transcript.transcript_id, raw_chunk.index, result.redacted_text)
        stale = self._store.delete_chunks_from(transcript.transcript_id, len(raw_chunks))
        if redactions:
            logger.info(
                "process_call.redacted call_id=%s chunks=%s detections=%s",
                job.call_id,
                len(raw_chunks),
                redactions,
            )

        client = self._client_resolver.resolve(job.organization_id)
        tagging_results = self._tagger.tag_call_transcript(
            job.call_id, transcript.transcript_id, client
        )

        indexed = 0
        if job.account_id:
            indexed = self._index_chunks(job, transcript.transcript_id)

        summary = ProcessCallSummary(
            call_id=job.call_id,
            status="processed",
            chunks=len(raw_chunks),
            redactions=redactions,
            tagged=sum(1 for result in tagging_results if result.tags),
            indexed=indexed,
            stale_chunks_removed=stale,
        )
        logger.info(
            "process_call.complete call_id=%s chunks=%s tagged=%s indexed=%s stale_removed=%s",
            job.call_id,
            summary.chunks,
            summary.tagged,
            summary.indexed,
            summary.stale_chunks_removed,
        )
        return summary

    def _index_chunks(self, job: ProcessCallJob, transcript_id: str) -> int:
        account_id: Optional[str] = job.account_id
        chunks = list(self._store.list_chunks_with_tags(transcript_id))
        if not chunks:
            return 0
        vectors = self._embedder.embed_texts_batched([chunk.text for chunk in chunks]).vectors
        if len(vectors) != len(chunks):
            raise EmbeddingClientError(
                f"expected {len(chunks)} embeddings for transcript {transcript_id}, got {len(vectors)}"
            )
        indexed = 0
        for chunk, vector in zip(chunks, vectors):
            vector_id = embedding_id_for_chunk(chunk.chunk_id)
            self._vector_index.upsert(
                vector_id,
                vector,
                {
                    "chunk_id": chunk.chunk_id,
                    "organization_id": job.organization_id,
                    "account_id": account_id,
                    "call_id": job.call_id,
                    "funnel_stages": sorted(set(chunk.funnel_stages)),
                    "topics": list(chunk.topics),
                    "text_preview": chunk.text[:TEXT_PREVIEW_CHARS],
                },
            )
            self._store.set_chunk_embedding_id(chunk.chunk_id, vector_id)
            indexed += 1
        return indexed
