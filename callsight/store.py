from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, List, Optional, Sequence

from sqlalchemy import text
from sqlalchemy.engine import Engine

from .taxonomy import ChunkTag


@dataclass(frozen=True)
class TranscriptRecord:
    transcript_id: str
    call_id: str
    full_text: str
    word_count: int


@dataclass(frozen=True)
class ChunkRecord:
    chunk_id: str
    chunk_index: int
    text: str
    funnel_stages: List[str] = field(default_factory=list)
    topics: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class HydratedChunk:
    chunk_id: str
    call_id: str
    organization_id: str
    call_title: Optional[str]
    call_date: Optional[date]
    text: str
    speaker: Optional[str]


@dataclass(frozen=True)
class OrgAISettings:
    organization_id: str
    default_provider: str
    default_model: Optional[str]
    fallback_provider: Optional[str]
    fallback_model: Optional[str]


class TranscriptStore:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def upsert_call(
        self,
        *,
        organization_id: str,
        provider: str,
        external_id: str,
        title: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
        account_id: Optional[str] = None,
    ) -> str:
        with self._engine.begin() as conn:
            row = conn.execute(
                text(
                    """
                    INSERT INTO calls (organization_id, provider, external_id, title, occurred_at, account_id)
                    VALUES (:organization_id, :provider, :external_id, :title, :occurred_at, :account_id)
                    ON CONFLICT (organization_id, provider, external_id) DO UPDATE SET
                      title = COALESCE(EXCLUDED.title, calls.title),
                      occurred_at = COALESCE(EXCLUDED.occurred_at, calls.occurred_at),
                      account_id = COALESCE(EXCLUDED.account_id, calls.account_id)
                    RETURNING call_id
                    """
                ),
                {
                    "organization_id": organization_id,
                    "provider": provider,
                    "external_id": external_id,
                    "title": title,
                    "occurred_at": occurred_at,
                    "account_id": account_id,
                },
            ).fetchone()
        return str(row[0])

    def get_transcript_for_call(self, call_id: str) -> Optional[TranscriptRecord]:
        with self._engine.connect() as conn:
            row = conn.execute(
                text(
                    """
                    SELECT transcript_id, call_id, full_text, word_count
                    FROM transcripts
                    WHERE call_id = :call_id
                    """
                ),
                {"call_id": call_id},
            ).mappings().fetchone()
        if row is None:
            return None
        return TranscriptRecord(
            transcript_id=str(row["transcript_id"]),
            call_id=str(row["call_id"]),
            full_text=row["full_text"],
            word_count=int(row["word_count"]),
        )

    def save_transcript(self, call_id: str, full_text: str) -> str:
        word_count = len(full_text.split())
        with self._engine.begin() as conn:
            row = conn.execute(
                text(
                    """
                    INSERT INTO transcripts (call_id, full_text, word_count)
                    VALUES (:call_id, :full_text, :word_count)
                    ON CONFLICT (call_id) DO UPDATE SET
                      full_text = EXCLUDED.full_text,
                      word_count = EXCLUDED.word_count,
                      updated_at = now()
                    RETURNING transcript_id
                    """
                ),
                {"call_id": call_id, "full_text": full_text, "word_count": word_count},
            ).fetchone()
        return str(row[0])

    def upsert_chunk(self, transcript_id: str, chunk_index: int, chunk_text: str) -> str:
        with self._engine.begin() as conn:
            row = conn.execute(
                text(
                    """
                    INSERT INTO transcript_chunks (transcript_id, chunk_index, text)
                    VALUES (:transcript_id, :chunk_index, :text)
                    ON CONFLICT (transcript_id, chunk_index) DO UPDATE SET
                      text = EXCLUDED.text,
                      updated_at = now()
                    RETURNING chunk_id
                    """
                ),
                {"transcript_id": transcript_id, "chunk_index": chunk_index, "text": chunk_text},
            ).fetchone()
        return str(row[0])

    def delete_chunks_from(self, transcript_id: str, first_index: int) -> int:
        with self._engine.begin() as conn:
            result = conn.execute(
                text(
                    """
                    DELETE FROM transcript_chunks
                    WHERE transcript_id = :transcript_id AND chunk_index >= :first_index
                    """
                ),
                {"transcript_id": transcript_id, "first_index": first_index},
            )
        return int(result.rowcount or 0)

    def list_chunks_with_tags(self, transcript_id: str) -> List[ChunkRecord]:
        with self._engine.connect() as conn:
            rows = conn.execute(
                text(
                    """
                    SELECT tc.chunk_id, tc.chunk_index, tc.text,
                           COALESCE(array_agg(DISTINCT ct.funnel_stage)
                             FILTER (WHERE ct.funnel_stage IS NOT NULL), '{}') AS funnel_stages,
                           COALESCE(array_agg(DISTINCT ct.topic)
                             FILTER (WHERE ct.topic IS NOT NULL), '{}') AS topics
                    FROM transcript_chunks tc
                    LEFT JOIN chunk_tags ct ON ct.chunk_id = tc.chunk_id
                    WHERE tc.transcript_id = :transcript_id
                    GROUP BY tc.chunk_id, tc.chunk_index, tc.text
                    ORDER BY tc.chunk_index ASC
                    """
                ),
                {"transcript_id": transcript_id},
            ).mappings()
            return [
                ChunkRecord(
                    chunk_id=str(row["chunk_id"]),
                    chunk_index=int(row["chunk_index"]),
                    text=row["text"],
                    funnel_stages=list(row["funnel_stages"] or []),
                    topics=list(row["topics"] or []),
                )
                for row in rows
            ]

    def replace_chunk_tags(self, chunk_id: str, tags: Sequence[ChunkTag]) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                text("DELETE FROM chunk_tags WHERE chunk_id = :chunk_id"),
                {"chunk_id": chunk_id},
            )
            for tag in tags:
                conn.execute(
                    text(
                        """
                        INSERT INTO chunk_tags (chunk_id, funnel_stage, topic, confidence)
                        VALUES (:chunk_id, :funnel_stage, :topic, :confidence)
                        ON CONFLICT (chunk_id, funnel_stage, topic) DO UPDATE SET
                          confidence = EXCLUDED.confidence
                        """
                    ),
                    {
                        "chunk_id": chunk_id,
                        "funnel_stage": tag.funnel_stage,
                        "topic": tag.topic,
                        "confidence": tag.confidence,
                    },
                )

    def upsert_call_tags(self, call_id: str, tags: Sequence[ChunkTag]) -> None:
        with self._engine.begin() as conn:
            for tag in tags:
                conn.execute(
                    text(
                        """
                        INSERT INTO call_tags (call_id, funnel_stage, topic, confidence)
                        VALUES (:call_id, :funnel_stage, :topic, :confidence)
                        ON CONFLICT (call_id, funnel_stage, topic) DO UPDATE SET
                          confidence = EXCLUDED.confidence
                        """
                    ),
                    {
                        "call_id": call_id,
                        "funnel_stage": tag.funnel_stage,
                        "topic": tag.topic,
                        "confidence": tag.confidence,
                    },
                )

    def set_chunk_embedding_id(self, chunk_id: str, embedding_id: str) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                text(
                    """
                    UPDATE transcript_chunks
                    SET embedding_id = :embedding_id, updated_at = now()
                    WHERE chunk_id = :chunk_id
                    """
                ),
                {"chunk_id": chunk_id, "embedding_id": embedding_id},
            )

    def hydrate_chunks(self, chunk_ids: Sequence[str]) -> Dict[str, HydratedChunk]:
        if not chunk_ids:
            return {}
        with self._engine.connect() as conn:
            rows = conn.execute(
                text(
                    """
                    SELECT tc.chunk_id, tc.text, tc.speaker,
                           c.call_id, c.organization_id, c.title, c.occurred_at
                    FROM transcript_chunks tc
                    JOIN transcripts t ON t.transcript_id = tc.transcript_id
                    JOIN calls c ON c.call_id = t.call_id
                    WHERE tc.chunk_id = ANY(CAST(:chunk_ids AS uuid[]))
                    """
                ),
                {"chunk_ids": list(chunk_ids)},
            ).mappings()
            hydrated: Dict[str, HydratedChunk] = {}
            for row in rows:
                occurred_at = row["occurred_at"]
                hydrated[str(row["chunk_id"])] = HydratedChunk(
                    chunk_id=str(row["chunk_id"]),
                    call_id=str(row["call_id"]),
                    organization_id=row["organization_id"],
                    call_title=row["title"],
                    call_date=occurred_at.date() if occurred_at is not None else None,
                    text=row["text"],
                    speaker=row["speaker"],
                )
        return hydrated

    def get_org_ai_settings(self, organization_id: str) -> Optional[OrgAISettings]:
        with self._engine.connect() as conn:
            row = conn.execute(
                text(
                    """
                    SELECT organization_id, default_provider, default_model,
                           fallback_provider, fallback_model
                    FROM org_ai_settings
                    WHERE organization_id = :organization_id
                    """
                ),
                {"organization_id": organization_id},
            ).mappings().fetchone()
        if row is None:
            return None
        return OrgAISettings(
            organization_id=row["organization_id"],
            default_provider=row["default_provider"],
            default_model=row["default_model"],
            fallback_provider=row["fallback_provider"],
            fallback_model=row["fallback_model"],
        )
