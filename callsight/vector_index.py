from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from sqlalchemy import text
from sqlalchemy.engine import Engine

from .logging_utils import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class VectorFilter:
    organization_id: str
    account_id: Optional[str] = None
    funnel_stages: Optional[Sequence[str]] = None


@dataclass(frozen=True)
class VectorMatch:
    vector_id: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


class VectorIndex(Protocol):
    def upsert(self, vector_id: str, vector: Sequence[float], metadata: Dict[str, Any]) -> None:
        ...

    def query(self, vector: Sequence[float], top_k: int, filters: VectorFilter) -> List[VectorMatch]:
        ...


def _vector_literal(values: Sequence[float]) -> str:
    return "[" + ",".join(format(float(value), ".10g") for value in values) + "]"


def _build_filter_clause(filters: VectorFilter) -> Tuple[str, Dict[str, Any]]:
    if not filters.organization_id:
        raise ValueError("vector queries must be scoped to an organization")
    clauses: List[str] = ["chunk_vectors.organization_id = :organization_id"]
    params: Dict[str, Any] = {"organization_id": filters.organization_id}

    if filters.account_id:
        clauses.append("chunk_vectors.account_id = :account_id")
        params["account_id"] = filters.account_id
    if filters.funnel_stages:
        clauses.append("chunk_vectors.funnel_stages && CAST(:funnel_stages AS text[])")
        params["funnel_stages"] = list(filters.funnel_stages)

    return " AND ".join(clauses), params


def _choose_dense_mode(estimated_rows: int, exact_scan_threshold: int) -> str:
    if estimated_rows <= 0:
        return "exact"
    if estimated_rows <= max(exact_scan_threshold, 0):
        return "exact"
    return "ann"


def _configure_dense_session(conn, mode: str, ef_search: int) -> None:
    if mode == "ann":
        conn.execute(text("SET LOCAL enable_indexscan = on"))
        conn.execute(text("SET LOCAL hnsw.iterative_scan = relaxed_order"))
        conn.execute(
            text("SELECT set_config('hnsw.ef_search', :ef_search, true)"),
            {"ef_search": str(int(ef_search))},
        )
        return
    conn.execute(text("SET LOCAL enable_indexscan = off"))
    conn.execute(text("SET LOCAL enable_bitmapscan = off"))


class PgVectorIndex:
    """Chunk vectors stored in Postgres with pgvector, filtered by tenant columns."""

    def __init__(
        self,
        engine: Engine,
        dim: int,
        exact_scan_threshold: int = 2000,
        hnsw_ef_search: int = 80,
    ) -> None:
        self._engine = engine
        self._dim = max(1, int(dim))
        self._exact_scan_threshold = exact_scan_threshold
        self._hnsw_ef_search = hnsw_ef_search

    def upsert(self, vector_id: str, vector: Sequence[float], metadata: Dict[str, Any]) -> None:
        if len(vector) != self._dim:
            raise ValueError(f"vector has dim {len(vector)}; expected {self._dim}")
        organization_id = metadata.get("organization_id")
        if not organization_id:
            raise ValueError("vector metadata requires organization_id")
        with self._engine.begin() as conn:
            conn.execute(
                text(
                    f"""
                    INSERT INTO chunk_vectors (
                      vector_id, chunk_id, organization_id, account_id, call_id,
                      funnel_stages, topics, text_preview, metadata, embedding, updated_at
                    )
                    VALUES (
                      :vector_id, CAST(:chunk_id AS uuid), :organization_id, :account_id, :call_id,
                      CAST(:funnel_stages AS text[]), CAST(:topics AS text[]), :text_preview,
                      CAST(:metadata AS jsonb), CAST(:embedding AS vector({self._dim})), now()
                    )
                    ON CONFLICT (vector_id) DO UPDATE SET
                      chunk_id = EXCLUDED.chunk_id,
                      organization_id = EXCLUDED.organization_id,
                      account_id = EXCLUDED.account_id,
                      call_id = EXCLUDED.call_id,
                      funnel_stages = EXCLUDED.funnel_stages,
                      topics = EXCLUDED.topics,
                      text_preview = EXCLUDED.text_preview,
                      metadata = EXCLUDED.metadata,
                      embedding = EXCLUDED.embedding,
                      updated_at = now()
                    """
                ),
                {
                    "vector_id": vector_id,
                    "chunk_id": metadata.get("chunk_id"),
                    "organization_id": organization_id,
                    "account_id": metadata.get("account_id"),
                    "call_id": metadata.get("call_id"),
                    "funnel_stages": list(metadata.get("funnel_stages") or []),
                    "topics": list(metadata.get("topics") or []),
                    "text_preview": metadata.get("text_preview"),
                    "metadata": json.dumps(metadata, default=str),
                    "embedding": _vector_literal(vector),
                },
            )

    def _estimate_candidates(self, conn, where_sql: str, params: Dict[str, Any]) -> int:
        row = conn.execute(
            text(f"SELECT COUNT(*) FROM chunk_vectors WHERE {where_sql}"),
            params,
        ).fetchone()
        return int(row[0] if row else 0)

    def query(self, vector: Sequence[float], top_k: int, filters: VectorFilter) -> List[VectorMatch]:
        where_sql, params = _build_filter_clause(filters)
        with self._engine.begin() as conn:
            estimated = self._estimate_candidates(conn, where_sql, params)
            if estimated == 0:
                return []
            mode = _choose_dense_mode(estimated, self._exact_scan_threshold)
            _configure_dense_session(conn, mode, self._hnsw_ef_search)
            params.update({"query_embedding": _vector_literal(vector), "limit": max(1, top_k)})
            rows = conn.execute(
                text(
                    f"""
                    SELECT vector_id, metadata,
                           (1 - (embedding <=> CAST(:query_embedding AS vector({self._dim})))) AS score
                    FROM chunk_vectors
                    WHERE {where_sql}
                    ORDER BY embedding <=> CAST(:query_embedding AS vector({self._dim}))
                    LIMIT :limit
                    """
                ),
                params,
            ).mappings()
            matches = [
                VectorMatch(
                    vector_id=row["vector_id"],
                    score=float(row["score"]),
                    metadata=dict(row["metadata"] or {}),
                )
                for row in rows
            ]
        logger.debug(
            "vector_index.query org=%s mode=%s candidates=%s matches=%s",
            filters.organization_id,
            mode,
            estimated,
            len(matches),
        )
        return matches
