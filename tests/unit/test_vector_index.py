from __future__ import annotations

import pytest

from callsight.vector_index import (
    PgVectorIndex,
    VectorFilter,
    _build_filter_clause,
    _choose_dense_mode,
    _vector_literal,
)


def test_filter_always_scopes_to_organization() -> None:
    where_sql, params = _build_filter_clause(VectorFilter(organization_id="org-a"))
    assert where_sql == "chunk_vectors.organization_id = :organization_id"
    assert params == {"organization_id": "org-a"}


def test_filter_adds_account_and_stage_membership() -> None:
    where_sql, params = _build_filter_clause(
        VectorFilter(organization_id="org-a", account_id="acct-1", funnel_stages=["BOFU", "MOFU"])
    )
    assert "chunk_vectors.account_id = :account_id" in where_sql
    assert "funnel_stages && CAST(:funnel_stages AS text[])" in where_sql
    assert params["funnel_stages"] == ["BOFU", "MOFU"]


def test_filter_without_organization_rejected() -> None:
    with pytest.raises(ValueError):
        _build_filter_clause(VectorFilter(organization_id=""))


def test_dense_mode_switches_on_threshold() -> None:
    assert _choose_dense_mode(0, 2000) == "exact"
    assert _choose_dense_mode(2000, 2000) == "exact"
    assert _choose_dense_mode(2001, 2000) == "ann"


def test_vector_literal_format() -> None:
    assert _vector_literal([0.5, 1, -0.25]) == "[0.5,1,-0.25]"


def test_upsert_validates_dim_and_tenant() -> None:
    index = PgVectorIndex(engine=None, dim=3)
    with pytest.raises(ValueError):
        index.upsert("chunk_1", [0.1, 0.2], {"organization_id": "org-a"})
    with pytest.raises(ValueError):
        index.upsert("chunk_1", [0.1, 0.2, 0.3], {"chunk_id": "c1"})
