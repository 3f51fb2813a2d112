"""callsight schema

Revision ID: 0001_callsight_schema
Revises:
Create Date: 2026-10-18

"""
from alembic import op

# revision identifiers, used by Alembic.
revision = "0001_callsight_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS vector;")
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS calls (
          call_id          UUID PRIMARY KEY DEFAULT gen_random_uuid(),
          organization_id  TEXT NOT NULL,
          account_id       TEXT,
          provider         TEXT NOT NULL,
          external_id      TEXT NOT NULL,
          title            TEXT,
          occurred_at      TIMESTAMPTZ,
          created_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
          UNIQUE (organization_id, provider, external_id)
        );
        """
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS calls_org_account_idx ON calls (organization_id, account_id);"
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS transcripts (
          transcript_id  UUID PRIMARY KEY DEFAULT gen_random_uuid(),
          call_id        UUID NOT NULL UNIQUE REFERENCES calls(call_id) ON DELETE CASCADE,
          full_text      TEXT NOT NULL,
          word_count     INTEGER NOT NULL DEFAULT 0,
          created_at     TIMESTAMPTZ NOT NULL DEFAULT now(),
          updated_at     TIMESTAMPTZ NOT NULL DEFAULT now()
        );
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS transcript_chunks (
          chunk_id       UUID PRIMARY KEY DEFAULT gen_random_uuid(),
          transcript_id  UUID NOT NULL REFERENCES transcripts(transcript_id) ON DELETE CASCADE,
          chunk_index    INTEGER NOT NULL,
          text           TEXT NOT NULL,
          speaker        TEXT,
          embedding_id   TEXT,
          created_at     TIMESTAMPTZ NOT NULL DEFAULT now(),
          updated_at     TIMESTAMPTZ NOT NULL DEFAULT now(),
          UNIQUE (transcript_id, chunk_index)
        );
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS chunk_tags (
          chunk_id      UUID NOT NULL REFERENCES transcript_chunks(chunk_id) ON DELETE CASCADE,
          funnel_stage  TEXT NOT NULL,
          topic         TEXT NOT NULL,
          confidence    DOUBLE PRECISION NOT NULL,
          PRIMARY KEY (chunk_id, funnel_stage, topic)
        );
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS call_tags (
          call_id       UUID NOT NULL REFERENCES calls(call_id) ON DELETE CASCADE,
          funnel_stage  TEXT NOT NULL,
          topic         TEXT NOT NULL,
          confidence    DOUBLE PRECISION NOT NULL,
          PRIMARY KEY (call_id, funnel_stage, topic)
        );
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS chunk_vectors (
          vector_id        TEXT PRIMARY KEY,
          chunk_id         UUID REFERENCES transcript_chunks(chunk_id) ON DELETE CASCADE,
          organization_id  TEXT NOT NULL,
          account_id       TEXT,
          call_id          TEXT,
          funnel_stages    TEXT[] NOT NULL DEFAULT '{}',
          topics           TEXT[] NOT NULL DEFAULT '{}',
          text_preview     TEXT,
          metadata         JSONB NOT NULL DEFAULT '{}'::jsonb,
          embedding        vector(1536) NOT NULL,
          updated_at       TIMESTAMPTZ NOT NULL DEFAULT now()
        );
        """
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS chunk_vectors_org_account_idx "
        "ON chunk_vectors (organization_id, account_id);"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS chunk_vectors_stages_gin_idx "
        "ON chunk_vectors USING GIN (funnel_stages);"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS chunk_vectors_embedding_hnsw_idx "
        "ON chunk_vectors USING hnsw (embedding vector_cosine_ops);"
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS org_ai_settings (
          organization_id    TEXT PRIMARY KEY,
          default_provider   TEXT NOT NULL,
          default_model      TEXT,
          fallback_provider  TEXT,
          fallback_model     TEXT,
          updated_at         TIMESTAMPTZ NOT NULL DEFAULT now(),
          CHECK (default_provider IN ('openai','anthropic','google')),
          CHECK (fallback_provider IS NULL OR fallback_provider IN ('openai','anthropic','google'))
        );
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS audit_logs (
          audit_log_id     BIGSERIAL PRIMARY KEY,
          organization_id  TEXT,
          actor_user_id    TEXT,
          category         TEXT NOT NULL,
          action           TEXT NOT NULL,
          target_type      TEXT,
          target_id        TEXT,
          severity         TEXT NOT NULL DEFAULT 'INFO',
          metadata         JSONB NOT NULL DEFAULT '{}'::jsonb,
          created_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
          CHECK (severity IN ('INFO','WARN','CRITICAL'))
        );
        """
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS audit_logs_org_created_idx "
        "ON audit_logs (organization_id, created_at DESC);"
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS audit_logs;")
    op.execute("DROP TABLE IF EXISTS org_ai_settings;")
    op.execute("DROP TABLE IF EXISTS chunk_vectors;")
    op.execute("DROP TABLE IF EXISTS call_tags;")
    op.execute("DROP TABLE IF EXISTS chunk_tags;")
    op.execute("DROP TABLE IF EXISTS transcript_chunks;")
    op.execute("DROP TABLE IF EXISTS transcripts;")
    op.execute("DROP TABLE IF EXISTS calls;")
