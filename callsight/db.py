import re
from typing import Dict, Tuple

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from .config import Settings


_VERSION_RE = re.compile(r"^(\d+\.\d+)")


def build_engine(database_url: str) -> Engine:
    return create_engine(database_url, pool_pre_ping=True)


def _parse_pg_version(raw: str) -> str:
    match = _VERSION_RE.match(raw.strip())
    return match.group(1) if match else raw.strip()


def fetch_db_info(engine: Engine) -> Dict[str, object]:
    with engine.connect() as conn:
        server_version_raw = conn.execute(text("SHOW server_version")).scalar()
        ext_rows = conn.execute(
            text(
                "SELECT extname, extversion "
                "FROM pg_extension "
                "WHERE extname IN ('vector','pgcrypto')"
            )
        ).fetchall()

    ext_versions = {row[0]: row[1] for row in ext_rows}
    return {
        "server_version_raw": server_version_raw,
        "server_version": _parse_pg_version(server_version_raw),
        "extensions": ext_versions,
    }


def validate_extensions(engine: Engine, settings: Settings) -> Tuple[bool, str]:
    info = fetch_db_info(engine)
    extensions = info["extensions"]

    pgvector_version = extensions.get("vector")
    if pgvector_version is None:
        return False, "pgvector extension is not installed"
    expected = settings.expected_pgvector_version.strip()
    if expected and pgvector_version != expected:
        return False, (
            f"pgvector version mismatch: expected {expected}, got {pgvector_version}"
        )
    if "pgcrypto" not in extensions:
        return False, "pgcrypto extension is not installed"

    return True, "ok"
