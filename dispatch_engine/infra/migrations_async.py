# dispatch_engine/infra/migrations_async.py
"""
SQL migrations for the dispatch schema (``infra/sql/NNN_*.sql``).

Several engine replicas may start together, so the whole run holds a
transaction-scoped advisory lock: the first replica applies pending files,
the others wait and then find nothing left to do.  Each applied file is
recorded with a checksum; editing an applied file is reported, not re-run.
"""
from __future__ import annotations

import hashlib
from pathlib import Path

from dispatch_engine.infra.db_async import db_conn
from dispatch_engine.infra.logging_config import get_logger

logger = get_logger(__name__)

# Arbitrary constant shared by every replica
MIGRATION_LOCK_ID = 0x64697370

SQL_DIR = Path(__file__).resolve().parent / "sql"


def migration_files(sql_dir: Path = SQL_DIR) -> list[Path]:
    return sorted(p for p in sql_dir.glob("*.sql") if p.is_file())


def checksum(sql: str) -> str:
    return hashlib.sha256(sql.encode("utf-8")).hexdigest()


async def apply_migrations() -> dict:
    """
    Apply pending migrations in filename order.

    Returns:
        {"ok": True, "applied": [filenames applied now], "count": n,
         "modified": [applied files whose contents changed since]}
    """
    async with db_conn(autocommit=False) as conn:
        await conn.execute("SELECT pg_advisory_xact_lock($1)", MIGRATION_LOCK_ID)
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations(
              version    text PRIMARY KEY,
              checksum   text,
              applied_at timestamptz NOT NULL DEFAULT now()
            )
            """
        )
        rows = await conn.fetch("SELECT version, checksum FROM schema_migrations")
        applied = {row["version"]: row["checksum"] for row in rows}

        applied_now: list[str] = []
        modified: list[str] = []
        for path in migration_files():
            sql = path.read_text(encoding="utf-8")
            digest = checksum(sql)

            if path.name in applied:
                if applied[path.name] and applied[path.name] != digest:
                    modified.append(path.name)
                    logger.warning(f"Migration {path.name} changed after it was applied; not re-running")
                continue

            logger.info(f"Applying migration {path.name}")
            await conn.execute(sql)
            await conn.execute(
                "INSERT INTO schema_migrations(version, checksum) VALUES ($1, $2)",
                path.name, digest,
            )
            applied_now.append(path.name)

    logger.info(f"Migrations complete: {len(applied_now)} applied")
    return {"ok": True, "applied": applied_now, "count": len(applied_now), "modified": modified}
