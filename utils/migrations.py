"""Forward-only schema migrations.

Files live in ``migrations/<backend>/NNNN_name.sql``. Each pending file runs
in one transaction together with its ``schema_migrations`` row, so a failing
file leaves neither schema changes nor a ledger entry behind.
"""

import logging
import pathlib
import re

from utils.db import begin_write, db_session, using_postgres

logger = logging.getLogger(__name__)

MIGRATIONS_ROOT = pathlib.Path(__file__).resolve().parents[1] / "migrations"
_FILENAME_RE = re.compile(r"^(\d{4})_[\w-]+\.sql$")
_LEDGER_LOCK = "schema_migrations"


def pending_migrations(applied, root=MIGRATIONS_ROOT):
    backend_dir = pathlib.Path(root) / ("postgres" if using_postgres() else "sqlite")
    pending = []
    for path in sorted(backend_dir.glob("*.sql")):
        match = _FILENAME_RE.match(path.name)
        if match and match.group(1) not in applied:
            pending.append((match.group(1), path))
    return pending


def split_statements(sql_text):
    statements = []
    for chunk in sql_text.split(";"):
        lines = [line for line in chunk.splitlines() if not line.strip().startswith("--")]
        statement = "\n".join(lines).strip()
        if statement:
            statements.append(statement)
    return statements


def applied_versions():
    with db_session() as (_conn, cur):
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version TEXT PRIMARY KEY,
                applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
        cur.execute("SELECT version FROM schema_migrations")
        return {row["version"] for row in cur.fetchall()}


def run_migrations(root=MIGRATIONS_ROOT):
    """Apply every pending migration and return the versions applied."""
    applied_now = []
    for version, path in pending_migrations(applied_versions(), root):
        with db_session() as (conn, cur):
            begin_write(conn, cur, _LEDGER_LOCK)
            cur.execute("SELECT version FROM schema_migrations WHERE version = ?", (version,))
            if cur.fetchone():
                # Applied by a concurrent runner while we waited on the lock.
                continue

            for statement in split_statements(path.read_text(encoding="utf-8")):
                cur.execute(statement)
            cur.execute("INSERT INTO schema_migrations (version) VALUES (?)", (version,))

        logger.info("Applied migration %s (%s).", version, path.name)
        applied_now.append(version)

    return applied_now
