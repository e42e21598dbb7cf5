import sqlite3

import pytest

from utils.db import db_session
from utils.migrations import run_migrations, split_statements


@pytest.fixture()
def sqlite_db(tmp_path, monkeypatch):
    monkeypatch.setenv("SQLITE_DB_PATH", str(tmp_path / "migrations.db"))
    monkeypatch.delenv("DATABASE_URL", raising=False)
    return tmp_path


def write_migration(root, name, sql):
    backend_dir = root / "sql" / "sqlite"
    backend_dir.mkdir(parents=True, exist_ok=True)
    (backend_dir / name).write_text(sql, encoding="utf-8")


def table_names():
    with db_session() as (_conn, cur):
        cur.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        return {row["name"] for row in cur.fetchall()}


def ledger():
    with db_session() as (_conn, cur):
        cur.execute("SELECT version FROM schema_migrations ORDER BY version")
        return [row["version"] for row in cur.fetchall()]


def test_bundled_schema_applies_once(sqlite_db):
    assert run_migrations() == ["0001"]
    assert run_migrations() == []
    assert {"users", "quizzes", "questions", "choices", "attempts", "answers", "answer_choices"} <= table_names()


def test_failing_migration_leaves_nothing_half_applied(sqlite_db):
    write_migration(sqlite_db, "0001_widgets.sql", "CREATE TABLE widgets (id INTEGER PRIMARY KEY);")
    write_migration(
        sqlite_db,
        "0002_broken.sql",
        "CREATE TABLE gadgets (id INTEGER PRIMARY KEY);\nSELECT id FROM missing_table;",
    )

    with pytest.raises(sqlite3.OperationalError):
        run_migrations(sqlite_db / "sql")

    assert ledger() == ["0001"]
    tables = table_names()
    assert "widgets" in tables
    assert "gadgets" not in tables


def test_conflicting_definition_is_not_ignored(sqlite_db):
    write_migration(sqlite_db, "0001_widgets.sql", "CREATE TABLE widgets (id INTEGER PRIMARY KEY);")
    write_migration(sqlite_db, "0002_again.sql", "CREATE TABLE widgets (id INTEGER PRIMARY KEY, name TEXT);")

    with pytest.raises(sqlite3.OperationalError, match="already exists"):
        run_migrations(sqlite_db / "sql")
    assert ledger() == ["0001"]


def test_split_statements_skips_comments_and_blanks():
    sql = "-- header\nCREATE TABLE a (id INTEGER);\n\n  ;\n-- trailing\nCREATE INDEX idx_a ON a (id);\n"
    assert split_statements(sql) == ["CREATE TABLE a (id INTEGER)", "CREATE INDEX idx_a ON a (id)"]
