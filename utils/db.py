import os
import sqlite3
from contextlib import contextmanager

try:
    import psycopg
    from psycopg.rows import dict_row
except ImportError:
    psycopg = None
    dict_row = None

try:
    from psycopg_pool import ConnectionPool
except ImportError:
    ConnectionPool = None


_pg_pool = None


def _database_url():
    return os.getenv("DATABASE_URL", "").strip()


def _sqlite_db_path():
    return os.getenv("SQLITE_DB_PATH", "database.db").strip() or "database.db"


def using_postgres():
    db_url = _database_url().lower()
    return db_url.startswith("postgresql://") or db_url.startswith("postgres://")


def _adapt_query(query):
    if using_postgres():
        return query.replace("?", "%s")
    return query


class CompatCursor:
    def __init__(self, cursor):
        self._cursor = cursor

    def execute(self, query, params=()):
        return self._cursor.execute(_adapt_query(query), params)

    def fetchone(self):
        return self._cursor.fetchone()

    def fetchall(self):
        return self._cursor.fetchall()

    @property
    def lastrowid(self):
        return getattr(self._cursor, "lastrowid", None)

    @property
    def rowcount(self):
        return self._cursor.rowcount


class PooledConnection:
    def __init__(self, pool, conn):
        self._pool = pool
        self._conn = conn

    def __getattr__(self, item):
        return getattr(self._conn, item)

    def close(self):
        if self._conn is None:
            return
        try:
            self._conn.rollback()
        except Exception:
            pass
        self._pool.putconn(self._conn)
        self._conn = None


def _get_pg_pool():
    global _pg_pool
    if _pg_pool is not None:
        return _pg_pool

    if ConnectionPool is None:
        raise RuntimeError(
            "PostgreSQL pooling requires 'psycopg-pool'. Run: pip install psycopg-pool"
        )

    min_pool = int(os.getenv("PG_POOL_MIN_SIZE", "1"))
    max_pool = int(os.getenv("PG_POOL_MAX_SIZE", "10"))

    _pg_pool = ConnectionPool(
        conninfo=_database_url(),
        min_size=min_pool,
        max_size=max_pool,
        kwargs={"row_factory": dict_row},
        timeout=5,
    )
    _pg_pool.open(wait=True)
    return _pg_pool


def get_db():
    if using_postgres():
        if psycopg is None:
            raise RuntimeError(
                "PostgreSQL is configured in DATABASE_URL but 'psycopg' is not installed. "
                "Run: pip install psycopg[binary]"
            )
        pool = _get_pg_pool()
        conn = pool.getconn()
        return PooledConnection(pool, conn)

    conn = sqlite3.connect(_sqlite_db_path())
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def get_cursor(conn):
    return CompatCursor(conn.cursor())


@contextmanager
def db_session():
    """Yield ``(conn, cur)`` and commit on success, rolling back on any error."""
    conn = get_db()
    try:
        yield conn, get_cursor(conn)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def integrity_errors():
    errors = (sqlite3.IntegrityError,)
    if psycopg is not None:
        errors += (psycopg.IntegrityError,)
    return errors


def begin_write(conn, cur, lock_key):
    """Open a write transaction serialized on ``lock_key``.

    SQLite takes the database write lock up front so two writers cannot both
    read "no attempt yet" and insert. PostgreSQL uses a transaction-scoped
    advisory lock, released on commit or rollback.
    """
    if using_postgres():
        cur.execute("SELECT pg_advisory_xact_lock(hashtext(?))", (lock_key,))
        return

    if not conn.in_transaction:
        cur.execute("BEGIN IMMEDIATE")


def insert_and_get_id(cur, query, params=()):
    if using_postgres():
        insert_query = _adapt_query(query)
        if " returning " not in insert_query.lower():
            insert_query = f"{insert_query} RETURNING id"
        cur._cursor.execute(insert_query, params)
        row = cur._cursor.fetchone()
        if row is None:
            return None
        if isinstance(row, dict):
            return row.get("id")
        return row[0]

    cur.execute(query, params)
    return cur.lastrowid
