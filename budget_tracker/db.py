import os
import sqlite3
from pathlib import Path

try:
    import psycopg
    from psycopg.rows import tuple_row
except ImportError:  # pragma: no cover - dependency optional for sqlite-only environments
    psycopg = None
    tuple_row = None


POSTGRES_URL_PREFIXES = ("postgresql://", "postgres://")


class CompatRow:
    """Postgres result row addressable by column name or position, like sqlite3.Row."""

    def __init__(self, columns, values):
        self._values = tuple(values)
        self._positions = {name: idx for idx, name in enumerate(columns)}

    def __getitem__(self, key):
        if isinstance(key, str):
            key = self._positions[key]
        return self._values[key]


class CompatCursor:
    def __init__(self, cursor):
        self._cursor = cursor

    def fetchone(self):
        return self._wrap(self._cursor.fetchone())

    def fetchall(self):
        return [self._wrap(row) for row in self._cursor.fetchall()]

    def _wrap(self, row):
        if row is None or isinstance(row, sqlite3.Row):
            return row
        columns = [getattr(col, "name", None) or col[0] for col in self._cursor.description or []]
        return CompatRow(columns, row)


class CompatConnection:
    """Runs the app's sqlite-flavoured SQL against either backend."""

    def __init__(self, conn, backend):
        self._conn = conn
        self.backend = backend

    def execute(self, sql, params=None):
        sql, params = rewrite_sql(self.backend, sql, params)
        return CompatCursor(self._conn.execute(sql, params or ()))

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


def is_postgres_url(value):
    return bool(value) and value.startswith(POSTGRES_URL_PREFIXES)


def rewrite_sql(backend, sql, params):
    if backend != "postgres":
        return sql, params
    sql = sql.replace("last_insert_rowid()", "lastval()").replace("?", "%s")
    if params is not None and not isinstance(params, (tuple, list)):
        params = (params,)
    return sql, params


def parse_database_config(database_path=None):
    """Pick the backend: ``DATABASE_URL`` wins when it names Postgres, else the sqlite file."""
    db_url = os.environ.get("DATABASE_URL", "").strip()
    if is_postgres_url(db_url):
        return {"backend": "postgres", "database_url": db_url, "database_path": database_path}
    return {"backend": "sqlite", "database_url": None, "database_path": database_path}


def connect_db(config):
    if config["backend"] == "postgres":
        if psycopg is None:
            raise RuntimeError("psycopg is required when DATABASE_URL points to Postgres")
        return CompatConnection(psycopg.connect(config["database_url"], row_factory=tuple_row), "postgres")

    db_path = config["database_path"]
    if db_path:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA busy_timeout = 5000")
    return CompatConnection(conn, "sqlite")


def database_errors():
    """Exception types a failed query can raise on the configured backends."""
    if psycopg is None:
        return (sqlite3.Error,)
    return (sqlite3.Error, psycopg.Error)
