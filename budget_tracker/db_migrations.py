import argparse
import json
from datetime import datetime, timezone

from .db import connect_db, parse_database_config


REQUIRED_TABLES = {
    "users": {
        "columns": {"id", "username", "password_hash", "created_at"},
        "indexes": set(),
    },
    "accounts": {
        "columns": {"id", "user_id", "name", "type", "institution", "balance", "currency", "is_active", "created_at"},
        "indexes": {"idx_accounts_user_id"},
    },
    "expense_groups": {
        "columns": {"id", "user_id", "name", "sort_order"},
        "indexes": set(),
    },
    "expense_categories": {
        "columns": {"id", "user_id", "group_id", "name", "description"},
        "indexes": {"idx_expense_categories_user_id"},
    },
    "transactions": {
        "columns": {
            "id",
            "user_id",
            "account_id",
            "expense_category_id",
            "amount",
            "description",
            "date",
            "is_pending",
            "check_number",
            "created_at",
        },
        "indexes": {
            "idx_transactions_user_date",
            "idx_transactions_account_id",
        },
    },
    "import_sessions": {
        "columns": {"id", "import_id", "user_id", "file_name", "file_kind", "raw_text", "date_format", "created_at"},
        "indexes": {"idx_import_sessions_created_at"},
    },
}


# Catalog lookups per backend, each bound to the object name.
SQLITE_CATALOG = {
    "table": "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?",
    "index": "SELECT name FROM sqlite_master WHERE type = 'index' AND name = ?",
}
POSTGRES_CATALOG = {
    "table": "SELECT table_name FROM information_schema.tables WHERE table_schema = current_schema() AND table_name = ?",
    "index": "SELECT indexname FROM pg_indexes WHERE schemaname = current_schema() AND indexname = ?",
    "columns": "SELECT column_name FROM information_schema.columns WHERE table_schema = current_schema() AND table_name = ?",
}


def is_postgres(conn):
    return getattr(conn, "backend", "sqlite") == "postgres"


def schema_object_exists(conn, kind, name):
    catalog = POSTGRES_CATALOG if is_postgres(conn) else SQLITE_CATALOG
    return conn.execute(catalog[kind], (name,)).fetchone() is not None


def table_columns(conn, table):
    if is_postgres(conn):
        return {row[0] for row in conn.execute(POSTGRES_CATALOG["columns"], (table,)).fetchall()}
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def add_column_if_missing(conn, table, col_def_sql):
    if is_postgres(conn):
        conn.execute(f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS {col_def_sql}")
    elif col_def_sql.split()[0] not in table_columns(conn, table):
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {col_def_sql}")


def create_table(conn, create_sql):
    if is_postgres(conn):
        create_sql = create_sql.replace("INTEGER PRIMARY KEY AUTOINCREMENT", "BIGSERIAL PRIMARY KEY")
    conn.execute(create_sql)


def migration_001(conn):
    create_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            username TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
    )
    create_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS accounts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            type TEXT NOT NULL DEFAULT 'checking',
            institution TEXT,
            balance REAL NOT NULL DEFAULT 0,
            currency TEXT NOT NULL DEFAULT 'USD',
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users (id)
        )
        """,
    )
    create_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS expense_groups (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            sort_order INTEGER NOT NULL DEFAULT 0,
            UNIQUE(user_id, name),
            FOREIGN KEY (user_id) REFERENCES users (id)
        )
        """,
    )
    create_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS expense_categories (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            group_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            description TEXT,
            UNIQUE(user_id, group_id, name),
            FOREIGN KEY (user_id) REFERENCES users (id),
            FOREIGN KEY (group_id) REFERENCES expense_groups (id)
        )
        """,
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_accounts_user_id ON accounts(user_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_expense_categories_user_id ON expense_categories(user_id)")


def migration_002(conn):
    create_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            account_id INTEGER NOT NULL,
            expense_category_id INTEGER,
            amount REAL NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            date TEXT NOT NULL,
            is_pending INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users (id),
            FOREIGN KEY (account_id) REFERENCES accounts (id),
            FOREIGN KEY (expense_category_id) REFERENCES expense_categories (id)
        )
        """,
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_transactions_user_date ON transactions(user_id, date)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_transactions_account_id ON transactions(account_id)")


def migration_003(conn):
    # Statement imports keep the raw file text so the preview can be re-parsed
    # under a different date format without a second upload.
    create_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS import_sessions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            import_id TEXT UNIQUE NOT NULL,
            user_id INTEGER NOT NULL,
            file_name TEXT NOT NULL,
            file_kind TEXT NOT NULL,
            raw_text TEXT NOT NULL,
            date_format TEXT NOT NULL,
            created_at TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES users (id)
        )
        """,
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_import_sessions_created_at ON import_sessions(created_at)")
    add_column_if_missing(conn, "transactions", "check_number TEXT")


MIGRATIONS = [
    (1, migration_001),
    (2, migration_002),
    (3, migration_003),
]


def current_schema_version(conn):
    conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)")
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return int(row[0] or 0)


def _run_migrations(conn):
    version = current_schema_version(conn)
    for number, migration in MIGRATIONS:
        if number <= version:
            continue
        try:
            migration(conn)
            conn.execute(
                "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                (number, datetime.now(timezone.utc).isoformat(timespec="seconds")),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    health = inspect_db_health(conn)
    if health["missing_tables"] or any(health["missing_columns"].values()):
        raise RuntimeError(
            f"Schema incomplete after migrations: tables={health['missing_tables']} columns={health['missing_columns']}"
        )


def apply_migrations(db_or_config_or_path):
    """Bring a connection, config dict or sqlite path up to the latest schema."""
    if hasattr(db_or_config_or_path, "execute"):
        _run_migrations(db_or_config_or_path)
        return
    conn = connect_db(_as_config(db_or_config_or_path))
    try:
        _run_migrations(conn)
    finally:
        conn.close()


def inspect_db_health(conn):
    missing_tables = [name for name in REQUIRED_TABLES if not schema_object_exists(conn, "table", name)]
    missing_columns = {}
    missing_indexes = []
    for name, required in REQUIRED_TABLES.items():
        present = table_columns(conn, name) if name not in missing_tables else set()
        missing_columns[name] = sorted(required["columns"] - present)
        missing_indexes.extend(idx for idx in required["indexes"] if not schema_object_exists(conn, "index", idx))

    return {
        "ok": not missing_tables and not any(missing_columns.values()) and not missing_indexes,
        "schema_version": current_schema_version(conn),
        "missing_tables": missing_tables,
        "missing_columns": missing_columns,
        "missing_indexes": sorted(missing_indexes),
    }


def get_db_health(db_config_or_path):
    conn = connect_db(_as_config(db_config_or_path))
    try:
        return inspect_db_health(conn)
    finally:
        conn.close()


def _as_config(db_config_or_path):
    if isinstance(db_config_or_path, dict):
        return db_config_or_path
    return parse_database_config(db_config_or_path)


def main():
    parser = argparse.ArgumentParser(description="Check budget tracker DB schema health")
    parser.add_argument(
        "db_path",
        nargs="?",
        default="instance/budget_tracker.sqlite",
        help="Path to SQLite DB (ignored when DATABASE_URL is postgres)",
    )
    parser.add_argument("--migrate", action="store_true", help="Apply migrations before checking")
    args = parser.parse_args()

    config = parse_database_config(args.db_path)
    if args.migrate:
        apply_migrations(config)
    print(json.dumps(get_db_health(config), indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
