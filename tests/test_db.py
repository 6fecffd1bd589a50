from budget_tracker.db import CompatCursor, CompatRow, is_postgres_url, parse_database_config, rewrite_sql


class _Column:
    def __init__(self, name):
        self.name = name


class _FakePostgresCursor:
    description = [_Column("id"), _Column("name")]

    def fetchone(self):
        return (7, "Checking")

    def fetchall(self):
        return [(7, "Checking"), (8, "Savings")]


def test_compat_row_reads_by_name_and_position():
    row = CompatRow(["id", "name"], (7, "Checking"))

    assert row["name"] == "Checking"
    assert row[0] == 7


def test_compat_cursor_wraps_postgres_tuples():
    cursor = CompatCursor(_FakePostgresCursor())

    assert cursor.fetchone()["name"] == "Checking"
    assert [row["id"] for row in cursor.fetchall()] == [7, 8]


def test_rewrite_sql_only_touches_postgres():
    sql = "SELECT last_insert_rowid() AS id FROM accounts WHERE user_id = ?"

    assert rewrite_sql("sqlite", sql, (1,)) == (sql, (1,))
    assert rewrite_sql("postgres", sql, 1) == ("SELECT lastval() AS id FROM accounts WHERE user_id = %s", (1,))


def test_parse_database_config_prefers_postgres_url(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://user@localhost/budget")
    assert parse_database_config("instance/x.sqlite")["backend"] == "postgres"

    monkeypatch.delenv("DATABASE_URL")
    config = parse_database_config("instance/x.sqlite")
    assert config["backend"] == "sqlite"
    assert config["database_path"] == "instance/x.sqlite"
    assert not is_postgres_url("sqlite:///x.db")
