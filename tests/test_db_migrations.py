import json
import sqlite3

from fin_reconcile.db import parse_database_config, rewrite_sql
from fin_reconcile.db_migrations import MIGRATIONS, apply_migrations, ensure_table, get_db_health, main


class _FakePostgresConnection:
    def __init__(self):
        self.backend = "postgres"
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append(" ".join(sql.split()))


def test_apply_migrations_on_empty_db(tmp_path):
    db_path = tmp_path / "empty.sqlite"

    apply_migrations(str(db_path))
    health = get_db_health(str(db_path))

    assert health["ok"] is True
    assert health["schema_version"] == MIGRATIONS[-1][0]
    assert health["missing_tables"] == []
    assert health["missing_indexes"] == []


def test_apply_migrations_is_idempotent(tmp_path):
    db_path = tmp_path / "twice.sqlite"

    apply_migrations(str(db_path))
    apply_migrations(str(db_path))

    conn = sqlite3.connect(db_path)
    versions = [row[0] for row in conn.execute("SELECT version FROM schema_version ORDER BY version").fetchall()]
    conn.close()
    assert versions == [version for version, _ in MIGRATIONS]


def test_migrations_keep_existing_rows(tmp_path):
    db_path = tmp_path / "existing.sqlite"
    apply_migrations(str(db_path))

    conn = sqlite3.connect(db_path)
    conn.execute("INSERT INTO users(email, password_hash, role) VALUES ('ana@example.com', 'stored-hash', 'admin')")
    conn.execute(
        "INSERT INTO transactions(id, user_id, date, purchase_date, description, amount) "
        "VALUES ('t-1', 1, '2024-03-02', '2024-03-02', 'Feira', 42.5)"
    )
    conn.commit()
    conn.close()

    apply_migrations(str(db_path))

    conn = sqlite3.connect(db_path)
    row = conn.execute("SELECT password_hash FROM users WHERE email = 'ana@example.com'").fetchone()
    assert row[0] == "stored-hash"
    row = conn.execute("SELECT tags, notes, matched_system_id FROM transactions WHERE id = 't-1'").fetchone()
    assert row == ("[]", None, None)
    conn.close()


def test_ensure_table_uses_bigserial_on_postgres():
    conn = _FakePostgresConnection()

    ensure_table(conn, "CREATE TABLE IF NOT EXISTS users (id INTEGER PRIMARY KEY AUTOINCREMENT)")

    assert conn.statements == ["CREATE TABLE IF NOT EXISTS users (id BIGSERIAL PRIMARY KEY)"]


def test_staging_table_and_indexes_exist(tmp_path):
    db_path = tmp_path / "staging.sqlite"
    apply_migrations(str(db_path))

    conn = sqlite3.connect(db_path)
    tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()}
    assert {"invoice_staging", "system_transactions", "user_settings"} <= tables

    indexes = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='index'").fetchall()}
    assert "idx_invoice_staging_created_at" in indexes
    assert "idx_system_transactions_user_amount" in indexes
    conn.close()


def test_health_reports_missing_tables(tmp_path):
    db_path = tmp_path / "bare.sqlite"
    sqlite3.connect(db_path).close()

    health = get_db_health(str(db_path))
    assert health["ok"] is False
    assert "transactions" in health["missing_tables"]
    assert health["schema_version"] == 0


def test_rewrite_sql_for_postgres():
    sql, params = rewrite_sql("postgres", "SELECT * FROM users WHERE id = ?", 5)
    assert sql == "SELECT * FROM users WHERE id = %s"
    assert params == (5,)

    sql, params = rewrite_sql("sqlite", "SELECT ?", (1,))
    assert sql == "SELECT ?"


def test_parse_database_config_prefers_postgres_url():
    config = parse_database_config("instance/app.sqlite", "postgresql://u:p@localhost:5432/finance")
    assert config["backend"] == "postgres"
    assert config["database_name"] == "finance"

    config = parse_database_config("instance/app.sqlite", "")
    assert config["backend"] == "sqlite"
    assert config["database_name"] == "app.sqlite"


def test_rewrite_sql_doubles_literal_percent_for_postgres():
    sql, _ = rewrite_sql("postgres", "SELECT id FROM transactions WHERE description LIKE '%uber%' AND id = ?", ("t",))
    assert sql == "SELECT id FROM transactions WHERE description LIKE '%%uber%%' AND id = %s"


def test_check_db_command(tmp_path, monkeypatch, capsys):
    monkeypatch.setenv("DATABASE_URL", "")
    db_path = tmp_path / "cli.sqlite"

    assert main([str(db_path)]) == 1
    capsys.readouterr()

    assert main([str(db_path), "--migrate"]) == 0
    health = json.loads(capsys.readouterr().out)
    assert health["ok"] is True
    assert health["schema_version"] == MIGRATIONS[-1][0]
