import argparse
import json
from datetime import datetime, timezone

from .db import connect_db, parse_database_config
from .logging_setup import get_logger


logger = get_logger(__name__)


REQUIRED_TABLES = {
    "users": {
        "columns": {"id", "email", "password_hash", "role", "created_at"},
        "indexes": set(),
    },
    "invoices": {
        "columns": {"id", "user_id", "name", "size", "upload_date", "status", "transaction_count", "card_issuer"},
        "indexes": {"idx_invoices_user_upload_date"},
    },
    "transactions": {
        "columns": {
            "id",
            "user_id",
            "invoice_id",
            "date",
            "purchase_date",
            "description",
            "amount",
            "category",
            "subcategory",
            "tags",
            "status",
            "card_issuer",
            "notes",
            "matched_system_id",
        },
        "indexes": {"idx_transactions_user_purchase_date", "idx_transactions_invoice_id"},
    },
    "user_settings": {
        "columns": {"user_id", "categories", "tags", "updated_at"},
        "indexes": set(),
    },
    "system_transactions": {
        "columns": {"id", "user_id", "date", "description", "amount", "account", "created_at"},
        "indexes": {"idx_system_transactions_user_amount"},
    },
    "invoice_staging": {
        "columns": {"import_id", "user_id", "created_at", "invoice_json", "transactions_json"},
        "indexes": {"idx_invoice_staging_created_at"},
    },
}


def backend_name(conn):
    return getattr(conn, "backend", "sqlite")


def table_exists(conn, name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM information_schema.tables WHERE table_schema = current_schema() AND table_name = ?",
            (name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='table' AND name = ?", (name,)).fetchone()
    return row is not None


def get_table_columns(conn, table):
    if backend_name(conn) == "postgres":
        rows = conn.execute(
            "SELECT column_name FROM information_schema.columns WHERE table_schema = current_schema() AND table_name = ? ORDER BY ordinal_position",
            (table,),
        ).fetchall()
        return {row[0] for row in rows}

    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return {row[1] for row in rows}


def index_exists(conn, index_name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM pg_indexes WHERE schemaname = current_schema() AND indexname = ?",
            (index_name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='index' AND name = ?", (index_name,)).fetchone()
    return row is not None


def create_index_if_missing(conn, index_name, create_sql):
    if not index_exists(conn, index_name):
        conn.execute(create_sql)


def ensure_table(conn, create_sql):
    if backend_name(conn) == "postgres":
        create_sql = create_sql.replace("INTEGER PRIMARY KEY AUTOINCREMENT", "BIGSERIAL PRIMARY KEY")
    conn.execute(create_sql)


def migration_001(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            email TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            role TEXT NOT NULL DEFAULT 'user',
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS invoices (
            id TEXT PRIMARY KEY,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            size INTEGER NOT NULL DEFAULT 0,
            upload_date TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'parsed',
            transaction_count INTEGER,
            card_issuer TEXT,
            FOREIGN KEY (user_id) REFERENCES users (id)
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS transactions (
            id TEXT PRIMARY KEY,
            user_id INTEGER NOT NULL,
            invoice_id TEXT,
            date TEXT,
            purchase_date TEXT,
            description TEXT NOT NULL,
            amount NUMERIC(12, 2) NOT NULL,
            category TEXT NOT NULL DEFAULT 'Outros',
            subcategory TEXT,
            tags TEXT NOT NULL DEFAULT '[]',
            status TEXT NOT NULL DEFAULT 'UNMATCHED',
            card_issuer TEXT,
            notes TEXT,
            matched_system_id TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users (id),
            FOREIGN KEY (invoice_id) REFERENCES invoices (id) ON DELETE CASCADE
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS user_settings (
            user_id INTEGER PRIMARY KEY,
            categories TEXT,
            tags TEXT,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES users (id)
        )
        """,
    )
    create_index_if_missing(
        conn,
        "idx_invoices_user_upload_date",
        "CREATE INDEX idx_invoices_user_upload_date ON invoices(user_id, upload_date)",
    )
    create_index_if_missing(
        conn,
        "idx_transactions_user_purchase_date",
        "CREATE INDEX idx_transactions_user_purchase_date ON transactions(user_id, purchase_date)",
    )
    create_index_if_missing(
        conn,
        "idx_transactions_invoice_id",
        "CREATE INDEX idx_transactions_invoice_id ON transactions(invoice_id)",
    )


def migration_002(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS system_transactions (
            id TEXT PRIMARY KEY,
            user_id INTEGER NOT NULL,
            date TEXT NOT NULL,
            description TEXT NOT NULL,
            amount NUMERIC(12, 2) NOT NULL,
            account TEXT NOT NULL DEFAULT '',
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users (id)
        )
        """,
    )
    create_index_if_missing(
        conn,
        "idx_system_transactions_user_amount",
        "CREATE INDEX idx_system_transactions_user_amount ON system_transactions(user_id, amount)",
    )


def migration_003(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS invoice_staging (
            import_id TEXT PRIMARY KEY,
            user_id INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            invoice_json TEXT NOT NULL,
            transactions_json TEXT NOT NULL DEFAULT '[]',
            FOREIGN KEY (user_id) REFERENCES users (id)
        )
        """,
    )
    create_index_if_missing(
        conn,
        "idx_invoice_staging_created_at",
        "CREATE INDEX idx_invoice_staging_created_at ON invoice_staging(created_at)",
    )


MIGRATIONS = [
    (1, migration_001),
    (2, migration_002),
    (3, migration_003),
]


def _ensure_schema_version_table(conn):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )


def current_schema_version(conn):
    _ensure_schema_version_table(conn)
    row = conn.execute("SELECT MAX(version) AS version FROM schema_version").fetchone()
    return int(row[0] or 0)


def validate_required_schema(conn):
    health = inspect_db_health(conn)
    if health["missing_tables"] or any(health["missing_columns"].values()):
        raise RuntimeError(
            "Schema invariants failed after migrations. "
            f"Missing tables={health['missing_tables']}, missing columns={health['missing_columns']}"
        )


def _run_migrations(conn):
    _ensure_schema_version_table(conn)

    applied_versions = {row[0] for row in conn.execute("SELECT version FROM schema_version").fetchall()}

    for version, migration_fn in MIGRATIONS:
        if version in applied_versions:
            continue
        try:
            migration_fn(conn)
            conn.execute(
                "INSERT INTO schema_version(version, applied_at) VALUES (?, ?)",
                (version, datetime.now(timezone.utc).isoformat(timespec="seconds")),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            logger.error("Migration %s (%s) failed", version, migration_fn.__name__)
            raise
        logger.info("Applied migration %s (%s)", version, migration_fn.__name__)

    validate_required_schema(conn)


def apply_migrations(db_or_config_or_path):
    if hasattr(db_or_config_or_path, "execute"):
        _run_migrations(db_or_config_or_path)
        return

    config = db_or_config_or_path if isinstance(db_or_config_or_path, dict) else parse_database_config(db_or_config_or_path)
    conn = connect_db(config)
    try:
        _run_migrations(conn)
    finally:
        conn.close()


def inspect_db_health(conn):
    _ensure_schema_version_table(conn)
    missing_tables = []
    missing_columns = {}
    missing_indexes = []

    for table_name, table_spec in REQUIRED_TABLES.items():
        if not table_exists(conn, table_name):
            missing_tables.append(table_name)
            missing_columns[table_name] = sorted(table_spec["columns"])
            missing_indexes.extend(sorted(table_spec["indexes"]))
            continue

        table_cols = get_table_columns(conn, table_name)
        missing_columns[table_name] = sorted(col for col in table_spec["columns"] if col not in table_cols)

        for idx in sorted(table_spec["indexes"]):
            if not index_exists(conn, idx):
                missing_indexes.append(idx)

    return {
        "ok": not missing_tables and not any(missing_columns.values()) and not missing_indexes,
        "schema_version": current_schema_version(conn),
        "missing_tables": missing_tables,
        "missing_columns": missing_columns,
        "missing_indexes": sorted(set(missing_indexes)),
    }


def get_db_health(db_config_or_path):
    config = db_config_or_path if isinstance(db_config_or_path, dict) else parse_database_config(db_config_or_path)
    conn = connect_db(config)
    try:
        return inspect_db_health(conn)
    finally:
        conn.close()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Check FinReconcile DB schema health")
    parser.add_argument(
        "db_path",
        nargs="?",
        default="instance/fin_reconcile.sqlite",
        help="Path to the SQLite file (ignored when DATABASE_URL points at postgres)",
    )
    parser.add_argument("--migrate", action="store_true", help="Apply pending migrations first")
    args = parser.parse_args(argv)

    config = parse_database_config(args.db_path)
    if args.migrate:
        apply_migrations(config)

    health = get_db_health(config)
    print(json.dumps(health, indent=2, sort_keys=True))
    return 0 if health["ok"] else 1


if __name__ == "__main__":
    raise SystemExit(main())
