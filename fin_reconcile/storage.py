"""User-scoped persistence for invoices, transactions, settings and staging.

Every function takes an open connection from ``db.connect_db`` and the id of
the signed-in user; rows belonging to other users are never read or written.
Driver errors are re-raised as ``StorageError`` after the enclosing database
transaction has been rolled back.
"""

import json
from datetime import datetime, timedelta, timezone

from .db import DATABASE_ERRORS
from .logging_setup import get_logger
from .models import (
    DEFAULT_CATEGORIES,
    DEFAULT_TAGS,
    MANUAL_ENTRY_ID,
    Category,
    InvoiceFile,
    SystemTransaction,
    Tag,
    Transaction,
)


STAGING_MAX_AGE_HOURS = 24

logger = get_logger(__name__)


class StorageError(RuntimeError):
    """Raised when a write to the database fails and nothing was stored."""


def utc_now_text():
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _load_json_list(raw):
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return []
    return value if isinstance(value, list) else []


def row_to_transaction(row):
    return Transaction(
        id=row["id"],
        date=row["date"] or row["purchase_date"] or "",
        purchase_date=row["purchase_date"] or "",
        description=row["description"] or "",
        amount=row["amount"],
        category=row["category"],
        subcategory=row["subcategory"] or "",
        tags=_load_json_list(row["tags"]),
        invoice_id=row["invoice_id"] or MANUAL_ENTRY_ID,
        status=row["status"],
        card_issuer=row["card_issuer"] or "",
        notes=row["notes"] or "",
        matched_system_id=row["matched_system_id"] or "",
    )


def row_to_invoice(row):
    return InvoiceFile(
        id=row["id"],
        name=row["name"],
        size=int(row["size"] or 0),
        upload_date=row["upload_date"],
        status=row["status"],
        transaction_count=row["transaction_count"],
        card_issuer=row["card_issuer"] or "",
    )


def fetch_transactions(db, user_id):
    rows = db.execute(
        """
        SELECT id, invoice_id, date, purchase_date, description, amount, category, subcategory,
               tags, status, card_issuer, notes, matched_system_id
        FROM transactions
        WHERE user_id = ?
        ORDER BY purchase_date DESC, id ASC
        """,
        (user_id,),
    ).fetchall()
    return [row_to_transaction(row) for row in rows]


def fetch_invoices(db, user_id):
    rows = db.execute(
        "SELECT * FROM invoices WHERE user_id = ? ORDER BY upload_date DESC",
        (user_id,),
    ).fetchall()
    return [row_to_invoice(row) for row in rows]


def fetch_invoice(db, user_id, invoice_id):
    row = db.execute("SELECT * FROM invoices WHERE id = ? AND user_id = ?", (invoice_id, user_id)).fetchone()
    return row_to_invoice(row) if row is not None else None


def fetch_settings(db, user_id):
    row = db.execute("SELECT categories, tags FROM user_settings WHERE user_id = ?", (user_id,)).fetchone()
    categories = _load_json_list(row["categories"]) if row is not None else []
    tags = _load_json_list(row["tags"]) if row is not None else []
    return (
        [Category.from_dict(item) for item in categories] or [Category.from_dict(c.to_dict()) for c in DEFAULT_CATEGORIES],
        [Tag.from_dict(item) for item in tags] or [Tag.from_dict(t.to_dict()) for t in DEFAULT_TAGS],
    )


def save_settings(db, user_id, categories=None, tags=None):
    current_categories, current_tags = fetch_settings(db, user_id)
    categories = current_categories if categories is None else categories
    tags = current_tags if tags is None else tags
    try:
        with db.atomic():
            db.execute(
                """
                INSERT INTO user_settings (user_id, categories, tags, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (user_id) DO UPDATE SET
                    categories = excluded.categories,
                    tags = excluded.tags,
                    updated_at = excluded.updated_at
                """,
                (
                    user_id,
                    json.dumps([c.to_dict() for c in categories]),
                    json.dumps([t.to_dict() for t in tags]),
                    utc_now_text(),
                ),
            )
    except DATABASE_ERRORS as exc:
        logger.error("Saving settings for user %s failed: %s", user_id, exc)
        raise StorageError("Could not save settings.") from exc


def _insert_transactions(db, user_id, transactions):
    db.executemany(
        """
        INSERT INTO transactions (
            id, user_id, invoice_id, date, purchase_date, description, amount, category,
            subcategory, tags, status, card_issuer, notes, matched_system_id
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        [
            (
                t.id,
                user_id,
                None if t.is_manual else t.invoice_id,
                t.date or t.purchase_date,
                t.purchase_date,
                t.description,
                str(t.amount),
                t.category,
                t.subcategory or None,
                json.dumps(t.tags),
                t.status.value,
                t.card_issuer or None,
                t.notes or None,
                t.matched_system_id or None,
            )
            for t in transactions
        ],
    )


def _upsert_invoice(db, user_id, invoice):
    db.execute(
        """
        INSERT INTO invoices (id, user_id, name, size, upload_date, status, transaction_count, card_issuer)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT (id) DO UPDATE SET
            name = excluded.name,
            size = excluded.size,
            upload_date = excluded.upload_date,
            status = excluded.status,
            transaction_count = excluded.transaction_count,
            card_issuer = excluded.card_issuer
        WHERE invoices.user_id = excluded.user_id
        """,
        (
            invoice.id,
            user_id,
            invoice.name,
            invoice.size,
            invoice.upload_date.isoformat(),
            invoice.status.value,
            invoice.transaction_count,
            invoice.card_issuer or None,
        ),
    )


def _insert_system_transactions(db, user_id, system_transactions):
    db.executemany(
        "INSERT INTO system_transactions (id, user_id, date, description, amount, account) VALUES (?, ?, ?, ?, ?, ?)",
        [(s.id, user_id, s.date, s.description, str(s.amount), s.account or "") for s in system_transactions],
    )


def save_transactions(db, user_id, transactions):
    if not transactions:
        return
    try:
        with db.atomic():
            _insert_transactions(db, user_id, transactions)
    except DATABASE_ERRORS as exc:
        logger.error("Saving %d transactions for user %s failed: %s", len(transactions), user_id, exc)
        raise StorageError("Could not save the transactions.") from exc


def save_invoice(db, user_id, invoice):
    try:
        with db.atomic():
            _upsert_invoice(db, user_id, invoice)
    except DATABASE_ERRORS as exc:
        logger.error("Saving invoice %s for user %s failed: %s", invoice.id, user_id, exc)
        raise StorageError("Could not save the invoice.") from exc


def save_invoice_with_transactions(db, user_id, invoice, transactions, system_transactions=(), import_id=None):
    """Store an invoice, its line items and any synthesized system records together.

    Either every row is written or none is. When ``import_id`` is given the
    staged review it came from is removed in the same database transaction.
    """
    try:
        with db.atomic():
            _upsert_invoice(db, user_id, invoice)
            _insert_transactions(db, user_id, transactions)
            _insert_system_transactions(db, user_id, system_transactions)
            if import_id:
                _delete_staged(db, user_id, import_id)
    except DATABASE_ERRORS as exc:
        logger.error(
            "Saving invoice %s with %d transactions for user %s failed: %s",
            invoice.id,
            len(transactions),
            user_id,
            exc,
        )
        raise StorageError("Could not save the invoice and its transactions.") from exc
    logger.info("Stored invoice %s with %d transactions for user %s", invoice.id, len(transactions), user_id)


def delete_invoice(db, user_id, invoice_id):
    try:
        with db.atomic():
            db.execute("DELETE FROM transactions WHERE invoice_id = ? AND user_id = ?", (invoice_id, user_id))
            result = db.execute("DELETE FROM invoices WHERE id = ? AND user_id = ?", (invoice_id, user_id))
    except DATABASE_ERRORS as exc:
        logger.error("Deleting invoice %s for user %s failed: %s", invoice_id, user_id, exc)
        raise StorageError("Could not delete the invoice.") from exc
    return result.rowcount


def delete_transaction(db, user_id, transaction_id):
    try:
        with db.atomic():
            result = db.execute("DELETE FROM transactions WHERE id = ? AND user_id = ?", (transaction_id, user_id))
    except DATABASE_ERRORS as exc:
        logger.error("Deleting transaction %s for user %s failed: %s", transaction_id, user_id, exc)
        raise StorageError("Could not delete the transaction.") from exc
    return result.rowcount


def fetch_system_transactions(db, user_id):
    rows = db.execute(
        "SELECT id, date, description, amount, account FROM system_transactions WHERE user_id = ? ORDER BY date DESC, id ASC",
        (user_id,),
    ).fetchall()
    return [
        SystemTransaction(
            id=row["id"],
            date=row["date"],
            description=row["description"],
            amount=row["amount"],
            account=row["account"] or "",
        )
        for row in rows
    ]


def save_system_transactions(db, user_id, system_transactions):
    if not system_transactions:
        return
    try:
        with db.atomic():
            _insert_system_transactions(db, user_id, system_transactions)
    except DATABASE_ERRORS as exc:
        logger.error("Saving system transactions for user %s failed: %s", user_id, exc)
        raise StorageError("Could not save the system transactions.") from exc


def stage_invoice(db, user_id, import_id, invoice, transactions, system_transactions=()):
    payload = (
        json.dumps({"invoice": invoice.to_dict(), "system_transactions": [_system_to_dict(s) for s in system_transactions]}),
        json.dumps([t.to_dict() for t in transactions]),
    )
    try:
        with db.atomic():
            db.execute(
                """
                INSERT INTO invoice_staging (import_id, user_id, created_at, invoice_json, transactions_json)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (import_id) DO UPDATE SET
                    invoice_json = excluded.invoice_json,
                    transactions_json = excluded.transactions_json
                WHERE invoice_staging.user_id = excluded.user_id
                """,
                (import_id, user_id, utc_now_text(), *payload),
            )
    except DATABASE_ERRORS as exc:
        logger.error("Staging invoice %s for user %s failed: %s", invoice.id, user_id, exc)
        raise StorageError("Could not keep the extracted items for review.") from exc


def _system_to_dict(system_transaction):
    return {
        "id": system_transaction.id,
        "date": system_transaction.date,
        "description": system_transaction.description,
        "amount": str(system_transaction.amount),
        "account": system_transaction.account,
    }


def fetch_staged_invoice(db, user_id, import_id):
    """Return ``(invoice, transactions, created_system_transactions)`` or ``None`` when expired."""
    if not import_id:
        return None
    row = db.execute(
        "SELECT invoice_json, transactions_json FROM invoice_staging WHERE import_id = ? AND user_id = ?",
        (import_id, user_id),
    ).fetchone()
    if row is None:
        return None
    header = json.loads(row["invoice_json"])
    return (
        InvoiceFile.from_dict(header["invoice"]),
        [Transaction.from_dict(item) for item in _load_json_list(row["transactions_json"])],
        [SystemTransaction(**item) for item in header.get("system_transactions") or []],
    )


def _delete_staged(db, user_id, import_id):
    db.execute("DELETE FROM invoice_staging WHERE import_id = ? AND user_id = ?", (import_id, user_id))


def clear_staged_invoice(db, user_id, import_id):
    try:
        with db.atomic():
            _delete_staged(db, user_id, import_id)
    except DATABASE_ERRORS as exc:
        logger.error("Clearing staged import %s for user %s failed: %s", import_id, user_id, exc)
        raise StorageError("Could not discard the staged import.") from exc


def cleanup_expired_staging(db, max_age_hours=STAGING_MAX_AGE_HOURS):
    cutoff = (datetime.now(timezone.utc) - timedelta(hours=max_age_hours)).isoformat(timespec="seconds")
    try:
        with db.atomic():
            db.execute("DELETE FROM invoice_staging WHERE created_at < ?", (cutoff,))
    except DATABASE_ERRORS as exc:
        logger.error("Removing expired staged imports failed: %s", exc)
        raise StorageError("Could not clean up expired imports.") from exc
