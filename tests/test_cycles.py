from datetime import datetime, timezone

from fin_reconcile.cycles import (
    NO_CYCLE,
    Cycle,
    build_invoice_date_map,
    cycle_for_date,
    cycle_sort_key,
    reference_date,
    resolve_cycle,
)
from fin_reconcile.models import InvoiceFile, Transaction


def make_transaction(purchase_date, invoice_id="manual-entry", date=""):
    return Transaction(
        id="t-1",
        date=date or purchase_date,
        purchase_date=purchase_date,
        description="Compra",
        amount="10.00",
        invoice_id=invoice_id,
    )


def make_invoice(upload_date, invoice_id="inv-1"):
    return InvoiceFile(id=invoice_id, name="fatura.pdf", size=10, upload_date=upload_date)


def test_cycle_label_and_order_key():
    assert cycle_for_date("2024-03-15") == Cycle("Mar/24", 202402)
    assert cycle_for_date("2023-12-01") == Cycle("Dez/23", 202311)
    assert cycle_for_date("2025-01-31") == Cycle("Jan/25", 202500)


def test_invalid_or_missing_date_falls_into_no_cycle():
    assert cycle_for_date("") == NO_CYCLE
    assert cycle_for_date(None) == NO_CYCLE
    assert cycle_for_date("not a date") == NO_CYCLE
    assert NO_CYCLE.order_key == 0


def test_invoice_import_date_wins_over_purchase_date():
    invoices = [make_invoice("2024-04-02T13:00:00+00:00")]
    transaction = make_transaction("2024-03-28", invoice_id="inv-1")

    invoice_dates = build_invoice_date_map(invoices)
    assert reference_date(transaction, invoice_dates) == "2024-04-02"
    assert resolve_cycle(transaction, invoice_dates).label == "Abr/24"


def test_import_date_is_taken_in_utc():
    # 23:30 in Brasília on March 31st is already April 1st in UTC.
    invoices = [make_invoice("2024-03-31T23:30:00-03:00")]
    transaction = make_transaction("2024-03-20", invoice_id="inv-1")

    assert resolve_cycle(transaction, build_invoice_date_map(invoices)).label == "Abr/24"


def test_import_date_accepts_zulu_suffix():
    invoice = make_invoice("2024-06-30T22:00:00Z")
    assert invoice.import_date == "2024-06-30"
    assert invoice.upload_date.tzinfo is not None


def test_manual_entries_use_purchase_date():
    transaction = make_transaction("2024-02-10")
    assert resolve_cycle(transaction, {}).label == "Fev/24"


def test_unknown_invoice_falls_back_to_purchase_then_date():
    transaction = make_transaction("2024-07-05", invoice_id="inv-missing")
    assert resolve_cycle(transaction, {}).label == "Jul/24"

    transaction = make_transaction("", invoice_id="inv-missing", date="2024-08-09")
    assert resolve_cycle(transaction, None).label == "Ago/24"


def test_build_invoice_date_map_skips_invoices_without_upload_date():
    invoices = [make_invoice(datetime(2024, 5, 1, 12, tzinfo=timezone.utc)), make_invoice(None, invoice_id="inv-2")]
    assert build_invoice_date_map(invoices) == {"inv-1": "2024-05-01"}


def test_cycle_sort_key_orders_labels_chronologically():
    labels = ["Jan/25", "No Cycle", "Dez/24", "Mar/24"]
    assert sorted(labels, key=cycle_sort_key) == ["No Cycle", "Mar/24", "Dez/24", "Jan/25"]
    assert cycle_sort_key("garbage") == 0


def test_purchase_late_in_month_billed_in_import_month():
    invoices = [make_invoice("2025-02-02T09:00:00+00:00")]
    transaction = make_transaction("2025-01-30", invoice_id="inv-1")
    assert resolve_cycle(transaction, build_invoice_date_map(invoices)).label == "Fev/25"


def test_december_sorts_before_january_of_next_year():
    assert cycle_for_date("2024-12-10").order_key == 202411
    assert cycle_for_date("2024-12-10").order_key < cycle_for_date("2025-01-10").order_key
