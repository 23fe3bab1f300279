"""Payment cycle resolution.

A cycle is the calendar month a transaction is billed in. Invoice line items
are billed in the month their invoice was imported, which can differ from
the month of purchase; manual entries fall back to their own dates.
"""

from collections import namedtuple

from .models import parse_iso_date


MONTH_ABBREVIATIONS = ["Jan", "Fev", "Mar", "Abr", "Mai", "Jun", "Jul", "Ago", "Set", "Out", "Nov", "Dez"]
NO_CYCLE_LABEL = "No Cycle"

Cycle = namedtuple("Cycle", ["label", "order_key"])

NO_CYCLE = Cycle(NO_CYCLE_LABEL, 0)


def build_invoice_date_map(invoices):
    return {invoice.id: invoice.import_date for invoice in invoices if invoice.import_date}


def reference_date(transaction, invoice_dates):
    if transaction.invoice_id and invoice_dates.get(transaction.invoice_id):
        return invoice_dates[transaction.invoice_id]
    return transaction.purchase_date or transaction.date


def cycle_for_date(value):
    # Stored dates are bare YYYY-MM-DD strings, so the calendar month is read
    # straight off the date with no timezone conversion.
    parsed = parse_iso_date(value)
    if parsed is None:
        return NO_CYCLE
    month_index = parsed.month - 1
    return Cycle(
        f"{MONTH_ABBREVIATIONS[month_index]}/{parsed.year % 100:02d}",
        parsed.year * 100 + month_index,
    )


def resolve_cycle(transaction, invoice_dates):
    return cycle_for_date(reference_date(transaction, invoice_dates or {}))


def cycle_sort_key(label):
    if label == NO_CYCLE_LABEL:
        return 0
    month_text, _, year_text = (label or "").partition("/")
    if month_text not in MONTH_ABBREVIATIONS or not year_text.isdigit():
        return 0
    return (2000 + int(year_text)) * 100 + MONTH_ABBREVIATIONS.index(month_text)
