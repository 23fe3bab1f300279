"""Spending aggregation for the dashboard and reports views."""

from collections import namedtuple
from decimal import Decimal

from .cycles import cycle_sort_key, resolve_cycle
from .models import NO_SUBCATEGORY


DASHBOARD_CYCLES = 6
REPORT_CYCLES = 12
REPORT_TABLE_LIMIT = 100
ALL = "all"

CycleTotal = namedtuple("CycleTotal", ["label", "order_key", "total"])
SubcategoryTotal = namedtuple("SubcategoryTotal", ["name", "total"])
CategoryTotal = namedtuple("CategoryTotal", ["name", "total", "subcategories"])
Trend = namedtuple("Trend", ["percent", "is_up"])
ReportFilter = namedtuple("ReportFilter", ["cycle", "tag", "search"], defaults=[ALL, ALL, ""])


def sum_amounts(transactions):
    return sum((t.amount for t in transactions), Decimal("0.00"))


def has_tag(transaction, tag):
    return tag in (None, "", ALL) or tag in transaction.tags


def matches_filter(transaction, report_filter, invoice_dates):
    search = (report_filter.search or "").strip().lower()
    if search and search not in (transaction.description or "").lower():
        return False
    if not has_tag(transaction, report_filter.tag):
        return False
    if report_filter.cycle not in (None, "", ALL):
        return resolve_cycle(transaction, invoice_dates).label == report_filter.cycle
    return True


def filter_transactions(transactions, report_filter, invoice_dates):
    return [t for t in transactions if matches_filter(t, report_filter, invoice_dates)]


def cycle_totals(transactions, invoice_dates, limit=DASHBOARD_CYCLES, tag=ALL):
    grouped = {}
    for transaction in transactions:
        if not has_tag(transaction, tag):
            continue
        cycle = resolve_cycle(transaction, invoice_dates)
        order_key, total = grouped.get(cycle.label, (cycle.order_key, Decimal("0.00")))
        grouped[cycle.label] = (order_key, total + transaction.amount)

    ordered = sorted(
        (CycleTotal(label, order_key, total) for label, (order_key, total) in grouped.items()),
        key=lambda item: item.order_key,
    )
    return ordered[-limit:] if limit else ordered


def category_totals(transactions):
    grouped = {}
    for transaction in transactions:
        entry = grouped.setdefault(transaction.category, {"total": Decimal("0.00"), "sub": {}})
        entry["total"] += transaction.amount
        sub_name = transaction.subcategory or NO_SUBCATEGORY
        entry["sub"][sub_name] = entry["sub"].get(sub_name, Decimal("0.00")) + transaction.amount

    results = []
    for name, entry in grouped.items():
        subcategories = sorted(
            (SubcategoryTotal(sub_name, total) for sub_name, total in entry["sub"].items()),
            key=lambda item: item.total,
            reverse=True,
        )
        results.append(CategoryTotal(name, entry["total"], subcategories))
    return sorted(results, key=lambda item: item.total, reverse=True)


def variation(current, previous):
    if previous is None or previous <= 0:
        return 0.0
    return float((current - previous) / previous * 100)


def compute_trend(totals):
    if len(totals) < 2:
        return None
    current = totals[-1].total
    previous = totals[-2].total
    if previous == 0:
        return Trend(0.0, False)
    diff = float((current - previous) / previous * 100)
    return Trend(round(abs(diff), 1), diff > 0)


def share_of_total(value, total):
    if not total:
        return 0.0
    return float(value / total * 100)


def available_cycles(transactions, invoice_dates):
    labels = {resolve_cycle(t, invoice_dates).label for t in transactions}
    return sorted(labels, key=cycle_sort_key, reverse=True)


def dashboard_summary(transactions, invoice_dates):
    totals = cycle_totals(transactions, invoice_dates, limit=DASHBOARD_CYCLES)
    current_label = totals[-1].label if totals else ""
    current = [t for t in transactions if resolve_cycle(t, invoice_dates).label == current_label]
    return {
        "cycle_totals": totals,
        "current_cycle_label": current_label,
        "total_spend": sum_amounts(current),
        "category_breakdown": category_totals(current),
        "trend": compute_trend(totals),
        "chart_max": max((abs(item.total) for item in totals), default=Decimal("0")),
    }


def previous_cycle_total(transactions, invoice_dates, report_filter, cycles):
    if report_filter.cycle in (None, "", ALL) or report_filter.cycle not in cycles:
        return None
    position = cycles.index(report_filter.cycle)
    if position + 1 >= len(cycles):
        return None
    previous_label = cycles[position + 1]
    return sum_amounts(
        t
        for t in transactions
        if has_tag(t, report_filter.tag) and resolve_cycle(t, invoice_dates).label == previous_label
    )


def report_summary(transactions, invoice_dates, report_filter):
    filtered = filter_transactions(transactions, report_filter, invoice_dates)
    cycles = available_cycles(transactions, invoice_dates)
    total = sum_amounts(filtered)
    categories = category_totals(filtered)
    evolution = cycle_totals(transactions, invoice_dates, limit=REPORT_CYCLES, tag=report_filter.tag)
    return {
        "filtered": filtered,
        "table_rows": filtered[:REPORT_TABLE_LIMIT],
        "available_cycles": cycles,
        "cycle_totals": evolution,
        "chart_max": max((abs(item.total) for item in evolution), default=Decimal("0")),
        "category_totals": [
            {"category": item, "share": share_of_total(item.total, total)} for item in categories
        ],
        "total": total,
        "variation": variation(total, previous_cycle_total(transactions, invoice_dates, report_filter, cycles)),
    }
