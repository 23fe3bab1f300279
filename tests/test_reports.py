from decimal import Decimal

from fin_reconcile.models import Transaction
from fin_reconcile.reports import (
    REPORT_TABLE_LIMIT,
    ReportFilter,
    Trend,
    available_cycles,
    category_totals,
    compute_trend,
    cycle_totals,
    dashboard_summary,
    filter_transactions,
    report_summary,
    share_of_total,
    variation,
)


def tx(tid, purchase_date, amount, category="Outros", subcategory="", tags=None, description="Compra"):
    return Transaction(
        id=tid,
        date=purchase_date,
        purchase_date=purchase_date,
        description=description,
        amount=amount,
        category=category,
        subcategory=subcategory,
        tags=tags if tags is not None else ["Despesas Pessoais"],
    )


def monthly_transactions(months):
    return [tx(f"t-{month}", f"2024-{month:02d}-10", "100.00") for month in range(1, months + 1)]


def test_cycle_totals_sorted_and_limited():
    transactions = monthly_transactions(8) + [tx("extra", "2024-08-20", "50.00")]

    totals = cycle_totals(transactions, {}, limit=6)
    assert [item.label for item in totals] == ["Mar/24", "Abr/24", "Mai/24", "Jun/24", "Jul/24", "Ago/24"]
    assert totals[-1].total == Decimal("150.00")


def test_cycle_totals_respects_tag():
    transactions = [
        tx("a", "2024-01-05", "10.00", tags=["Empresa"]),
        tx("b", "2024-01-06", "20.00"),
    ]
    totals = cycle_totals(transactions, {}, tag="Empresa")
    assert totals[0].total == Decimal("10.00")


def test_compute_trend():
    totals = cycle_totals([tx("a", "2024-01-05", "100.00"), tx("b", "2024-02-05", "150.00")], {})
    assert compute_trend(totals) == Trend(50.0, True)

    totals = cycle_totals([tx("a", "2024-01-05", "200.00"), tx("b", "2024-02-05", "150.00")], {})
    assert compute_trend(totals) == Trend(25.0, False)

    totals = cycle_totals([tx("a", "2024-01-05", "0.00"), tx("b", "2024-02-05", "150.00")], {})
    assert compute_trend(totals) == Trend(0.0, False)

    assert compute_trend(cycle_totals([tx("a", "2024-01-05", "10.00")], {})) is None


def test_variation_guards_against_non_positive_previous():
    assert variation(Decimal("150"), Decimal("100")) == 50.0
    assert variation(Decimal("150"), Decimal("0")) == 0.0
    assert variation(Decimal("150"), Decimal("-10")) == 0.0
    assert variation(Decimal("150"), None) == 0.0


def test_category_totals_with_subcategory_fallback():
    transactions = [
        tx("a", "2024-01-05", "30.00", category="Alimentação", subcategory="Mercado"),
        tx("b", "2024-01-06", "20.00", category="Alimentação"),
        tx("c", "2024-01-07", "100.00", category="Transporte", subcategory="Combustível"),
    ]
    totals = category_totals(transactions)

    assert [item.name for item in totals] == ["Transporte", "Alimentação"]
    food = totals[1]
    assert food.total == Decimal("50.00")
    assert [(sub.name, sub.total) for sub in food.subcategories] == [
        ("Mercado", Decimal("30.00")),
        ("Sem Subcategoria", Decimal("20.00")),
    ]


def test_share_of_total():
    assert share_of_total(Decimal("25"), Decimal("100")) == 25.0
    assert share_of_total(Decimal("25"), Decimal("0")) == 0.0


def test_filter_by_search_tag_and_cycle():
    transactions = [
        tx("a", "2024-01-05", "10.00", description="UBER TRIP"),
        tx("b", "2024-02-05", "20.00", description="Uber Eats", tags=["Empresa"]),
        tx("c", "2024-02-06", "30.00", description="Padaria"),
    ]
    assert [t.id for t in filter_transactions(transactions, ReportFilter(search="uber"), {})] == ["a", "b"]
    assert [t.id for t in filter_transactions(transactions, ReportFilter(tag="Empresa"), {})] == ["b"]
    assert [t.id for t in filter_transactions(transactions, ReportFilter(cycle="Fev/24"), {})] == ["b", "c"]
    assert filter_transactions(transactions, ReportFilter(), {}) == transactions


def test_available_cycles_newest_first():
    transactions = [tx("a", "2023-12-05", "1"), tx("b", "2024-02-05", "1"), tx("c", "", "1")]
    assert available_cycles(transactions, {}) == ["Fev/24", "Dez/23", "No Cycle"]


def test_dashboard_summary_uses_latest_cycle():
    transactions = [
        tx("a", "2024-01-05", "100.00", category="Alimentação"),
        tx("b", "2024-02-05", "120.00", category="Alimentação"),
        tx("c", "2024-02-08", "30.00", category="Transporte"),
    ]
    summary = dashboard_summary(transactions, {})

    assert summary["current_cycle_label"] == "Fev/24"
    assert summary["total_spend"] == Decimal("150.00")
    assert summary["trend"] == Trend(50.0, True)
    assert summary["chart_max"] == Decimal("150.00")
    assert [item.name for item in summary["category_breakdown"]] == ["Alimentação", "Transporte"]


def test_dashboard_summary_without_data():
    summary = dashboard_summary([], {})
    assert summary["cycle_totals"] == []
    assert summary["current_cycle_label"] == ""
    assert summary["total_spend"] == Decimal("0.00")
    assert summary["trend"] is None


def test_report_summary_limits_table_and_compares_previous_cycle():
    transactions = [tx(f"m-{i}", "2024-03-01", "1.00") for i in range(150)]
    transactions += [tx("f-1", "2024-02-01", "100.00")]

    summary = report_summary(transactions, {}, ReportFilter(cycle="Mar/24"))
    assert len(summary["filtered"]) == 150
    assert len(summary["table_rows"]) == REPORT_TABLE_LIMIT
    assert summary["total"] == Decimal("150.00")
    assert summary["variation"] == 50.0
    assert summary["available_cycles"] == ["Mar/24", "Fev/24"]
    assert summary["category_totals"][0]["share"] == 100.0


def test_report_summary_without_previous_cycle_has_no_variation():
    transactions = [tx("a", "2024-03-01", "10.00")]
    summary = report_summary(transactions, {}, ReportFilter(cycle="Mar/24"))
    assert summary["variation"] == 0.0

    summary = report_summary(transactions, {}, ReportFilter())
    assert summary["variation"] == 0.0


def test_category_totals_sum_to_grand_total():
    transactions = [
        tx("a", "2024-01-05", "10.10", category="Alimentação"),
        tx("b", "2024-01-06", "20.20", category="Transporte", subcategory="Uber/99"),
        tx("c", "2024-01-07", "-5.00", category="Alimentação", subcategory="Mercado"),
        tx("d", "2024-02-07", "7.77", category="Outros", description="Farmácia"),
    ]
    filtered = filter_transactions(transactions, ReportFilter(cycle="Jan/24"), {})
    totals = category_totals(filtered)

    assert sum((item.total for item in totals), Decimal("0")) == sum((t.amount for t in filtered), Decimal("0"))
    for item in totals:
        assert sum((sub.total for sub in item.subcategories), Decimal("0")) == item.total


def test_trend_from_one_thousand_to_twelve_hundred():
    totals = cycle_totals([tx("a", "2025-01-05", "1000.00"), tx("b", "2025-02-05", "1200.00")], {})
    assert compute_trend(totals) == Trend(20.0, True)
