from decimal import Decimal

import pytest

from fin_reconcile.models import MatchStatus, SystemTransaction, Transaction
from fin_reconcile.reconciliation import (
    ReconciliationBatch,
    ReconciliationError,
    find_candidate,
    is_candidate,
    suggest_matches,
    within_window,
)


def item(tid, amount, purchase_date="2024-05-10", status=MatchStatus.UNMATCHED):
    return Transaction(
        id=tid,
        date=purchase_date,
        purchase_date=purchase_date,
        description=f"Item {tid}",
        amount=amount,
        invoice_id="inv-1",
        status=status,
        card_issuer="Santander",
    )


def system(sid, amount, date="2024-05-11"):
    return SystemTransaction(id=sid, date=date, description=f"System {sid}", amount=amount, account="Conta")


def test_within_window():
    assert within_window("2024-05-10", "2024-05-14")
    assert not within_window("2024-05-10", "2024-05-15")
    assert not within_window("", "2024-05-15")


def test_equal_amount_is_enough_regardless_of_date():
    assert is_candidate(item("a", "50.00"), system("s", "50.00", date="2023-01-01"))
    assert not is_candidate(item("a", "50.00"), system("s", "50.01", date="2024-05-10"))


def test_first_candidate_wins():
    candidates = [system("s1", "10.00"), system("s2", "50.00"), system("s3", "50.00")]
    assert find_candidate(item("a", "50.00"), candidates).id == "s2"
    assert find_candidate(item("a", "99.00"), candidates) is None


def test_same_candidate_can_be_offered_twice():
    candidates = [system("s1", "50.00")]
    suggestions = suggest_matches([item("a", "50.00"), item("b", "50.00")], candidates)
    assert [s.candidate.id for s in suggestions] == ["s1", "s1"]


def test_confirm_marks_item_matched():
    batch = ReconciliationBatch([item("a", "50.00")], [system("s1", "50.00")])
    confirmed = batch.confirm("a")

    assert confirmed.status == MatchStatus.MATCHED
    assert confirmed.matched_system_id == "s1"
    assert batch.progress == 100
    assert batch.is_complete


def test_confirm_without_candidate_fails():
    batch = ReconciliationBatch([item("a", "50.00")], [system("s1", "49.00")])
    with pytest.raises(ReconciliationError):
        batch.confirm("a")
    assert batch.matched_count == 0


def test_unknown_item_is_rejected():
    batch = ReconciliationBatch([item("a", "50.00")])
    with pytest.raises(ReconciliationError):
        batch.confirm("zzz")


def test_synthesize_creates_system_record_from_item():
    batch = ReconciliationBatch([item("a", "75.30")])
    created = batch.synthesize("a")

    assert created.amount == Decimal("75.30")
    assert created.date == "2024-05-10"
    assert created.account == "Santander"
    assert batch.created_system_transactions == [created]
    assert batch.transactions[0].matched_system_id == created.id
    assert batch.is_complete


def test_synthesize_on_matched_item_fails():
    batch = ReconciliationBatch([item("a", "10.00", status=MatchStatus.MATCHED)])
    with pytest.raises(ReconciliationError):
        batch.synthesize("a")
    assert batch.created_system_transactions == []


def test_finalize_is_all_or_nothing():
    batch = ReconciliationBatch([item("a", "10.00"), item("b", "20.00")], [system("s1", "10.00")])
    batch.confirm("a")

    assert batch.progress == 50
    with pytest.raises(ReconciliationError) as excinfo:
        batch.finalize()
    assert "1 of 2" in str(excinfo.value)

    batch.synthesize("b")
    finalized = batch.finalize()
    assert [t.status for t in finalized] == [MatchStatus.MATCHED, MatchStatus.MATCHED]


def test_empty_batch_is_never_complete():
    batch = ReconciliationBatch([])
    assert batch.progress == 0
    assert not batch.is_complete
    with pytest.raises(ReconciliationError):
        batch.finalize()


def test_progress_is_monotonic():
    batch = ReconciliationBatch([item(str(i), "1.00") for i in range(3)])
    seen = [batch.progress]
    for transaction in list(batch.transactions):
        batch.synthesize(transaction.id)
        seen.append(batch.progress)
    assert seen == sorted(seen)
    assert seen[-1] == 100


def test_only_equal_amount_is_surfaced():
    candidates = [system("s1", "150.00", date="2025-03-12"), system("s2", "99.00", date="2025-03-10")]
    suggestion = suggest_matches([item("a", "150.00", purchase_date="2025-03-10")], candidates)[0]
    assert suggestion.candidate.id == "s1"
