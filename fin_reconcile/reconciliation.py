"""Pairing of invoice line items with system transactions.

The matcher is deliberately loose: an exact amount match is enough, and only
the first candidate found is offered. Two invoice items with the same amount
can therefore be offered the same system record; no global assignment is
attempted.
"""

from collections import namedtuple

from .models import MatchStatus, SystemTransaction, new_id, parse_iso_date


MATCH_WINDOW_DAYS = 5

MatchSuggestion = namedtuple("MatchSuggestion", ["transaction", "candidate"])


class ReconciliationError(Exception):
    """Raised when a reconciliation action is not allowed in the current state."""


def within_window(first, second, days=MATCH_WINDOW_DAYS):
    first_date = parse_iso_date(first)
    second_date = parse_iso_date(second)
    if first_date is None or second_date is None:
        return False
    return abs((first_date - second_date).days) < days


def is_candidate(transaction, system_transaction):
    same_amount = system_transaction.amount == transaction.amount
    # The date window is an accepted alternative, never an extra requirement.
    return same_amount or (same_amount and within_window(system_transaction.date, transaction.purchase_date))


def find_candidate(transaction, system_transactions):
    for system_transaction in system_transactions:
        if is_candidate(transaction, system_transaction):
            return system_transaction
    return None


def suggest_matches(transactions, system_transactions):
    return [MatchSuggestion(t, find_candidate(t, system_transactions)) for t in transactions]


class ReconciliationBatch:
    def __init__(self, transactions, system_transactions=()):
        self.transactions = list(transactions)
        self.system_transactions = list(system_transactions)
        self.created_system_transactions = []

    def _get(self, transaction_id):
        for transaction in self.transactions:
            if transaction.id == transaction_id:
                return transaction
        raise ReconciliationError(f"Transaction {transaction_id} is not part of this reconciliation.")

    def suggestions(self):
        return suggest_matches(self.transactions, self.system_transactions)

    def confirm(self, transaction_id):
        transaction = self._get(transaction_id)
        if transaction.status == MatchStatus.MATCHED:
            return transaction
        candidate = find_candidate(transaction, self.system_transactions)
        if candidate is None:
            raise ReconciliationError("No system transaction matches this item.")
        transaction.status = MatchStatus.MATCHED
        transaction.matched_system_id = candidate.id
        return transaction

    def synthesize(self, transaction_id, account=""):
        transaction = self._get(transaction_id)
        if transaction.status == MatchStatus.MATCHED:
            raise ReconciliationError("This item is already reconciled.")
        system_transaction = SystemTransaction(
            id=new_id("sys"),
            date=transaction.purchase_date or transaction.date,
            description=transaction.description,
            amount=transaction.amount,
            account=account or transaction.card_issuer or "",
        )
        self.system_transactions.append(system_transaction)
        self.created_system_transactions.append(system_transaction)
        transaction.status = MatchStatus.MATCHED
        transaction.matched_system_id = system_transaction.id
        return system_transaction

    @property
    def matched_count(self):
        return sum(1 for t in self.transactions if t.status == MatchStatus.MATCHED)

    @property
    def progress(self):
        if not self.transactions:
            return 0
        return round(self.matched_count / len(self.transactions) * 100)

    @property
    def is_complete(self):
        return bool(self.transactions) and self.matched_count == len(self.transactions)

    def finalize(self):
        if not self.is_complete:
            raise ReconciliationError(
                f"Reconciliation incomplete: {self.matched_count} of {len(self.transactions)} items matched."
            )
        return list(self.transactions)
