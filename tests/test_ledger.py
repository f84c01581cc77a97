from types import SimpleNamespace

import pytest

from ledger import balance_delta, credit_debt, replay_balance
from models import TransactionType, WalletType


@pytest.mark.parametrize(
    "txn_type, expected",
    [
        (TransactionType.income, 500),
        (TransactionType.debt, 500),
        (TransactionType.expense, -500),
        (TransactionType.loan, -500),
    ],
)
def test_balance_delta_signs(txn_type, expected) -> None:
    assert balance_delta(txn_type, 500) == expected


def test_balance_delta_accepts_raw_type_values() -> None:
    assert balance_delta("expense", 120) == -120


def test_balance_delta_rejects_unknown_type() -> None:
    with pytest.raises(ValueError):
        balance_delta("refund", 10)


def test_replay_balance_matches_running_sum() -> None:
    entries = [
        SimpleNamespace(type=TransactionType.income, amount=1_000),
        SimpleNamespace(type=TransactionType.expense, amount=250),
        SimpleNamespace(type=TransactionType.debt, amount=300),
        SimpleNamespace(type=TransactionType.loan, amount=50),
    ]
    assert replay_balance(100, entries) == 1_100
    assert replay_balance(100, []) == 100


def test_credit_debt_only_counts_credit_wallets() -> None:
    credit = SimpleNamespace(type=WalletType.credit, initial_balance=5_000, balance=3_200)
    cash = SimpleNamespace(type=WalletType.available, initial_balance=5_000, balance=3_200)
    assert credit_debt(credit) == 1_800
    assert credit_debt(cash) == 0
