from typing import Iterable, Protocol

from models import TransactionType, Wallet, WalletType

INFLOW_TYPES = frozenset({TransactionType.income, TransactionType.debt})
OUTFLOW_TYPES = frozenset({TransactionType.expense, TransactionType.loan})


class _Entry(Protocol):
    type: TransactionType
    amount: int


def balance_delta(txn_type: TransactionType, amount: int) -> int:
    """Signed change a transaction of ``txn_type`` makes to its wallet balance.

    Income and debt (money borrowed) flow in; expense and loan (money lent)
    flow out. Every balance write in the application goes through here.
    """
    txn_type = TransactionType(txn_type)
    if txn_type in INFLOW_TYPES:
        return amount
    if txn_type in OUTFLOW_TYPES:
        return -amount
    raise ValueError(f"Unsupported transaction type: {txn_type}")


def replay_balance(initial_balance: int, entries: Iterable[_Entry]) -> int:
    balance = initial_balance
    for entry in entries:
        balance += balance_delta(entry.type, entry.amount)
    return balance


def credit_debt(wallet: Wallet) -> int:
    """Outstanding debt on a credit wallet: limit minus remaining credit."""
    if wallet.type != WalletType.credit:
        return 0
    return wallet.initial_balance - wallet.balance
