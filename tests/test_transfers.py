from datetime import date

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import InvalidArgument, NotFound, Unauthorized
from models import Transaction, TransactionType
from schemas import TransactionIn, TransferIn, TransferPatch, WalletIn
from services import TransactionService, WalletService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def _setup(session):
    wallets = WalletService(session, "alice")
    cash = wallets.create(WalletIn(name="Cash", initial_balance=1_000))
    bank = wallets.create(WalletIn(name="Bank", initial_balance=200))
    return cash, bank, TransactionService(session, "alice")


def _transfer(source, target, amount=300, **extra) -> TransferIn:
    return TransferIn(
        from_wallet_id=source.id,
        to_wallet_id=target.id,
        amount=amount,
        date=date(2025, 4, 10),
        **extra,
    )


def _transaction_count(session) -> int:
    return session.scalar(select(func.count(Transaction.id)))


def test_transfer_creates_linked_legs_and_moves_money() -> None:
    session = make_session()
    cash, bank, txns = _setup(session)

    outgoing, incoming = txns.transfer(_transfer(cash, bank))

    assert cash.balance == 700
    assert bank.balance == 500
    assert outgoing.type == TransactionType.expense
    assert incoming.type == TransactionType.income
    assert outgoing.linked_transaction_id == incoming.id
    assert incoming.linked_transaction_id == outgoing.id
    assert outgoing.to_wallet_id == bank.id
    assert incoming.to_wallet_id == cash.id
    assert outgoing.is_transfer and incoming.is_transfer
    assert outgoing.exclude_from_report and incoming.exclude_from_report
    assert outgoing.category_id is None
    assert outgoing.note == "Transfer to Bank"
    assert incoming.note == "Transfer from Cash"


def test_transfer_keeps_caller_note_on_both_legs() -> None:
    session = make_session()
    cash, bank, txns = _setup(session)

    outgoing, incoming = txns.transfer(_transfer(cash, bank, note="Rent pot"))

    assert outgoing.note == incoming.note == "Rent pot"


@pytest.mark.parametrize("amount", [0, -50])
def test_transfer_rejects_non_positive_amount(amount) -> None:
    session = make_session()
    cash, bank, txns = _setup(session)

    with pytest.raises(InvalidArgument):
        txns.transfer(_transfer(cash, bank, amount=amount))

    assert _transaction_count(session) == 0


def test_transfer_to_same_wallet_is_rejected() -> None:
    session = make_session()
    cash, _, txns = _setup(session)

    with pytest.raises(InvalidArgument):
        txns.transfer(_transfer(cash, cash))


def test_transfer_to_missing_wallet_changes_nothing() -> None:
    session = make_session()
    cash, _, txns = _setup(session)

    class Ghost:
        id = 9999

    with pytest.raises(NotFound):
        txns.transfer(_transfer(cash, Ghost))

    assert WalletService(session, "alice").get(cash.id).balance == 1_000
    assert _transaction_count(session) == 0


def test_transfer_to_foreign_wallet_is_rejected() -> None:
    session = make_session()
    cash, _, txns = _setup(session)
    foreign = WalletService(session, "bob").create(WalletIn(name="Bob"))

    with pytest.raises(Unauthorized):
        txns.transfer(_transfer(cash, foreign))

    assert WalletService(session, "alice").get(cash.id).balance == 1_000
    assert WalletService(session, "bob").get(foreign.id).balance == 0


def test_update_transfer_changes_both_legs() -> None:
    session = make_session()
    cash, bank, txns = _setup(session)
    outgoing, incoming = txns.transfer(_transfer(cash, bank))

    txns.update_transfer(
        incoming.id, TransferPatch(amount=450, date=date(2025, 4, 12), note="Moved")
    )

    assert cash.balance == 550
    assert bank.balance == 650
    for leg in (txns.get(outgoing.id), txns.get(incoming.id)):
        assert leg.amount == 450
        assert leg.date == date(2025, 4, 12)
        assert leg.note == "Moved"


def test_update_transfer_rejects_non_positive_amount() -> None:
    session = make_session()
    cash, bank, txns = _setup(session)
    outgoing, _ = txns.transfer(_transfer(cash, bank))

    with pytest.raises(InvalidArgument):
        txns.update_transfer(outgoing.id, TransferPatch(amount=0))

    assert cash.balance == 700


def test_delete_transfer_reverts_both_wallets() -> None:
    session = make_session()
    cash, bank, txns = _setup(session)
    outgoing, _ = txns.transfer(_transfer(cash, bank))

    removed = txns.delete_transfer(outgoing.id)

    assert removed == 2
    assert cash.balance == 1_000
    assert bank.balance == 200
    assert _transaction_count(session) == 0


def test_delete_transfer_removes_orphan_leg() -> None:
    session = make_session()
    cash, bank, txns = _setup(session)
    outgoing, incoming = txns.transfer(_transfer(cash, bank))
    session.delete(session.get(Transaction, incoming.id))
    session.commit()

    removed = txns.delete_transfer(outgoing.id)

    assert removed == 1
    assert cash.balance == 1_000
    assert _transaction_count(session) == 0


def test_transfer_operations_reject_plain_transactions() -> None:
    session = make_session()
    cash, bank, txns = _setup(session)
    plain = txns.create(
        TransactionIn(
            wallet_id=cash.id,
            date=date(2025, 4, 1),
            type=TransactionType.expense,
            amount=10,
        )
    )

    with pytest.raises(InvalidArgument):
        txns.update_transfer(plain.id, TransferPatch(amount=20))
    with pytest.raises(InvalidArgument):
        txns.delete_transfer(plain.id)
