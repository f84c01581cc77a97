from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.exc import StaleDataError

import services
from database import Base, run_atomic
from errors import ConflictExceeded, StoreUnavailable
from models import TransactionType, Wallet
from schemas import TransactionIn, WalletIn
from services import TransactionService, WalletService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def test_run_atomic_retries_after_conflicts() -> None:
    session = make_session()
    calls = []

    def work(_session):
        calls.append(1)
        if len(calls) < 3:
            raise StaleDataError("row changed underneath")
        return "done"

    assert run_atomic(session, work, max_attempts=5) == "done"
    assert len(calls) == 3


def test_run_atomic_gives_up_after_max_attempts() -> None:
    session = make_session()
    calls = []

    def work(_session):
        calls.append(1)
        raise StaleDataError("row changed underneath")

    with pytest.raises(ConflictExceeded):
        run_atomic(session, work, max_attempts=4)
    assert len(calls) == 4


def test_run_atomic_maps_store_failures() -> None:
    session = make_session()

    def work(_session):
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    with pytest.raises(StoreUnavailable):
        run_atomic(session, work)


def test_run_atomic_does_not_retry_other_errors() -> None:
    session = make_session()
    calls = []

    def work(_session):
        calls.append(1)
        raise KeyError("boom")

    with pytest.raises(KeyError):
        run_atomic(session, work, max_attempts=3)
    assert len(calls) == 1


def test_concurrent_balance_write_is_retried_not_lost(tmp_path, monkeypatch) -> None:
    engine = create_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = SessionLocal()
    wallet = WalletService(session, "alice").create(
        WalletIn(name="Cash", initial_balance=10_000)
    )

    original_delta = services.balance_delta
    interleaved = []

    def delta_with_competing_writer(txn_type, amount):
        if not interleaved:
            interleaved.append(1)
            other = SessionLocal()
            competing = other.get(Wallet, wallet.id)
            competing.balance += 1_000
            other.commit()
            other.close()
        return original_delta(txn_type, amount)

    monkeypatch.setattr(services, "balance_delta", delta_with_competing_writer)

    TransactionService(session, "alice").create(
        TransactionIn(
            wallet_id=wallet.id,
            date=date(2025, 5, 1),
            type=TransactionType.expense,
            amount=200,
        )
    )

    fresh = SessionLocal()
    assert fresh.get(Wallet, wallet.id).balance == 10_000 + 1_000 - 200
    assert len(TransactionService(fresh, "alice").list_recent()) == 1


def test_default_wallet_check_runs_inside_the_unit(monkeypatch) -> None:
    session = make_session()
    real_run_atomic = services.run_atomic

    def run_after_competing_onboard(session, work, **kwargs):
        # Another onboarding request commits its wallet first.
        session.add(
            Wallet(user_id="alice", name="Cash", balance=0, initial_balance=0, order=1)
        )
        session.commit()
        return real_run_atomic(session, work, **kwargs)

    monkeypatch.setattr(services, "run_atomic", run_after_competing_onboard)

    assert WalletService(session, "alice").create_default() is None
    monkeypatch.setattr(services, "run_atomic", real_run_atomic)
    assert len(WalletService(session, "alice").list_all()) == 1
