import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from schemas import WalletIn, WalletPatch
from services import UserProfileService, WalletService
from subscriptions import SnapshotStream, fingerprint


def make_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def test_stream_yields_initial_snapshot_then_only_changes() -> None:
    factory = make_factory()
    writer = factory()
    wallets = WalletService(writer, "alice")
    sleeps = []

    def fake_sleep(seconds):
        sleeps.append(seconds)
        if len(sleeps) == 1:
            wallets.create(WalletIn(name="Cash", initial_balance=100))
        elif len(sleeps) == 3:
            wallet = wallets.list_all()[0]
            wallets.update(wallet.id, WalletPatch(name="Pocket"))

    stream = iter(SnapshotStream(factory, "alice", "wallets", poll_secs=0.5, sleep=fake_sleep))

    assert next(stream) == []
    assert sleeps == []

    second = next(stream)
    assert [wallet["name"] for wallet in second] == ["Cash"]
    assert second[0]["balance"] == 100

    third = next(stream)
    assert [wallet["name"] for wallet in third] == ["Pocket"]
    assert sleeps == [0.5, 0.5, 0.5]


def test_stream_is_restartable_and_scoped_to_owner() -> None:
    factory = make_factory()
    writer = factory()
    WalletService(writer, "alice").create(WalletIn(name="Cash"))
    WalletService(writer, "bob").create(WalletIn(name="Bob"))
    stream = SnapshotStream(factory, "alice", "wallets", poll_secs=0, sleep=lambda _: None)

    first = next(iter(stream))
    again = next(iter(stream))

    assert first == again
    assert [wallet["name"] for wallet in first] == ["Cash"]


def test_profile_stream_starts_empty() -> None:
    factory = make_factory()
    profiles = UserProfileService(factory(), "alice")

    def fake_sleep(_seconds):
        profiles.create_if_missing("a@example.com")

    stream = iter(
        SnapshotStream(factory, "alice", "profile", poll_secs=0, sleep=fake_sleep)
    )

    assert next(stream) is None
    assert next(stream)["email"] == "a@example.com"


def test_sse_frames_name_the_collection() -> None:
    factory = make_factory()
    stream = SnapshotStream(factory, "alice", "transactions", limit=5, poll_secs=0)

    frame = next(stream.sse())

    assert frame == "event: transactions\ndata: []\n\n"


def test_unknown_collection_is_rejected() -> None:
    with pytest.raises(ValueError):
        SnapshotStream(make_factory(), "alice", "budgets")


def test_fingerprint_ignores_key_order() -> None:
    assert fingerprint({"a": 1, "b": 2}) == fingerprint({"b": 2, "a": 1})
    assert fingerprint([1]) != fingerprint([2])
