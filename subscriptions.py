"""Live read-subscriptions over a user's collections.

A ``SnapshotStream`` polls the store and yields the whole collection each
time it changes. It never ends on its own; consumers stop iterating (or the
HTTP client disconnects) to unsubscribe. Iterating it again starts over and
yields the current snapshot immediately.
"""
import hashlib
import json
import logging
import time
from typing import Callable, Iterator, Optional

from sqlalchemy.orm import Session

from config import get_settings
from models import UserProfile
from schemas import CategoryOut, ProfileOut, TransactionOut, WalletOut
from services import CategoryService, TransactionService, WalletService

logger = logging.getLogger(__name__)

COLLECTIONS = ("wallets", "transactions", "categories", "profile")


def _snapshot(session: Session, user_id: str, collection: str, limit: Optional[int]):
    if collection == "wallets":
        return [
            WalletOut.model_validate(wallet).model_dump(mode="json")
            for wallet in WalletService(session, user_id).list_all()
        ]
    if collection == "transactions":
        return [
            TransactionOut.model_validate(txn).model_dump(mode="json")
            for txn in TransactionService(session, user_id).list_recent(limit)
        ]
    if collection == "categories":
        return [
            CategoryOut.model_validate(category).model_dump(mode="json")
            for category in CategoryService(session, user_id).list_all()
        ]
    profile = session.get(UserProfile, user_id)
    if profile is None:
        return None
    return ProfileOut.from_profile(profile).model_dump(mode="json")


def fingerprint(snapshot) -> str:
    payload = json.dumps(snapshot, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class SnapshotStream:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        user_id: str,
        collection: str,
        limit: Optional[int] = None,
        poll_secs: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if collection not in COLLECTIONS:
            raise ValueError(f"Unknown collection: {collection}")
        self.session_factory = session_factory
        self.user_id = user_id
        self.collection = collection
        self.limit = limit
        self.poll_secs = (
            poll_secs if poll_secs is not None else get_settings().stream_poll_secs
        )
        self.sleep = sleep

    def read(self):
        session = self.session_factory()
        try:
            return _snapshot(session, self.user_id, self.collection, self.limit)
        finally:
            session.close()

    def __iter__(self) -> Iterator:
        last: Optional[str] = None
        first = True
        while True:
            if not first:
                self.sleep(self.poll_secs)
            first = False
            snapshot = self.read()
            current = fingerprint(snapshot)
            if current == last:
                continue
            last = current
            logger.debug(
                f"subscription_emit: user={self.user_id} collection={self.collection}"
            )
            yield snapshot

    def sse(self) -> Iterator[str]:
        for snapshot in self:
            yield f"event: {self.collection}\ndata: {json.dumps(snapshot)}\n\n"
