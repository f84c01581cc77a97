from __future__ import annotations

import logging
from typing import Iterable, Optional, Protocol

from sqlalchemy import case, delete, func, select
from sqlalchemy.orm import Session, selectinload

from config import get_settings
from database import run_atomic
from errors import InvalidArgument, NotFound, Unauthorized
from ledger import balance_delta, credit_debt, replay_balance
from models import (
    Category,
    CategoryType,
    Tag,
    Transaction,
    TransactionType,
    UserProfile,
    Wallet,
    WalletType,
)
from periods import Period
from schemas import (
    CategorizeCategory,
    CategorizeRequest,
    CategorizeResponse,
    CategorizeTransaction,
    CategoryIn,
    CategoryPatch,
    ProfilePatch,
    TransactionIn,
    TransactionPatch,
    TransferIn,
    TransferPatch,
    WalletIn,
    WalletOrderIn,
    WalletPatch,
)

logger = logging.getLogger(__name__)

DEFAULT_WALLET_NAME = "Cash"
UNKNOWN_CATEGORY = "Unknown"

DEFAULT_CATEGORIES: tuple[dict, ...] = (
    {
        "name": "Food & Drink",
        "type": CategoryType.expense,
        "icon": "Utensils",
        "color": "#ef4444",
        "children": (
            ("Restaurants", "Utensils", "#f87171"),
            ("Coffee", "Coffee", "#fb923c"),
            ("Groceries", "ShoppingBasket", "#bef264"),
        ),
    },
    {
        "name": "Shopping",
        "type": CategoryType.expense,
        "icon": "ShoppingBag",
        "color": "#3b82f6",
        "children": (
            ("Clothing", "Shirt", "#60a5fa"),
            ("Electronics", "Smartphone", "#93c5fd"),
            ("Beauty", "Sparkles", "#f472b6"),
        ),
    },
    {
        "name": "Transport",
        "type": CategoryType.expense,
        "icon": "Bus",
        "color": "#f59e0b",
        "children": (
            ("Fuel", "Fuel", "#fbbf24"),
            ("Maintenance", "Wrench", "#d97706"),
            ("Taxi", "Car", "#fcd34d"),
        ),
    },
    {
        "name": "Home",
        "type": CategoryType.expense,
        "icon": "Home",
        "color": "#10b981",
        "children": (
            ("Electricity", "Zap", "#34d399"),
            ("Water", "Droplets", "#6ee7b7"),
            ("Internet & TV", "Wifi", "#10b981"),
        ),
    },
    {
        "name": "Entertainment",
        "type": CategoryType.expense,
        "icon": "Gamepad2",
        "color": "#8b5cf6",
        "children": (
            ("Movies", "Film", "#a78bfa"),
            ("Travel", "Plane", "#c4b5fd"),
        ),
    },
    {
        "name": "Other Expense",
        "type": CategoryType.expense,
        "icon": "CircleEllipsis",
        "color": "#64748b",
        "children": (),
    },
    {
        "name": "Income",
        "type": CategoryType.income,
        "icon": "Wallet",
        "color": "#22c55e",
        "children": (
            ("Salary", "Banknote", "#4ade80"),
            ("Bonus", "Gift", "#86efac"),
            ("Interest", "PiggyBank", "#16a34a"),
        ),
    },
    {
        "name": "Other Income",
        "type": CategoryType.income,
        "icon": "CircleEllipsis",
        "color": "#15803d",
        "children": (),
    },
)


def _owned(record, user_id: str, label: str):
    if record is None:
        raise NotFound(f"{label} not found")
    if record.user_id != user_id:
        raise Unauthorized(f"{label} belongs to another user")
    return record


class TagService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Tag]:
        stmt = select(Tag).where(Tag.user_id == self.user_id).order_by(Tag.name)
        return self.session.scalars(stmt).all()

    def get_or_create(self, name: str) -> Tag:
        clean_name = name.strip()
        if not clean_name:
            raise InvalidArgument("Tag name cannot be empty")

        stmt = select(Tag).where(
            Tag.user_id == self.user_id, func.lower(Tag.name) == clean_name.lower()
        )
        existing = self.session.scalar(stmt)
        if existing:
            return existing

        tag = Tag(user_id=self.user_id, name=clean_name)
        self.session.add(tag)
        self.session.flush()
        return tag

    def resolve(self, names: Iterable[str]) -> list[Tag]:
        tags: list[Tag] = []
        tag_ids: set[int] = set()
        for name in names:
            tag = self.get_or_create(name)
            if tag.id not in tag_ids:
                tags.append(tag)
                tag_ids.add(tag.id)
        return tags


class WalletService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Wallet]:
        stmt = (
            select(Wallet)
            .where(Wallet.user_id == self.user_id)
            .order_by(Wallet.type, Wallet.order, Wallet.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, wallet_id: int) -> Wallet:
        return _owned(self.session.get(Wallet, wallet_id), self.user_id, "Wallet")

    def _next_order(self, wallet_type: WalletType) -> int:
        current = self.session.execute(
            select(func.coalesce(func.max(Wallet.order), 0)).where(
                Wallet.user_id == self.user_id, Wallet.type == wallet_type
            )
        ).scalar_one()
        return int(current or 0) + 1

    def _compact(self, wallet_type: WalletType) -> None:
        stmt = (
            select(Wallet)
            .where(Wallet.user_id == self.user_id, Wallet.type == wallet_type)
            .order_by(Wallet.order, Wallet.id)
        )
        for position, wallet in enumerate(self.session.scalars(stmt).all(), start=1):
            if wallet.order != position:
                wallet.order = position

    def _insert(self, data: WalletIn) -> Wallet:
        wallet = Wallet(
            user_id=self.user_id,
            name=data.name.strip(),
            balance=data.initial_balance,
            initial_balance=data.initial_balance,
            currency=(data.currency or get_settings().default_currency).upper(),
            type=data.type,
            order=self._next_order(data.type),
            icon=data.icon,
            color=data.color,
        )
        self.session.add(wallet)
        self.session.flush()
        return wallet

    def create(self, data: WalletIn) -> Wallet:
        wallet = run_atomic(
            self.session, lambda session: self._insert(data), label="wallet_create"
        )
        logger.info(
            f"wallet_create: user={self.user_id} wallet={wallet.id} "
            f"type={wallet.type.value} order={wallet.order}"
        )
        return wallet

    def create_default(self) -> Optional[Wallet]:
        """Give a brand-new user a "Cash" wallet; no-op once any wallet exists."""

        def work(session: Session) -> Optional[Wallet]:
            has_wallet = session.scalar(
                select(func.count(Wallet.id)).where(Wallet.user_id == self.user_id)
            )
            if has_wallet:
                return None
            return self._insert(
                WalletIn(name=DEFAULT_WALLET_NAME, icon="Wallet", color="#16a34a")
            )

        wallet = run_atomic(self.session, work, label="wallet_create_default")
        if wallet is not None:
            logger.info(f"wallet_create_default: user={self.user_id} wallet={wallet.id}")
        return wallet

    def update(self, wallet_id: int, patch: WalletPatch) -> Wallet:
        fields = patch.model_dump(exclude_unset=True)

        def work(session: Session) -> Wallet:
            wallet = self.get(wallet_id)
            if fields.get("name") is not None:
                wallet.name = fields["name"].strip()
            if fields.get("currency") is not None:
                wallet.currency = fields["currency"].upper()
            for key in ("icon", "color"):
                if key in fields:
                    setattr(wallet, key, fields[key])
            if fields.get("initial_balance") is not None:
                # The anchor moves, so the balance built on top of it moves too.
                shift = fields["initial_balance"] - wallet.initial_balance
                wallet.initial_balance = fields["initial_balance"]
                wallet.balance += shift
            new_type = fields.get("type")
            if new_type is not None and new_type != wallet.type:
                old_type = wallet.type
                new_order = self._next_order(new_type)
                wallet.type = new_type
                wallet.order = new_order
                session.flush()
                self._compact(old_type)
            session.flush()
            return wallet

        wallet = run_atomic(self.session, work, label="wallet_update")
        logger.info(
            f"wallet_update: user={self.user_id} wallet={wallet.id} "
            f"fields={sorted(fields)}"
        )
        return wallet

    def delete(self, wallet_id: int) -> None:
        def work(session: Session) -> None:
            wallet = self.get(wallet_id)
            in_use = session.execute(
                select(func.count(Transaction.id)).where(
                    Transaction.wallet_id == wallet.id
                )
            ).scalar_one()
            if in_use:
                raise InvalidArgument(
                    f"Wallet still has {in_use} transactions; delete or move them first"
                )
            wallet_type = wallet.type
            profile = session.get(UserProfile, self.user_id)
            if profile is not None and profile.default_wallet_id == wallet.id:
                profile.default_wallet_id = None
            session.delete(wallet)
            session.flush()
            self._compact(wallet_type)
            session.flush()

        run_atomic(self.session, work, label="wallet_delete")
        logger.info(f"wallet_delete: user={self.user_id} wallet={wallet_id}")

    def reorder(self, updates: list[WalletOrderIn]) -> None:
        """Write new display positions for a batch of wallets in one unit.

        Callers reorder one wallet type at a time; mixing available and credit
        wallets in a single batch is not checked here.
        """
        if not updates:
            return
        ids = [item.id for item in updates]
        if len(set(ids)) != len(ids):
            raise InvalidArgument("Each wallet may appear only once in a reorder")

        def work(session: Session) -> None:
            for item in updates:
                wallet = self.get(item.id)
                wallet.order = item.order
            session.flush()

        run_atomic(self.session, work, label="wallet_reorder")
        logger.info(f"wallet_reorder: user={self.user_id} wallets={ids}")

    def recalculate_all(self) -> int:
        """Rebuild every wallet balance from its initial balance and history.

        Debt and loan entries count exactly as they do for live mutations,
        so a recalculation never disagrees with the running balance.
        Returns the number of wallets recalculated.
        """

        def work(session: Session) -> tuple[int, int]:
            wallets = session.scalars(
                select(Wallet).where(Wallet.user_id == self.user_id)
            ).all()
            rows = session.execute(
                select(Transaction.wallet_id, Transaction.type, Transaction.amount)
                .where(Transaction.user_id == self.user_id)
                .order_by(Transaction.id)
            ).all()
            history: dict[int, list] = {}
            for row in rows:
                history.setdefault(row.wallet_id, []).append(row)
            corrected = 0
            for wallet in wallets:
                rebuilt = replay_balance(
                    wallet.initial_balance, history.get(wallet.id, [])
                )
                if wallet.balance != rebuilt:
                    wallet.balance = rebuilt
                    corrected += 1
            session.flush()
            return len(wallets), corrected

        count, corrected = run_atomic(self.session, work, label="wallet_recalculate")
        logger.info(
            f"wallet_recalculate: user={self.user_id} wallets={count} "
            f"corrected={corrected}"
        )
        return count

    def totals(self) -> dict[str, int]:
        available = 0
        debt = 0
        for wallet in self.list_all():
            if wallet.type == WalletType.credit:
                debt += credit_debt(wallet)
            else:
                available += wallet.balance
        return {"available": available, "credit_debt": debt, "net": available - debt}


class TransactionService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, transaction_id: int) -> Transaction:
        return _owned(
            self.session.get(Transaction, transaction_id), self.user_id, "Transaction"
        )

    def list_recent(self, limit: Optional[int] = None) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(selectinload(Transaction.tags))
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return self.session.scalars(stmt).all()

    def list_for_wallet(self, wallet_id: int) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(selectinload(Transaction.tags))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.wallet_id == wallet_id,
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        return self.session.scalars(stmt).all()

    def _wallet(self, wallet_id: int) -> Wallet:
        return _owned(self.session.get(Wallet, wallet_id), self.user_id, "Wallet")

    def _check_category(
        self,
        category_id: Optional[int],
        txn_type: TransactionType,
        *,
        allow_dangling: bool = False,
    ) -> None:
        if category_id is None:
            return
        category = self.session.get(Category, category_id)
        if category is None and allow_dangling:
            return
        category = _owned(category, self.user_id, "Category")
        if category.type.value != TransactionType(txn_type).value:
            raise InvalidArgument("Category type mismatch")

    def create(self, data: TransactionIn) -> Transaction:
        if data.amount <= 0:
            raise InvalidArgument("Amount must be positive")
        tags = TagService(self.session, self.user_id)

        def work(session: Session) -> tuple[Transaction, int]:
            wallet = self._wallet(data.wallet_id)
            self._check_category(data.category_id, data.type)
            delta = balance_delta(data.type, data.amount)
            wallet.balance += delta
            txn = Transaction(
                user_id=self.user_id,
                wallet_id=wallet.id,
                category_id=data.category_id,
                amount=data.amount,
                date=data.date,
                type=data.type,
                note=data.note,
                exclude_from_report=data.exclude_from_report,
            )
            txn.tags = tags.resolve(data.tags)
            session.add(txn)
            session.flush()
            return txn, delta

        txn, delta = run_atomic(self.session, work, label="ledger_create")
        logger.info(
            f"ledger_create: user={self.user_id} txn={txn.id} "
            f"wallet={txn.wallet_id} delta={delta}"
        )
        return txn

    def update(self, transaction_id: int, patch: TransactionPatch) -> Transaction:
        fields = patch.model_dump(exclude_unset=True)
        for key in ("wallet_id", "amount", "date", "type", "exclude_from_report"):
            if key in fields and fields[key] is None:
                raise InvalidArgument(f"{key} cannot be cleared")
        tags = TagService(self.session, self.user_id)

        def work(session: Session) -> Transaction:
            txn = self.get(transaction_id)
            if txn.is_transfer:
                raise InvalidArgument("Transfer legs are changed through update_transfer")
            old_wallet = self._wallet(txn.wallet_id)
            new_wallet = old_wallet
            if fields.get("wallet_id", txn.wallet_id) != txn.wallet_id:
                new_wallet = self._wallet(fields["wallet_id"])
            new_type = TransactionType(fields.get("type", txn.type))
            new_amount = fields.get("amount", txn.amount)
            if "category_id" in fields or "type" in fields:
                self._check_category(
                    fields.get("category_id", txn.category_id),
                    new_type,
                    allow_dangling="category_id" not in fields,
                )

            # Take the old effect off the old wallet, put the new one on the
            # (possibly different) new wallet.
            old_wallet.balance -= balance_delta(txn.type, txn.amount)
            new_wallet.balance += balance_delta(new_type, new_amount)

            txn.wallet_id = new_wallet.id
            txn.type = new_type
            txn.amount = new_amount
            for key in ("category_id", "date", "note", "exclude_from_report"):
                if key in fields:
                    setattr(txn, key, fields[key])
            if "tags" in fields:
                txn.tags = tags.resolve(fields["tags"] or [])
            session.flush()
            return txn

        txn = run_atomic(self.session, work, label="ledger_update")
        logger.info(
            f"ledger_update: user={self.user_id} txn={txn.id} fields={sorted(fields)}"
        )
        return txn

    def delete(self, transaction_id: int) -> None:
        def work(session: Session) -> None:
            txn = self.get(transaction_id)
            if txn.is_transfer:
                raise InvalidArgument("Transfer legs are removed through delete_transfer")
            wallet = self._wallet(txn.wallet_id)
            wallet.balance -= balance_delta(txn.type, txn.amount)
            session.delete(txn)
            session.flush()

        run_atomic(self.session, work, label="ledger_delete")
        logger.info(f"ledger_delete: user={self.user_id} txn={transaction_id}")

    def transfer(self, data: TransferIn) -> tuple[Transaction, Transaction]:
        """Move money between two wallets as a linked expense/income pair."""
        if data.from_wallet_id == data.to_wallet_id:
            raise InvalidArgument("Cannot transfer to the same wallet")
        if data.amount <= 0:
            raise InvalidArgument("Transfer amount must be positive")

        def work(session: Session) -> tuple[Transaction, Transaction]:
            source = self._wallet(data.from_wallet_id)
            target = self._wallet(data.to_wallet_id)
            source.balance += balance_delta(TransactionType.expense, data.amount)
            target.balance += balance_delta(TransactionType.income, data.amount)
            outgoing = Transaction(
                user_id=self.user_id,
                wallet_id=source.id,
                amount=data.amount,
                date=data.date,
                type=TransactionType.expense,
                note=data.note or f"Transfer to {target.name}",
                is_transfer=True,
                to_wallet_id=target.id,
                exclude_from_report=True,
            )
            incoming = Transaction(
                user_id=self.user_id,
                wallet_id=target.id,
                amount=data.amount,
                date=data.date,
                type=TransactionType.income,
                note=data.note or f"Transfer from {source.name}",
                is_transfer=True,
                to_wallet_id=source.id,
                exclude_from_report=True,
            )
            session.add_all([outgoing, incoming])
            session.flush()
            outgoing.linked_transaction_id = incoming.id
            incoming.linked_transaction_id = outgoing.id
            session.flush()
            return outgoing, incoming

        outgoing, incoming = run_atomic(self.session, work, label="ledger_transfer")
        logger.info(
            f"ledger_transfer: user={self.user_id} from={data.from_wallet_id} "
            f"to={data.to_wallet_id} amount={data.amount} "
            f"legs={outgoing.id},{incoming.id}"
        )
        return outgoing, incoming

    def _transfer_legs(
        self, transaction_id: int
    ) -> tuple[Transaction, Optional[Transaction]]:
        txn = self.get(transaction_id)
        if not txn.is_transfer:
            raise InvalidArgument("Transaction is not part of a transfer")
        linked = None
        if txn.linked_transaction_id is not None:
            linked = self.session.get(Transaction, txn.linked_transaction_id)
            if linked is not None and linked.user_id != self.user_id:
                raise Unauthorized("Linked transfer leg belongs to another user")
        return txn, linked

    def update_transfer(
        self, transaction_id: int, patch: TransferPatch
    ) -> tuple[Transaction, Transaction]:
        """Apply amount/date/note changes to both legs of a transfer."""
        fields = patch.model_dump(exclude_unset=True)
        if "amount" in fields and (fields["amount"] is None or fields["amount"] <= 0):
            raise InvalidArgument("Transfer amount must be positive")
        if "date" in fields and fields["date"] is None:
            raise InvalidArgument("date cannot be cleared")

        def work(session: Session) -> tuple[Transaction, Transaction]:
            txn, linked = self._transfer_legs(transaction_id)
            if linked is None:
                raise NotFound("Linked transfer leg not found")
            new_amount = fields.get("amount", txn.amount)
            for leg in (txn, linked):
                wallet = self._wallet(leg.wallet_id)
                wallet.balance -= balance_delta(leg.type, leg.amount)
                wallet.balance += balance_delta(leg.type, new_amount)
                leg.amount = new_amount
                if "date" in fields:
                    leg.date = fields["date"]
                if "note" in fields:
                    leg.note = fields["note"]
            session.flush()
            return txn, linked

        txn, linked = run_atomic(self.session, work, label="ledger_update_transfer")
        logger.info(
            f"ledger_update_transfer: user={self.user_id} legs={txn.id},{linked.id} "
            f"fields={sorted(fields)}"
        )
        return txn, linked

    def delete_transfer(self, transaction_id: int) -> int:
        """Remove both legs of a transfer and revert both wallets.

        A leg whose partner has already vanished is removed on its own.
        Returns the number of legs deleted.
        """

        def work(session: Session) -> int:
            txn, linked = self._transfer_legs(transaction_id)
            legs = [txn] if linked is None else [txn, linked]
            for leg in legs:
                wallet = self._wallet(leg.wallet_id)
                wallet.balance -= balance_delta(leg.type, leg.amount)
                session.delete(leg)
            session.flush()
            return len(legs)

        removed = run_atomic(self.session, work, label="ledger_delete_transfer")
        if removed == 1:
            logger.warning(
                f"ledger_delete_transfer: user={self.user_id} txn={transaction_id} "
                "orphan leg removed without partner"
            )
        else:
            logger.info(
                f"ledger_delete_transfer: user={self.user_id} txn={transaction_id}"
            )
        return removed


class CategoryService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self, category_type: Optional[CategoryType] = None) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.type, Category.order, Category.name)
        )
        if category_type is not None:
            stmt = stmt.where(Category.type == category_type)
        return self.session.scalars(stmt).all()

    def tree(self) -> list[Category]:
        stmt = (
            select(Category)
            .options(selectinload(Category.children))
            .where(Category.user_id == self.user_id, Category.parent_id.is_(None))
            .order_by(Category.type, Category.order, Category.name)
        )
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        return _owned(
            self.session.get(Category, category_id), self.user_id, "Category"
        )

    def create(self, data: CategoryIn) -> Category:
        category_type = data.type
        if data.parent_id is not None:
            parent = self.get(data.parent_id)
            if parent.parent_id is not None:
                raise InvalidArgument("Categories can only be nested one level deep")
            if parent.type != data.type:
                raise InvalidArgument("Subcategory type must match its parent")
            category_type = parent.type
        order = data.order
        if order is None:
            sibling_filter = (
                Category.parent_id.is_(None)
                if data.parent_id is None
                else Category.parent_id == data.parent_id
            )
            current = self.session.execute(
                select(func.coalesce(func.max(Category.order), -1)).where(
                    Category.user_id == self.user_id,
                    Category.type == category_type,
                    sibling_filter,
                )
            ).scalar_one()
            order = int(current) + 1
        category = Category(
            user_id=self.user_id,
            name=data.name.strip(),
            type=category_type,
            parent_id=data.parent_id,
            icon=data.icon,
            color=data.color,
            order=order,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, patch: CategoryPatch) -> Category:
        category = self.get(category_id)
        fields = patch.model_dump(exclude_unset=True)
        if fields.get("name") is not None:
            category.name = fields["name"].strip()
        if fields.get("order") is not None:
            category.order = fields["order"]
        for key in ("icon", "color"):
            if key in fields:
                setattr(category, key, fields[key])
        self.session.commit()
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> int:
        """Delete a category with its subcategories.

        Transactions keep their category ids and render as unknown.
        """
        category = self.get(category_id)
        removed = 1 + len(category.children)
        self.session.delete(category)
        self.session.commit()
        logger.info(
            f"category_delete: user={self.user_id} category={category_id} "
            f"removed={removed}"
        )
        return removed

    def seed_defaults(self) -> int:
        existing = self.session.scalar(
            select(func.count(Category.id)).where(Category.user_id == self.user_id)
        )
        if existing:
            return 0
        created = 0
        for order, group in enumerate(DEFAULT_CATEGORIES):
            parent = Category(
                user_id=self.user_id,
                name=group["name"],
                type=group["type"],
                icon=group["icon"],
                color=group["color"],
                order=order,
                is_default=True,
            )
            parent.children = [
                Category(
                    user_id=self.user_id,
                    name=name,
                    type=group["type"],
                    icon=icon,
                    color=color,
                    order=child_order,
                    is_default=True,
                )
                for child_order, (name, icon, color) in enumerate(group["children"])
            ]
            self.session.add(parent)
            created += 1 + len(parent.children)
        self.session.commit()
        logger.info(f"category_seed: user={self.user_id} created={created}")
        return created

    def reset(self) -> int:
        self.session.execute(
            delete(Category).where(
                Category.user_id == self.user_id, Category.parent_id.is_not(None)
            )
        )
        self.session.execute(delete(Category).where(Category.user_id == self.user_id))
        self.session.flush()
        self.session.expire_all()
        return self.seed_defaults()


class UserProfileService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def get(self) -> UserProfile:
        profile = self.session.get(UserProfile, self.user_id)
        if profile is None:
            raise NotFound("Profile not found")
        return profile

    def create_if_missing(self, email: str) -> UserProfile:
        profile = self.session.get(UserProfile, self.user_id)
        if profile is not None:
            return profile
        profile = UserProfile(id=self.user_id, email=email.strip())
        self.session.add(profile)
        self.session.commit()
        self.session.refresh(profile)
        return profile

    def update(self, patch: ProfilePatch) -> UserProfile:
        profile = self.get()
        fields = patch.model_dump(exclude_unset=True)
        if fields.get("default_wallet_id") is not None:
            WalletService(self.session, self.user_id).get(fields["default_wallet_id"])
        for key, value in fields.items():
            if key == "recent_transactions_limit" and value is None:
                continue
            setattr(profile, key, value)
        self.session.commit()
        self.session.refresh(profile)
        return profile

    def onboard(self, email: str) -> UserProfile:
        """First sign-in: profile, default categories and a "Cash" wallet."""
        profile = self.create_if_missing(email)
        CategoryService(self.session, self.user_id).seed_defaults()
        wallet = WalletService(self.session, self.user_id).create_default()
        if wallet is not None and profile.default_wallet_id is None:
            profile.default_wallet_id = wallet.id
            self.session.commit()
        logger.info(f"user_onboard: user={self.user_id}")
        return profile


class Categorizer(Protocol):
    def categorize(self, request: CategorizeRequest) -> CategorizeResponse: ...


class AutoCategorizeService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def build_request(self, limit: Optional[int] = None) -> CategorizeRequest:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.category_id.is_(None),
                Transaction.is_transfer.is_(False),
                Transaction.type.in_([TransactionType.income, TransactionType.expense]),
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        transactions = self.session.scalars(stmt).all()
        categories = CategoryService(self.session, self.user_id).list_all()
        return CategorizeRequest(
            transactions=[
                CategorizeTransaction(
                    id=str(txn.id), note=txn.note or "", amount=txn.amount, type=txn.type
                )
                for txn in transactions
            ],
            categories=[
                CategorizeCategory(id=str(cat.id), name=cat.name, type=cat.type)
                for cat in categories
            ],
        )

    @staticmethod
    def accepted_assignments(
        request: CategorizeRequest, response: CategorizeResponse
    ) -> dict[int, int]:
        """Keep only results naming a known transaction and a category of its type."""
        txn_types = {item.id: item.type.value for item in request.transactions}
        category_types = {item.id: item.type.value for item in request.categories}
        accepted: dict[int, int] = {}
        for result in response.results:
            txn_type = txn_types.get(result.id)
            category_type = category_types.get(result.category_id or "")
            if txn_type is None or category_type is None:
                continue
            if txn_type != category_type:
                continue
            accepted.setdefault(int(result.id), int(result.category_id))
        return accepted

    def run(self, categorizer: Categorizer, limit: Optional[int] = None) -> int:
        request = self.build_request(limit)
        if not request.transactions or not request.categories:
            return 0
        # The classifier call happens before, never inside, the retryable unit.
        response = categorizer.categorize(request)
        assignments = self.accepted_assignments(request, response)
        if not assignments:
            return 0

        def work(session: Session) -> int:
            applied = 0
            for txn_id, category_id in assignments.items():
                txn = session.get(Transaction, txn_id)
                if txn is None or txn.user_id != self.user_id:
                    continue
                if txn.category_id is not None or txn.is_transfer:
                    continue
                # Category or transaction may have changed since the request was built.
                category = session.get(Category, category_id)
                if category is None or category.user_id != self.user_id:
                    continue
                if category.type.value != txn.type.value:
                    continue
                txn.category_id = category_id
                applied += 1
            session.flush()
            return applied

        applied = run_atomic(self.session, work, label="auto_categorize")
        logger.info(
            f"auto_categorize: user={self.user_id} candidates="
            f"{len(request.transactions)} returned={len(response.results)} "
            f"applied={applied}"
        )
        return applied


class ReportService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def _filters(self, period: Period) -> list:
        return [
            Transaction.user_id == self.user_id,
            Transaction.exclude_from_report.is_(False),
            Transaction.date.between(period.start, period.end),
        ]

    def summary(self, period: Period) -> dict[str, int]:
        stmt = select(
            func.coalesce(
                func.sum(
                    case(
                        (Transaction.type == TransactionType.income, Transaction.amount),
                        else_=0,
                    )
                ),
                0,
            ).label("income"),
            func.coalesce(
                func.sum(
                    case(
                        (
                            Transaction.type == TransactionType.expense,
                            Transaction.amount,
                        ),
                        else_=0,
                    )
                ),
                0,
            ).label("expense"),
        ).where(*self._filters(period))
        row = self.session.execute(stmt).one()
        income = int(row.income)
        expense = int(row.expense)
        return {"income": income, "expense": expense, "net": income - expense}

    def category_breakdown(
        self, period: Period, txn_type: TransactionType = TransactionType.expense
    ) -> list[dict[str, object]]:
        stmt = (
            select(
                Transaction.category_id,
                func.sum(Transaction.amount).label("amount"),
                func.count(Transaction.id).label("count"),
            )
            .where(*self._filters(period), Transaction.type == txn_type)
            .group_by(Transaction.category_id)
        )
        names = {
            category.id: category.name
            for category in CategoryService(self.session, self.user_id).list_all()
        }
        # Keyed by id; every missing or deleted id shares the None bucket.
        grouped: dict[Optional[int], dict[str, object]] = {}
        for row in self.session.execute(stmt).all():
            category_id = row.category_id if row.category_id in names else None
            entry = grouped.setdefault(
                category_id,
                {
                    "category_id": category_id,
                    "category": names.get(category_id, UNKNOWN_CATEGORY),
                    "amount": 0,
                    "count": 0,
                },
            )
            entry["amount"] += int(row.amount or 0)
            entry["count"] += int(row.count or 0)
        items = [entry for entry in grouped.values() if entry["amount"] > 0]
        items.sort(key=lambda entry: (-entry["amount"], entry["category"]))
        return items

    def daily_trend(self, period: Period) -> list[dict[str, object]]:
        stmt = (
            select(
                Transaction.date,
                func.coalesce(
                    func.sum(
                        case(
                            (
                                Transaction.type == TransactionType.income,
                                Transaction.amount,
                            ),
                            else_=0,
                        )
                    ),
                    0,
                ).label("income"),
                func.coalesce(
                    func.sum(
                        case(
                            (
                                Transaction.type == TransactionType.expense,
                                Transaction.amount,
                            ),
                            else_=0,
                        )
                    ),
                    0,
                ).label("expense"),
            )
            .where(*self._filters(period))
            .group_by(Transaction.date)
            .order_by(Transaction.date)
        )
        return [
            {
                "date": row.date.isoformat(),
                "income": int(row.income),
                "expense": int(row.expense),
            }
            for row in self.session.execute(stmt).all()
        ]
