from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Literal, Optional, Sequence

from sqlalchemy import delete, func, inspect, select, update
from sqlalchemy.orm import Session, contains_eager, joinedload

from accounting import delta, expected_balance, format_cents, inverse_delta
from config import get_settings
from database import atomic
from errors import (
    Forbidden,
    InsufficientBalance,
    InvalidState,
    LedgerError,
    NotFound,
    ValidationFailed,
)
from models import (
    Account,
    Category,
    Transaction,
    TransactionKind,
    TransactionState,
    TransactionType,
    TransferDirection,
)
from schemas import (
    AccountIn,
    AccountUpdate,
    CategoryIn,
    CategoryUpdate,
    ImportCandidate,
    SortField,
    SortOrder,
    TransactionIn,
    TransactionUpdate,
    TransferIn,
)

logger = logging.getLogger(__name__)

TRANSFER_CATEGORY_COLOR = "#6366f1"
TRANSFER_CATEGORY_ICON = "fas fa-exchange-alt"


def get_current_user_id() -> int:
    return get_settings().default_user_id


def adjust_balance(session: Session, account_id: int, delta_cents: int) -> None:
    """Apply a signed delta to an account as a single SQL increment."""
    if delta_cents == 0:
        return
    session.execute(
        update(Account)
        .where(Account.id == account_id)
        .values(balance_cents=Account.balance_cents + delta_cents)
        .execution_options(synchronize_session=False)
    )


def withdraw(session: Session, account_id: int, amount_cents: int) -> None:
    """Decrement an account only if it still holds at least ``amount_cents``."""
    result = session.execute(
        update(Account)
        .where(Account.id == account_id, Account.balance_cents >= amount_cents)
        .values(balance_cents=Account.balance_cents - amount_cents)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InsufficientBalance("Insufficient balance in source account")


def owned_account(session: Session, user_id: int, account_id: int) -> Account:
    account = session.get(Account, account_id)
    if not account:
        raise NotFound("Account not found")
    if account.user_id != user_id:
        raise Forbidden("Account belongs to another user")
    return account


def owned_category(session: Session, user_id: int, category_id: int) -> Category:
    category = session.get(Category, category_id)
    if not category:
        raise NotFound("Category not found")
    if category.user_id != user_id:
        raise Forbidden("Category belongs to another user")
    return category


def owned_transaction(
    session: Session, user_id: int, transaction_id: int, *, refresh: bool = False
) -> Transaction:
    stmt = (
        select(Transaction)
        .options(joinedload(Transaction.account), joinedload(Transaction.category))
        .where(Transaction.id == transaction_id)
    )
    if refresh:
        stmt = stmt.execution_options(populate_existing=True)
    txn = session.scalar(stmt)
    if not txn:
        raise NotFound("Transaction not found")
    if txn.account.user_id != user_id:
        raise Forbidden("Transaction belongs to another user")
    return txn


def _archive_leg(
    session: Session, txn: Transaction, at: Optional[datetime] = None
) -> int:
    if txn.state == TransactionState.archived:
        return 0
    txn.state = TransactionState.archived
    txn.archived_at = at or datetime.utcnow()
    adjust_balance(session, txn.account_id, inverse_delta(txn.type, txn.amount_cents))
    return 1


def _restore_leg(session: Session, txn: Transaction) -> int:
    if txn.state == TransactionState.active:
        return 0
    txn.state = TransactionState.active
    txn.archived_at = None
    adjust_balance(session, txn.account_id, delta(txn.type, txn.amount_cents))
    return 1


def _delete_leg(session: Session, txn: Transaction) -> int:
    # A sibling left active by a partial archive still owes its balance back.
    if txn.state == TransactionState.active:
        adjust_balance(
            session, txn.account_id, inverse_delta(txn.type, txn.amount_cents)
        )
    session.delete(txn)
    session.flush()
    return 1


def _ensure_restorable(txn: Transaction) -> None:
    if txn.account.is_archived:
        raise InvalidState(
            f"Account '{txn.account.name}' is archived; restore the account first"
        )


@dataclass
class TransactionFilters:
    search: Optional[str] = None
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    type: Optional[TransactionType] = None
    kind: Optional[Literal["transaction", "transfer"]] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    amount_min_cents: Optional[int] = None
    amount_max_cents: Optional[int] = None


@dataclass
class TransactionPage:
    items: list[Transaction]
    total: int
    total_pages: int
    current_page: int
    limit: int


@dataclass
class TransferPair:
    outgoing: Transaction
    incoming: Optional[Transaction]


@dataclass
class ImportResult:
    imported_count: int = 0
    errors: list[str] = field(default_factory=list)


class BulkPolicy(str, Enum):
    skip = "skip"
    strict = "strict"


class AccountService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self, include_archived: bool = False) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.created_at.desc(), Account.id.desc())
            .execution_options(populate_existing=True)
        )
        if not include_archived:
            stmt = stmt.where(Account.archived_at.is_(None))
        return self.session.scalars(stmt).all()

    def archived(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id, Account.archived_at.isnot(None))
            .order_by(Account.archived_at.desc(), Account.id.desc())
        )
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        account = owned_account(self.session, self.user_id, account_id)
        self.session.refresh(account)
        return account

    def create(self, data: AccountIn) -> Account:
        with atomic(self.session):
            account = Account(
                user_id=self.user_id,
                name=data.name.strip(),
                type=data.type,
                balance_cents=data.initial_balance_cents,
                initial_balance_cents=data.initial_balance_cents,
            )
            self.session.add(account)
        self.session.refresh(account)
        logger.info(
            f"account_created: user_id={self.user_id} account_id={account.id} "
            f"initial_balance_cents={account.initial_balance_cents}"
        )
        return account

    def update(self, account_id: int, data: AccountUpdate) -> Account:
        with atomic(self.session):
            account = owned_account(self.session, self.user_id, account_id)
            if data.name is not None:
                account.name = data.name.strip()
            if data.type is not None:
                account.type = data.type
        return self.get(account_id)

    def _active_transaction_count(self, account_id: int) -> int:
        return int(
            self.session.execute(
                select(func.count(Transaction.id)).where(
                    Transaction.account_id == account_id,
                    Transaction.state == TransactionState.active,
                )
            ).scalar_one()
            or 0
        )

    def _transaction_count(self, account_id: int) -> int:
        return int(
            self.session.execute(
                select(func.count(Transaction.id)).where(
                    Transaction.account_id == account_id
                )
            ).scalar_one()
            or 0
        )

    def archive(self, account_id: int) -> None:
        with atomic(self.session):
            account = owned_account(self.session, self.user_id, account_id)
            if account.is_archived:
                return
            active = self._active_transaction_count(account.id)
            if active:
                raise InvalidState(
                    f"Cannot archive account with {active} active transactions; "
                    "archive them first"
                )
            account.archived_at = datetime.utcnow()
        logger.info(f"account_archived: user_id={self.user_id} account_id={account_id}")

    def restore(self, account_id: int) -> None:
        with atomic(self.session):
            account = owned_account(self.session, self.user_id, account_id)
            if not account.is_archived:
                raise InvalidState("Account is not archived")
            account.archived_at = None
        logger.info(f"account_restored: user_id={self.user_id} account_id={account_id}")

    def permanently_delete(self, account_id: int) -> None:
        with atomic(self.session):
            self._permanently_delete(owned_account(self.session, self.user_id, account_id))
        logger.info(f"account_deleted: user_id={self.user_id} account_id={account_id}")

    def _permanently_delete(self, account: Account) -> None:
        count = self._transaction_count(account.id)
        if count:
            raise InvalidState(
                f"Cannot permanently delete account with {count} transactions"
            )
        self.session.delete(account)
        self.session.flush()

    def restore_many(self, account_ids: Sequence[int]) -> int:
        restored = 0
        with atomic(self.session):
            accounts = self.session.scalars(
                select(Account).where(
                    Account.id.in_(set(account_ids)),
                    Account.user_id == self.user_id,
                    Account.archived_at.isnot(None),
                )
            ).all()
            for account in accounts:
                account.archived_at = None
                restored += 1
        logger.info(f"accounts_restored: user_id={self.user_id} count={restored}")
        return restored

    def permanently_delete_many(self, account_ids: Sequence[int]) -> int:
        deleted = 0
        with atomic(self.session):
            accounts = self.session.scalars(
                select(Account).where(
                    Account.id.in_(set(account_ids)),
                    Account.user_id == self.user_id,
                )
            ).all()
            for account in accounts:
                if self._transaction_count(account.id):
                    logger.warning(
                        f"account_delete_skipped: account_id={account.id} "
                        "reason=has_transactions"
                    )
                    continue
                self._permanently_delete(account)
                deleted += 1
        logger.info(f"accounts_deleted: user_id={self.user_id} count={deleted}")
        return deleted


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self, include_archived: bool = False) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.name, Category.id)
        )
        if not include_archived:
            stmt = stmt.where(Category.archived_at.is_(None))
        return self.session.scalars(stmt).all()

    def archived(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id, Category.archived_at.isnot(None))
            .order_by(Category.archived_at.desc(), Category.id.desc())
        )
        return self.session.scalars(stmt).all()

    def with_counts(self) -> list[tuple[Category, int]]:
        counts = (
            select(Transaction.category_id, func.count(Transaction.id).label("n"))
            .where(Transaction.state == TransactionState.active)
            .group_by(Transaction.category_id)
            .subquery()
        )
        stmt = (
            select(Category, func.coalesce(counts.c.n, 0))
            .outerjoin(counts, counts.c.category_id == Category.id)
            .where(Category.user_id == self.user_id, Category.archived_at.is_(None))
            .order_by(Category.name, Category.id)
        )
        return [(row[0], int(row[1])) for row in self.session.execute(stmt).all()]

    def get(self, category_id: int) -> Category:
        return owned_category(self.session, self.user_id, category_id)

    def create(self, data: CategoryIn) -> Category:
        with atomic(self.session):
            category = Category(
                user_id=self.user_id,
                name=data.name.strip(),
                color=data.color,
                icon=data.icon,
            )
            self.session.add(category)
        self.session.refresh(category)
        return category

    def transfer_category(self) -> Category:
        """Return the owner's Transfer category, creating it on first use.

        Runs inside the caller's unit of work; only flushes.
        """
        category = self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id, Category.is_transfer.is_(True)
            )
        )
        if category:
            return category
        category = Category(
            user_id=self.user_id,
            name=get_settings().transfer_category_name,
            color=TRANSFER_CATEGORY_COLOR,
            icon=TRANSFER_CATEGORY_ICON,
            is_transfer=True,
        )
        self.session.add(category)
        self.session.flush()
        logger.info(
            f"transfer_category_created: user_id={self.user_id} category_id={category.id}"
        )
        return category

    def _editable(self, category_id: int) -> Category:
        category = owned_category(self.session, self.user_id, category_id)
        if category.is_transfer:
            raise ValidationFailed("The transfer category is managed automatically")
        return category

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        with atomic(self.session):
            category = self._editable(category_id)
            for name, value in data.model_dump(exclude_unset=True).items():
                if name == "name" and value is not None:
                    value = value.strip()
                setattr(category, name, value)
        return category

    def archive(self, category_id: int) -> None:
        with atomic(self.session):
            category = self._editable(category_id)
            if category.archived_at is None:
                category.archived_at = datetime.utcnow()

    def restore(self, category_id: int) -> None:
        with atomic(self.session):
            category = self._editable(category_id)
            if category.archived_at is None:
                raise InvalidState("Category is not archived")
            category.archived_at = None

    def _reference_count(self, category_id: int) -> int:
        return int(
            self.session.execute(
                select(func.count(Transaction.id)).where(
                    Transaction.category_id == category_id
                )
            ).scalar_one()
            or 0
        )

    def permanently_delete(self, category_id: int) -> None:
        with atomic(self.session):
            category = self._editable(category_id)
            count = self._reference_count(category.id)
            if count:
                raise InvalidState(
                    f"Cannot permanently delete category used by {count} transactions"
                )
            self.session.delete(category)
        logger.info(
            f"category_deleted: user_id={self.user_id} category_id={category_id}"
        )

    def restore_many(self, category_ids: Sequence[int]) -> int:
        restored = 0
        with atomic(self.session):
            categories = self.session.scalars(
                select(Category).where(
                    Category.id.in_(set(category_ids)),
                    Category.user_id == self.user_id,
                    Category.is_transfer.is_(False),
                    Category.archived_at.isnot(None),
                )
            ).all()
            for category in categories:
                category.archived_at = None
                restored += 1
        return restored

    def permanently_delete_many(self, category_ids: Sequence[int]) -> int:
        deleted = 0
        with atomic(self.session):
            categories = self.session.scalars(
                select(Category).where(
                    Category.id.in_(set(category_ids)),
                    Category.user_id == self.user_id,
                    Category.is_transfer.is_(False),
                )
            ).all()
            for category in categories:
                if self._reference_count(category.id):
                    continue
                self.session.delete(category)
                deleted += 1
        logger.info(f"categories_deleted: user_id={self.user_id} count={deleted}")
        return deleted


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, transaction_id: int) -> Transaction:
        return owned_transaction(
            self.session, self.user_id, transaction_id, refresh=True
        )

    def create(self, data: TransactionIn) -> Transaction:
        with atomic(self.session):
            txn = self._create(
                account_id=data.account_id,
                category_id=data.category_id,
                type=data.type,
                amount_cents=data.amount_cents,
                description=data.description,
                txn_date=data.date,
            )
        logger.info(
            f"transaction_created: user_id={self.user_id} transaction_id={txn.id} "
            f"account_id={txn.account_id} type={txn.type.value} "
            f"amount_cents={txn.amount_cents}"
        )
        return self.get(txn.id)

    def _create(
        self,
        account_id: int,
        category_id: int,
        type: TransactionType,
        amount_cents: int,
        description: str,
        txn_date: date,
    ) -> Transaction:
        if amount_cents <= 0:
            raise ValidationFailed("Amount must be greater than zero")
        account = owned_account(self.session, self.user_id, account_id)
        if account.is_archived:
            raise InvalidState("Cannot post transactions to an archived account")
        category = owned_category(self.session, self.user_id, category_id)
        if category.is_transfer:
            raise ValidationFailed("The transfer category is reserved for transfers")
        if category.is_archived:
            raise InvalidState("Cannot use an archived category")
        txn = Transaction(
            date=txn_date,
            type=type,
            amount_cents=amount_cents,
            description=description.strip(),
            account_id=account.id,
            category_id=category.id,
            state=TransactionState.active,
            kind=TransactionKind.regular,
        )
        self.session.add(txn)
        self.session.flush()
        adjust_balance(self.session, account.id, delta(type, amount_cents))
        return txn

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        changes = data.model_dump(exclude_unset=True)
        missing = [name for name, value in changes.items() if value is None]
        if missing:
            raise ValidationFailed(f"Fields cannot be cleared: {', '.join(missing)}")

        with atomic(self.session):
            txn = owned_transaction(self.session, self.user_id, transaction_id)
            if txn.is_archived:
                raise InvalidState(
                    "Archived transactions cannot be edited; restore it first"
                )
            if txn.is_transfer_leg:
                locked = sorted(set(changes) - {"description"})
                if locked:
                    raise InvalidState(
                        f"Transfer legs only allow description edits, got: {', '.join(locked)}"
                    )

            old_account_id = txn.account_id
            old_delta = delta(txn.type, txn.amount_cents)

            if "account_id" in changes and data.account_id != txn.account_id:
                account = owned_account(self.session, self.user_id, data.account_id)
                if account.is_archived:
                    raise InvalidState("Cannot move a transaction to an archived account")
                txn.account_id = account.id
            if "category_id" in changes and data.category_id != txn.category_id:
                category = owned_category(self.session, self.user_id, data.category_id)
                if category.is_transfer:
                    raise ValidationFailed(
                        "The transfer category is reserved for transfers"
                    )
                if category.is_archived:
                    raise InvalidState("Cannot use an archived category")
                txn.category_id = category.id
            if "type" in changes:
                txn.type = data.type
            if "amount" in changes:
                txn.amount_cents = data.amount_cents
            if "description" in changes:
                txn.description = data.description.strip()
            if "date" in changes:
                txn.date = data.date

            new_delta = delta(txn.type, txn.amount_cents)
            if txn.account_id == old_account_id:
                adjust_balance(self.session, txn.account_id, new_delta - old_delta)
            else:
                adjust_balance(self.session, old_account_id, -old_delta)
                adjust_balance(self.session, txn.account_id, new_delta)
            self.session.flush()

        logger.info(
            f"transaction_updated: user_id={self.user_id} transaction_id={transaction_id} "
            f"fields={','.join(sorted(changes))}"
        )
        return self.get(transaction_id)

    def archive(self, transaction_id: int) -> int:
        with atomic(self.session):
            txn = owned_transaction(self.session, self.user_id, transaction_id)
            changed = self._archive(txn)
        logger.info(
            f"transaction_archived: user_id={self.user_id} "
            f"transaction_id={transaction_id} changed={changed}"
        )
        return changed

    def _archive(self, txn: Transaction) -> int:
        if txn.kind == TransactionKind.transfer:
            return TransferService(self.session, self.user_id)._archive_pair(txn)
        return _archive_leg(self.session, txn)

    def restore(self, transaction_id: int) -> int:
        with atomic(self.session):
            txn = owned_transaction(self.session, self.user_id, transaction_id)
            if not txn.is_archived:
                raise InvalidState("Transaction is not archived")
            changed = self._restore(txn)
        logger.info(
            f"transaction_restored: user_id={self.user_id} "
            f"transaction_id={transaction_id} changed={changed}"
        )
        return changed

    def _restore(self, txn: Transaction) -> int:
        if txn.kind == TransactionKind.transfer:
            return TransferService(self.session, self.user_id)._restore_pair(txn)
        _ensure_restorable(txn)
        return _restore_leg(self.session, txn)

    def permanently_delete(self, transaction_id: int) -> int:
        with atomic(self.session):
            txn = owned_transaction(self.session, self.user_id, transaction_id)
            if not txn.is_archived:
                raise InvalidState(
                    "Only archived transactions can be permanently deleted"
                )
            changed = self._permanently_delete(txn)
        logger.info(
            f"transaction_deleted: user_id={self.user_id} "
            f"transaction_id={transaction_id} changed={changed}"
        )
        return changed

    def _permanently_delete(self, txn: Transaction) -> int:
        if txn.kind == TransactionKind.transfer:
            return TransferService(self.session, self.user_id)._delete_pair(txn)
        return _delete_leg(self.session, txn)

    def archived(self, limit: int = 200) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .join(Transaction.account)
            .options(
                contains_eager(Transaction.account), joinedload(Transaction.category)
            )
            .where(
                Account.user_id == self.user_id,
                Transaction.state == TransactionState.archived,
            )
            .order_by(Transaction.archived_at.desc(), Transaction.id.desc())
            .limit(limit)
        )
        return self.session.scalars(stmt).unique().all()


class TransferService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _lock_account(self, account_id: int) -> Account:
        account = self.session.scalar(
            select(Account)
            .where(Account.id == account_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if not account:
            raise NotFound("Account not found")
        if account.user_id != self.user_id:
            raise Forbidden("Account belongs to another user")
        return account

    def create_transfer(self, data: TransferIn) -> tuple[Transaction, Transaction]:
        amount_cents = data.amount_cents
        if amount_cents <= 0:
            raise ValidationFailed("Amount must be greater than zero")
        if data.from_account_id == data.to_account_id:
            raise ValidationFailed("Source and destination accounts must be different")

        with atomic(self.session):
            # rows are always locked in ascending id order
            locked = {
                account_id: self._lock_account(account_id)
                for account_id in sorted({data.from_account_id, data.to_account_id})
            }
            from_account = locked[data.from_account_id]
            to_account = locked[data.to_account_id]
            if from_account.is_archived or to_account.is_archived:
                raise InvalidState("Cannot transfer with an archived account")
            if from_account.balance_cents < amount_cents:
                raise InsufficientBalance("Insufficient balance in source account")

            category = CategoryService(self.session, self.user_id).transfer_category()
            group_id = uuid.uuid4().hex
            description = data.description.strip()
            outgoing = Transaction(
                date=data.date,
                type=TransactionType.expense,
                amount_cents=amount_cents,
                description=f"Transfer to {to_account.name}: {description}",
                account_id=from_account.id,
                category_id=category.id,
                state=TransactionState.active,
                kind=TransactionKind.transfer,
                transfer_group_id=group_id,
                transfer_direction=TransferDirection.outgoing,
            )
            incoming = Transaction(
                date=data.date,
                type=TransactionType.income,
                amount_cents=amount_cents,
                description=f"Transfer from {from_account.name}: {description}",
                account_id=to_account.id,
                category_id=category.id,
                state=TransactionState.active,
                kind=TransactionKind.transfer,
                transfer_group_id=group_id,
                transfer_direction=TransferDirection.incoming,
            )
            self.session.add_all([outgoing, incoming])
            self.session.flush()
            withdraw(self.session, from_account.id, amount_cents)
            adjust_balance(self.session, to_account.id, amount_cents)

        logger.info(
            f"transfer_created: user_id={self.user_id} group={group_id} "
            f"from_account_id={from_account.id} to_account_id={to_account.id} "
            f"amount_cents={amount_cents}"
        )
        return (
            owned_transaction(self.session, self.user_id, outgoing.id, refresh=True),
            owned_transaction(self.session, self.user_id, incoming.id, refresh=True),
        )

    def find_sibling_leg(self, txn: Transaction) -> Optional[Transaction]:
        if txn.kind != TransactionKind.transfer or not txn.transfer_group_id:
            return None
        return self.session.scalar(
            select(Transaction)
            .options(joinedload(Transaction.account))
            .where(
                Transaction.transfer_group_id == txn.transfer_group_id,
                Transaction.id != txn.id,
            )
        )

    def _legs(self, txn: Transaction) -> list[Transaction]:
        sibling = self.find_sibling_leg(txn)
        if sibling is None:
            logger.warning(
                f"transfer_orphan_leg: transaction_id={txn.id} "
                f"group={txn.transfer_group_id}"
            )
            return [txn]
        if sibling.account.user_id != self.user_id:
            raise Forbidden("Transfer sibling belongs to another user")
        return [txn, sibling]

    def archive_pair(self, transaction_id: int) -> int:
        with atomic(self.session):
            txn = owned_transaction(self.session, self.user_id, transaction_id)
            return self._archive_pair(txn)

    def restore_pair(self, transaction_id: int) -> int:
        with atomic(self.session):
            txn = owned_transaction(self.session, self.user_id, transaction_id)
            return self._restore_pair(txn)

    def delete_pair(self, transaction_id: int) -> int:
        with atomic(self.session):
            txn = owned_transaction(self.session, self.user_id, transaction_id)
            if not txn.is_archived:
                raise InvalidState(
                    "Only archived transfers can be permanently deleted"
                )
            return self._delete_pair(txn)

    def _archive_pair(self, txn: Transaction) -> int:
        archived_at = datetime.utcnow()
        changed = sum(
            _archive_leg(self.session, leg, archived_at) for leg in self._legs(txn)
        )
        logger.info(
            f"pair_archived: group={txn.transfer_group_id} changed={changed}"
        )
        return changed

    def _restore_pair(self, txn: Transaction) -> int:
        legs = self._legs(txn)
        for leg in legs:
            if leg.is_archived:
                _ensure_restorable(leg)
        changed = sum(_restore_leg(self.session, leg) for leg in legs)
        logger.info(
            f"pair_restored: group={txn.transfer_group_id} changed={changed}"
        )
        return changed

    def _delete_pair(self, txn: Transaction) -> int:
        changed = sum(_delete_leg(self.session, leg) for leg in self._legs(txn))
        logger.info(f"pair_deleted: group={txn.transfer_group_id} changed={changed}")
        return changed

    def recent(self, limit: int = 5) -> list[TransferPair]:
        outgoing = self.session.scalars(
            select(Transaction)
            .join(Transaction.account)
            .options(
                contains_eager(Transaction.account), joinedload(Transaction.category)
            )
            .where(
                Account.user_id == self.user_id,
                Transaction.kind == TransactionKind.transfer,
                Transaction.transfer_direction == TransferDirection.outgoing,
                Transaction.state == TransactionState.active,
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(limit)
        ).all()
        return [TransferPair(txn, self.find_sibling_leg(txn)) for txn in outgoing]


class BulkTransactionService:
    """Archive, restore or purge many transactions in one unit of work.

    Ids that do not resolve, belong to someone else, or are not eligible for
    the operation are skipped under ``BulkPolicy.skip`` and abort the whole
    batch under ``BulkPolicy.strict``. Ids already in the target state,
    including the second leg of a transfer moved together with the first,
    are never counted twice.
    """

    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        policy: BulkPolicy = BulkPolicy.skip,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.policy = policy
        self.transactions = TransactionService(session, self.user_id)

    def _rejected(self, transaction_id: int, exc: LedgerError) -> None:
        if self.policy == BulkPolicy.strict:
            raise exc
        logger.warning(
            f"bulk_item_skipped: user_id={self.user_id} "
            f"transaction_id={transaction_id} reason={exc}"
        )

    def _resolve(self, transaction_ids: Sequence[int]) -> list[Transaction]:
        ids = list(dict.fromkeys(transaction_ids))
        found = {
            txn.id: txn
            for txn in self.session.scalars(
                select(Transaction)
                .options(
                    joinedload(Transaction.account), joinedload(Transaction.category)
                )
                .where(Transaction.id.in_(ids))
            ).all()
        }
        resolved: list[Transaction] = []
        for transaction_id in ids:
            txn = found.get(transaction_id)
            if txn is None:
                self._rejected(transaction_id, NotFound("Transaction not found"))
            elif txn.account.user_id != self.user_id:
                self._rejected(
                    transaction_id, Forbidden("Transaction belongs to another user")
                )
            else:
                resolved.append(txn)
        return resolved

    def archive_many(self, transaction_ids: Sequence[int]) -> int:
        changed = 0
        with atomic(self.session):
            for txn in self._resolve(transaction_ids):
                if txn.is_archived:
                    continue
                changed += self.transactions._archive(txn)
        logger.info(
            f"bulk_archive: user_id={self.user_id} requested={len(transaction_ids)} "
            f"changed={changed}"
        )
        return changed

    def restore_many(self, transaction_ids: Sequence[int]) -> int:
        changed = 0
        with atomic(self.session):
            for txn in self._resolve(transaction_ids):
                if not txn.is_archived:
                    continue
                try:
                    changed += self.transactions._restore(txn)
                except InvalidState as exc:
                    self._rejected(txn.id, exc)
        logger.info(
            f"bulk_restore: user_id={self.user_id} requested={len(transaction_ids)} "
            f"changed={changed}"
        )
        return changed

    def permanently_delete_many(self, transaction_ids: Sequence[int]) -> int:
        changed = 0
        with atomic(self.session):
            for txn in self._resolve(transaction_ids):
                if inspect(txn).was_deleted:
                    continue
                if not txn.is_archived:
                    self._rejected(
                        txn.id,
                        InvalidState(
                            "Only archived transactions can be permanently deleted"
                        ),
                    )
                    continue
                changed += self.transactions._permanently_delete(txn)
        logger.info(
            f"bulk_delete: user_id={self.user_id} requested={len(transaction_ids)} "
            f"changed={changed}"
        )
        return changed


class TransactionQueryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _conditions(self, filters: TransactionFilters) -> list:
        conditions = [
            Account.user_id == self.user_id,
            Transaction.state == TransactionState.active,
        ]
        if filters.search:
            conditions.append(
                func.lower(Transaction.description).contains(
                    filters.search.strip().lower(), autoescape=True
                )
            )
        if filters.account_id:
            conditions.append(Transaction.account_id == filters.account_id)
        if filters.category_id:
            conditions.append(Transaction.category_id == filters.category_id)
        if filters.type:
            conditions.append(Transaction.type == filters.type)
        if filters.kind == "transfer":
            conditions.append(Transaction.kind == TransactionKind.transfer)
        elif filters.kind == "transaction":
            conditions.append(Transaction.kind == TransactionKind.regular)
        if filters.date_from:
            conditions.append(Transaction.date >= filters.date_from)
        if filters.date_to:
            conditions.append(Transaction.date <= filters.date_to)
        if filters.amount_min_cents is not None:
            conditions.append(Transaction.amount_cents >= filters.amount_min_cents)
        if filters.amount_max_cents is not None:
            conditions.append(Transaction.amount_cents <= filters.amount_max_cents)
        return conditions

    @staticmethod
    def _sort_column(sort_by: SortField):
        columns = {
            "date": Transaction.date,
            "amount": Transaction.amount_cents,
            "description": func.lower(Transaction.description),
            "account": func.lower(Account.name),
            "category": func.lower(Category.name),
        }
        if sort_by not in columns:
            raise ValidationFailed(f"Cannot sort by {sort_by!r}")
        return columns[sort_by]

    def _select(self, filters: TransactionFilters):
        return (
            select(Transaction)
            .join(Transaction.account)
            .join(Transaction.category)
            .options(
                contains_eager(Transaction.account),
                contains_eager(Transaction.category),
            )
            .where(*self._conditions(filters))
        )

    def query(
        self,
        filters: Optional[TransactionFilters] = None,
        sort_by: SortField = "date",
        sort_order: SortOrder = "desc",
        page: int = 1,
        limit: Optional[int] = None,
    ) -> TransactionPage:
        settings = get_settings()
        filters = filters or TransactionFilters()
        limit = min(max(limit or settings.page_size, 1), settings.max_page_size)
        column = self._sort_column(sort_by)
        ordering = column.asc() if sort_order == "asc" else column.desc()

        total = int(
            self.session.execute(
                select(func.count(Transaction.id))
                .select_from(Transaction)
                .join(Transaction.account)
                .join(Transaction.category)
                .where(*self._conditions(filters))
            ).scalar_one()
            or 0
        )
        total_pages = math.ceil(total / limit) if total else 0
        current_page = min(max(page, 1), max(total_pages, 1))

        stmt = (
            self._select(filters)
            .order_by(ordering, Transaction.id.asc())
            .offset((current_page - 1) * limit)
            .limit(limit)
        )
        items = self.session.scalars(stmt).unique().all()
        return TransactionPage(
            items=list(items),
            total=total,
            total_pages=total_pages,
            current_page=current_page,
            limit=limit,
        )

    def all_matching(
        self,
        filters: Optional[TransactionFilters] = None,
        sort_by: SortField = "date",
        sort_order: SortOrder = "desc",
    ) -> list[Transaction]:
        column = self._sort_column(sort_by)
        ordering = column.asc() if sort_order == "asc" else column.desc()
        stmt = self._select(filters or TransactionFilters()).order_by(
            ordering, Transaction.id.asc()
        )
        return list(self.session.scalars(stmt).unique().all())


class ImportService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def import_candidates(
        self,
        account_id: int,
        category_id: int,
        candidates: Sequence[ImportCandidate],
    ) -> ImportResult:
        owned_account(self.session, self.user_id, account_id)
        transactions = TransactionService(self.session, self.user_id)
        result = ImportResult()
        for candidate in candidates:
            try:
                transactions.create(
                    TransactionIn(
                        account_id=account_id,
                        category_id=category_id,
                        type=candidate.type,
                        amount=candidate.amount,
                        description=candidate.description,
                        date=candidate.date,
                    )
                )
            except LedgerError as exc:
                result.errors.append(
                    f'Failed to import transaction "{candidate.description}": {exc}'
                )
            else:
                result.imported_count += 1
        logger.info(
            f"statement_import: user_id={self.user_id} account_id={account_id} "
            f"imported={result.imported_count} failed={len(result.errors)}"
        )
        return result


class SummaryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _month_total(self, type: TransactionType, start: date, end: date) -> int:
        return int(
            self.session.execute(
                select(func.coalesce(func.sum(Transaction.amount_cents), 0))
                .select_from(Transaction)
                .join(Transaction.account)
                .where(
                    Account.user_id == self.user_id,
                    Transaction.state == TransactionState.active,
                    Transaction.kind == TransactionKind.regular,
                    Transaction.type == type,
                    Transaction.date >= start,
                    Transaction.date < end,
                )
            ).scalar_one()
            or 0
        )

    @staticmethod
    def _month_bounds(today: date) -> tuple[date, date]:
        start = today.replace(day=1)
        if start.month == 12:
            return start, date(start.year + 1, 1, 1)
        return start, date(start.year, start.month + 1, 1)

    def spending_by_category(
        self, today: Optional[date] = None
    ) -> list[dict[str, object]]:
        """This month's expenses per category, largest first.

        Transfer legs and the transfer category are left out; categories with
        no spending do not appear.
        """
        start, end = self._month_bounds(today or date.today())
        total = func.sum(Transaction.amount_cents)
        rows = self.session.execute(
            select(
                Category.id,
                Category.name,
                Category.color,
                Category.icon,
                total.label("total"),
                func.count(Transaction.id).label("n"),
            )
            .select_from(Transaction)
            .join(Transaction.account)
            .join(Transaction.category)
            .where(
                Account.user_id == self.user_id,
                Category.is_transfer.is_(False),
                Transaction.state == TransactionState.active,
                Transaction.kind == TransactionKind.regular,
                Transaction.type == TransactionType.expense,
                Transaction.date >= start,
                Transaction.date < end,
            )
            .group_by(Category.id, Category.name, Category.color, Category.icon)
            .having(total > 0)
            .order_by(total.desc(), Category.id)
        ).all()
        return [
            {
                "id": row.id,
                "name": row.name,
                "color": row.color,
                "icon": row.icon,
                "amount": format_cents(int(row.total)),
                "transaction_count": int(row.n),
            }
            for row in rows
        ]

    def summary(self, today: Optional[date] = None) -> dict[str, str]:
        start, end = self._month_bounds(today or date.today())

        total_balance = int(
            self.session.execute(
                select(func.coalesce(func.sum(Account.balance_cents), 0)).where(
                    Account.user_id == self.user_id, Account.archived_at.is_(None)
                )
            ).scalar_one()
            or 0
        )
        income = self._month_total(TransactionType.income, start, end)
        expenses = self._month_total(TransactionType.expense, start, end)
        savings_rate = (income - expenses) / income * 100 if income > 0 else 0.0
        return {
            "total_balance": format_cents(total_balance),
            "monthly_income": format_cents(income),
            "monthly_expenses": format_cents(expenses),
            "savings_rate": f"{savings_rate:.1f}",
        }


def reconcile_account_balance(session: Session, account_id: int) -> tuple[int, int]:
    """Return ``(stored, expected)`` balance cents for an account."""
    row = session.execute(
        select(Account.balance_cents, Account.initial_balance_cents).where(
            Account.id == account_id
        )
    ).first()
    if row is None:
        raise NotFound("Account not found")
    legs = session.execute(
        select(Transaction.type, Transaction.amount_cents).where(
            Transaction.account_id == account_id,
            Transaction.state == TransactionState.active,
        )
    ).all()
    return row.balance_cents, expected_balance(
        row.initial_balance_cents, [(leg.type, leg.amount_cents) for leg in legs]
    )


def rebuild_account_balances(session: Session, user_id: int) -> int:
    repaired = 0
    with atomic(session):
        account_ids = session.scalars(
            select(Account.id).where(Account.user_id == user_id)
        ).all()
        for account_id in account_ids:
            stored, expected = reconcile_account_balance(session, account_id)
            if stored == expected:
                continue
            logger.warning(
                f"balance_drift: account_id={account_id} stored={stored} "
                f"expected={expected}"
            )
            session.execute(
                update(Account)
                .where(Account.id == account_id)
                .values(balance_cents=expected)
                .execution_options(synchronize_session=False)
            )
            repaired += 1
    logger.info(f"balance_rebuilt: user_id={user_id} repaired={repaired}")
    return repaired


def purge_archived_transactions(
    session: Session, user_id: int, older_than: datetime
) -> int:
    """Permanently delete transactions archived before ``older_than``.

    Both legs of a transfer share one ``archived_at``, so pairs leave together.
    """
    with atomic(session):
        account_ids = select(Account.id).where(Account.user_id == user_id)
        result = session.execute(
            delete(Transaction)
            .where(
                Transaction.account_id.in_(account_ids),
                Transaction.state == TransactionState.archived,
                Transaction.archived_at < older_than,
            )
            .execution_options(synchronize_session=False)
        )
    logger.info(
        f"Purged {result.rowcount} archived transactions archived before {older_than}"
    )
    return result.rowcount
