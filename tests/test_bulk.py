from datetime import date

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import Forbidden, InvalidState, NotFound
from models import Account, AccountType, Transaction, TransactionState, TransactionType
from schemas import AccountIn, CategoryIn, TransactionIn, TransferIn
from services import (
    AccountService,
    BulkPolicy,
    BulkTransactionService,
    CategoryService,
    TransactionService,
    TransferService,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def balance(session, account_id: int) -> int:
    return session.scalar(
        select(Account.balance_cents).where(Account.id == account_id)
    )


def states(session, ids) -> list[TransactionState]:
    return [
        session.scalar(select(Transaction.state).where(Transaction.id == txn_id))
        for txn_id in ids
    ]


def seed(session, user_id: int = 1):
    account = AccountService(session, user_id).create(
        AccountIn(name="Checking", type=AccountType.checking, initial_balance="100.00")
    )
    category = CategoryService(session, user_id).create(CategoryIn(name="Misc"))
    txns = TransactionService(session, user_id)
    ids = [
        txns.create(
            TransactionIn(
                account_id=account.id,
                category_id=category.id,
                type=TransactionType.expense,
                amount=amount,
                description=f"Item {amount}",
                date=date(2025, 5, 1),
            )
        ).id
        for amount in ("10.00", "20.00", "30.00")
    ]
    return account, ids


def test_archive_many_is_idempotent() -> None:
    session = make_session()
    account, ids = seed(session)
    bulk = BulkTransactionService(session)
    assert balance(session, account.id) == 4_000

    assert bulk.archive_many(ids) == 3
    assert balance(session, account.id) == 10_000
    assert states(session, ids) == [TransactionState.archived] * 3

    assert bulk.archive_many(ids) == 0
    assert balance(session, account.id) == 10_000


def test_duplicate_ids_are_counted_once() -> None:
    session = make_session()
    account, ids = seed(session)
    assert BulkTransactionService(session).archive_many([ids[0], ids[0]]) == 1
    assert balance(session, account.id) == 5_000


def test_transfer_pair_in_one_batch_counts_two() -> None:
    session = make_session()
    account, _ = seed(session)
    savings = AccountService(session).create(
        AccountIn(name="Savings", type=AccountType.savings)
    )
    outgoing, incoming = TransferService(session).create_transfer(
        TransferIn(
            from_account_id=account.id,
            to_account_id=savings.id,
            amount="15.00",
            description="Stash",
            date=date(2025, 5, 2),
        )
    )
    bulk = BulkTransactionService(session)

    assert bulk.archive_many([outgoing.id, incoming.id]) == 2
    assert balance(session, account.id) == 4_000
    assert balance(session, savings.id) == 0

    assert bulk.restore_many([incoming.id, outgoing.id]) == 2
    assert balance(session, account.id) == 2_500
    assert balance(session, savings.id) == 1_500

    bulk.archive_many([outgoing.id])
    assert bulk.permanently_delete_many([outgoing.id, incoming.id]) == 2
    assert session.scalar(
        select(func.count(Transaction.id)).where(
            Transaction.id.in_([outgoing.id, incoming.id])
        )
    ) == 0


def test_foreign_and_missing_ids_are_skipped_by_default() -> None:
    session = make_session()
    account, ids = seed(session)
    other_account, other_ids = seed(session, user_id=2)

    changed = BulkTransactionService(session).archive_many(
        [ids[0], other_ids[0], 9_999]
    )
    assert changed == 1
    assert states(session, other_ids[:1]) == [TransactionState.active]
    assert balance(session, other_account.id) == 4_000
    assert balance(session, account.id) == 5_000


def test_strict_policy_aborts_whole_batch() -> None:
    session = make_session()
    account, ids = seed(session)
    _, other_ids = seed(session, user_id=2)
    strict = BulkTransactionService(session, policy=BulkPolicy.strict)

    with pytest.raises(Forbidden):
        strict.archive_many([ids[0], other_ids[0]])
    with pytest.raises(NotFound):
        strict.archive_many([ids[1], 9_999])

    assert states(session, ids) == [TransactionState.active] * 3
    assert balance(session, account.id) == 4_000


def test_restore_many_only_touches_archived() -> None:
    session = make_session()
    account, ids = seed(session)
    bulk = BulkTransactionService(session)
    bulk.archive_many(ids[:2])

    assert bulk.restore_many(ids) == 2
    assert states(session, ids) == [TransactionState.active] * 3
    assert balance(session, account.id) == 4_000


def test_restore_many_skips_rows_on_archived_accounts() -> None:
    session = make_session()
    account, ids = seed(session)
    bulk = BulkTransactionService(session)
    bulk.archive_many(ids)
    AccountService(session).archive(account.id)

    assert bulk.restore_many(ids) == 0
    with pytest.raises(InvalidState):
        BulkTransactionService(session, policy=BulkPolicy.strict).restore_many(ids)
    assert balance(session, account.id) == 10_000


def test_delete_many_requires_archived_rows() -> None:
    session = make_session()
    account, ids = seed(session)
    bulk = BulkTransactionService(session)
    bulk.archive_many(ids[:1])

    assert bulk.permanently_delete_many(ids) == 1
    assert session.scalar(select(func.count(Transaction.id))) == 2
    assert balance(session, account.id) == 5_000

    with pytest.raises(InvalidState):
        BulkTransactionService(
            session, policy=BulkPolicy.strict
        ).permanently_delete_many(ids[1:])
    assert session.scalar(select(func.count(Transaction.id))) == 2
