from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import create_engine, func, select, update
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import InvalidState, ValidationFailed
from models import Account, AccountType, Category, Transaction, TransactionType
from schemas import (
    AccountIn,
    AccountUpdate,
    CategoryIn,
    CategoryUpdate,
    ImportCandidate,
    TransactionIn,
    TransferIn,
)
from services import (
    AccountService,
    CategoryService,
    ImportService,
    SummaryService,
    TransactionService,
    TransferService,
    purge_archived_transactions,
    rebuild_account_balances,
    reconcile_account_balance,
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


def spend(session, account_id: int, category_id: int, amount: str, day: int = 1):
    return TransactionService(session).create(
        TransactionIn(
            account_id=account_id,
            category_id=category_id,
            type=TransactionType.expense,
            amount=amount,
            description="Spend",
            date=date(2025, 7, day),
        )
    )


def test_account_lifecycle() -> None:
    session = make_session()
    accounts = AccountService(session)
    category = CategoryService(session).create(CategoryIn(name="Misc"))
    account = accounts.create(
        AccountIn(name=" Wallet ", type=AccountType.cash, initial_balance="-12.50")
    )
    assert account.name == "Wallet"
    assert account.balance_cents == -1_250

    txn = spend(session, account.id, category.id, "5.00")
    with pytest.raises(InvalidState):
        accounts.archive(account.id)

    TransactionService(session).archive(txn.id)
    accounts.archive(account.id)
    assert [a.id for a in accounts.archived()] == [account.id]
    assert accounts.list_all() == []
    with pytest.raises(InvalidState):
        spend(session, account.id, category.id, "1.00")
    with pytest.raises(InvalidState):
        TransactionService(session).restore(txn.id)

    with pytest.raises(InvalidState):
        accounts.permanently_delete(account.id)
    TransactionService(session).permanently_delete(txn.id)
    accounts.permanently_delete(account.id)
    assert session.scalar(select(func.count(Account.id))) == 0


def test_account_update_and_restore() -> None:
    session = make_session()
    accounts = AccountService(session)
    account = accounts.create(AccountIn(name="Old", type=AccountType.checking))
    updated = accounts.update(
        account.id, AccountUpdate(name="New", type=AccountType.savings)
    )
    assert updated.name == "New"
    assert updated.type == AccountType.savings

    with pytest.raises(InvalidState):
        accounts.restore(account.id)
    accounts.archive(account.id)
    assert accounts.restore_many([account.id, 404]) == 1
    assert accounts.get(account.id).archived_at is None


def test_category_lifecycle() -> None:
    session = make_session()
    account = AccountService(session).create(
        AccountIn(name="Checking", type=AccountType.checking, initial_balance="50")
    )
    categories = CategoryService(session)
    used = categories.create(CategoryIn(name="Used", color="#ff0000"))
    spare = categories.create(CategoryIn(name="Spare"))
    spend(session, account.id, used.id, "5.00")

    renamed = categories.update(used.id, CategoryUpdate(name=" Groceries "))
    assert renamed.name == "Groceries"
    assert renamed.color == "#ff0000"

    counts = {category.name: count for category, count in categories.with_counts()}
    assert counts == {"Groceries": 1, "Spare": 0}

    with pytest.raises(InvalidState):
        categories.permanently_delete(used.id)
    assert categories.permanently_delete_many([used.id, spare.id]) == 1

    categories.archive(used.id)
    assert [c.id for c in categories.archived()] == [used.id]
    with pytest.raises(InvalidState):
        spend(session, account.id, used.id, "1.00")
    categories.restore(used.id)
    assert [c.name for c in categories.list_all()] == ["Groceries"]


def test_transfer_category_is_protected() -> None:
    session = make_session()
    accounts = AccountService(session)
    a = accounts.create(
        AccountIn(name="A", type=AccountType.checking, initial_balance="10")
    )
    b = accounts.create(AccountIn(name="B", type=AccountType.savings))
    TransferService(session).create_transfer(
        TransferIn(
            from_account_id=a.id,
            to_account_id=b.id,
            amount="1",
            description="Move",
            date=date(2025, 7, 1),
        )
    )
    transfer = session.scalar(select(Category).where(Category.is_transfer.is_(True)))
    categories = CategoryService(session)

    with pytest.raises(ValidationFailed):
        categories.update(transfer.id, CategoryUpdate(name="Other"))
    with pytest.raises(ValidationFailed):
        categories.archive(transfer.id)
    with pytest.raises(ValidationFailed):
        categories.permanently_delete(transfer.id)


def test_rebuild_repairs_drifted_balances() -> None:
    session = make_session()
    account = AccountService(session).create(
        AccountIn(name="Checking", type=AccountType.checking, initial_balance="100")
    )
    category = CategoryService(session).create(CategoryIn(name="Misc"))
    spend(session, account.id, category.id, "25.00")
    assert reconcile_account_balance(session, account.id) == (7_500, 7_500)

    session.execute(
        update(Account).where(Account.id == account.id).values(balance_cents=1)
    )
    session.commit()
    assert reconcile_account_balance(session, account.id) == (1, 7_500)

    assert rebuild_account_balances(session, user_id=1) == 1
    assert balance(session, account.id) == 7_500
    assert rebuild_account_balances(session, user_id=1) == 0


def test_purge_removes_only_old_archived_rows() -> None:
    session = make_session()
    account = AccountService(session).create(
        AccountIn(name="Checking", type=AccountType.checking, initial_balance="100")
    )
    category = CategoryService(session).create(CategoryIn(name="Misc"))
    old = spend(session, account.id, category.id, "1.00")
    recent = spend(session, account.id, category.id, "2.00")
    active = spend(session, account.id, category.id, "3.00")
    txns = TransactionService(session)
    txns.archive(old.id)
    txns.archive(recent.id)
    session.execute(
        update(Transaction)
        .where(Transaction.id == old.id)
        .values(archived_at=datetime.utcnow() - timedelta(days=90))
    )
    session.commit()

    cutoff = datetime.utcnow() - timedelta(days=30)
    assert purge_archived_transactions(session, 1, cutoff) == 1
    remaining = session.scalars(select(Transaction.id).order_by(Transaction.id)).all()
    assert remaining == [recent.id, active.id]
    assert balance(session, account.id) == 9_700


def test_import_collects_per_row_errors() -> None:
    session = make_session()
    account = AccountService(session).create(
        AccountIn(name="Checking", type=AccountType.checking)
    )
    category = CategoryService(session).create(CategoryIn(name="Imported"))
    result = ImportService(session).import_candidates(
        account.id,
        category.id,
        [
            ImportCandidate(
                date=date(2025, 7, 1),
                description="Refund",
                amount="20.00",
                type=TransactionType.income,
            ),
            ImportCandidate(
                date=date(2025, 7, 2),
                description="Lunch",
                amount="8,40",
                type=TransactionType.expense,
            ),
        ],
    )
    assert result.imported_count == 2
    assert result.errors == []
    assert balance(session, account.id) == 1_160

    failed = ImportService(session).import_candidates(
        account.id,
        9_999,
        [
            ImportCandidate(
                date=date(2025, 7, 3),
                description="Ghost",
                amount="1.00",
                type=TransactionType.expense,
            )
        ],
    )
    assert failed.imported_count == 0
    assert len(failed.errors) == 1
    assert "Ghost" in failed.errors[0]


def test_summary_excludes_transfers_and_other_months() -> None:
    session = make_session()
    accounts = AccountService(session)
    a = accounts.create(
        AccountIn(name="A", type=AccountType.checking, initial_balance="100")
    )
    b = accounts.create(AccountIn(name="B", type=AccountType.savings))
    category = CategoryService(session).create(CategoryIn(name="Misc"))
    txns = TransactionService(session)
    txns.create(
        TransactionIn(
            account_id=a.id,
            category_id=category.id,
            type=TransactionType.income,
            amount="200.00",
            description="Salary",
            date=date(2025, 7, 1),
        )
    )
    spend(session, a.id, category.id, "50.00", day=15)
    spend(session, a.id, category.id, "30.00", day=1)
    txns.create(
        TransactionIn(
            account_id=a.id,
            category_id=category.id,
            type=TransactionType.expense,
            amount="99.00",
            description="Last month",
            date=date(2025, 6, 30),
        )
    )
    TransferService(session).create_transfer(
        TransferIn(
            from_account_id=a.id,
            to_account_id=b.id,
            amount="10.00",
            description="Save",
            date=date(2025, 7, 2),
        )
    )

    summary = SummaryService(session).summary(today=date(2025, 7, 20))
    assert summary == {
        "total_balance": "121.00",
        "monthly_income": "200.00",
        "monthly_expenses": "80.00",
        "savings_rate": "60.0",
    }


def test_spending_by_category_groups_this_months_expenses() -> None:
    session = make_session()
    accounts = AccountService(session)
    a = accounts.create(
        AccountIn(name="A", type=AccountType.checking, initial_balance="500")
    )
    b = accounts.create(AccountIn(name="B", type=AccountType.savings))
    categories = CategoryService(session)
    food = categories.create(CategoryIn(name="Food", color="#00ff00", icon="fa-food"))
    rent = categories.create(CategoryIn(name="Rent"))
    salary = categories.create(CategoryIn(name="Salary"))
    categories.create(CategoryIn(name="Unused"))

    spend(session, a.id, food.id, "12.00", day=3)
    spend(session, a.id, food.id, "8.00", day=9)
    spend(session, a.id, rent.id, "150.00", day=1)
    archived = spend(session, a.id, rent.id, "99.00", day=2)
    TransactionService(session).archive(archived.id)
    TransactionService(session).create(
        TransactionIn(
            account_id=a.id,
            category_id=salary.id,
            type=TransactionType.income,
            amount="300.00",
            description="Pay",
            date=date(2025, 7, 1),
        )
    )
    TransactionService(session).create(
        TransactionIn(
            account_id=a.id,
            category_id=food.id,
            type=TransactionType.expense,
            amount="40.00",
            description="June dinner",
            date=date(2025, 6, 28),
        )
    )
    TransferService(session).create_transfer(
        TransferIn(
            from_account_id=a.id,
            to_account_id=b.id,
            amount="25.00",
            description="Save",
            date=date(2025, 7, 4),
        )
    )

    rows = SummaryService(session).spending_by_category(today=date(2025, 7, 20))
    assert rows == [
        {
            "id": rent.id,
            "name": "Rent",
            "color": None,
            "icon": None,
            "amount": "150.00",
            "transaction_count": 1,
        },
        {
            "id": food.id,
            "name": "Food",
            "color": "#00ff00",
            "icon": "fa-food",
            "amount": "20.00",
            "transaction_count": 2,
        },
    ]
    assert SummaryService(session, user_id=2).spending_by_category(
        today=date(2025, 7, 20)
    ) == []
