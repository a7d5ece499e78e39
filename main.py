import logging
from datetime import date, datetime, timedelta
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session

from config import get_settings
from csv_utils import export_transactions, parse_amount
from database import SessionLocal
from errors import LedgerError, ValidationFailed
from models import TransactionType
from schemas import (
    AccountIn,
    AccountOut,
    AccountUpdate,
    BulkAccountIdsIn,
    BulkCategoryIdsIn,
    BulkIdsIn,
    CategoryIn,
    CategoryOut,
    CategorySpendingOut,
    CategoryUpdate,
    CategoryWithCountOut,
    CountOut,
    ImportResultOut,
    StatementImportIn,
    SummaryOut,
    TransactionIn,
    TransactionOut,
    TransactionPageOut,
    TransactionUpdate,
    TransferIn,
    TransferOut,
)
from services import (
    AccountService,
    BulkPolicy,
    BulkTransactionService,
    CategoryService,
    ImportService,
    SummaryService,
    TransactionFilters,
    TransactionQueryService,
    TransactionService,
    TransferService,
    purge_archived_transactions,
    rebuild_account_balances,
)

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger")

SORT_FIELDS = {"date", "amount", "description", "account", "category"}


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user(x_user_id: Optional[int] = Header(default=None)) -> int:
    return x_user_id or get_settings().default_user_id


@app.exception_handler(LedgerError)
def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    logger.info(
        f"request_failed: path={request.url.path} error={type(exc).__name__} "
        f"detail={exc}"
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


@app.exception_handler(Exception)
def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"request_crashed: path={request.url.path}", exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def _optional_date(value: Optional[str], name: str) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise ValidationFailed(f"Invalid {name}: {value!r}") from exc


def _optional_int(value: Optional[str], name: str) -> Optional[int]:
    if not value:
        return None
    try:
        return int(value)
    except ValueError as exc:
        raise ValidationFailed(f"Invalid {name}: {value!r}") from exc


def filters_from_request(request: Request) -> TransactionFilters:
    params = request.query_params
    type_param = params.get("type")
    kind_param = params.get("transactionKind") or params.get("kind")
    txn_type = None
    if type_param and type_param != "all":
        try:
            txn_type = TransactionType(type_param)
        except ValueError as exc:
            raise ValidationFailed(f"Invalid type: {type_param!r}") from exc
    if kind_param in (None, "", "all"):
        kind_param = None
    elif kind_param not in ("transaction", "transfer"):
        raise ValidationFailed(f"Invalid transactionKind: {kind_param!r}")
    amount_min = params.get("amountMin")
    amount_max = params.get("amountMax")
    return TransactionFilters(
        search=params.get("search") or None,
        account_id=_optional_int(params.get("accountId"), "accountId"),
        category_id=_optional_int(params.get("categoryId"), "categoryId"),
        type=txn_type,
        kind=kind_param,
        date_from=_optional_date(params.get("dateFrom"), "dateFrom"),
        date_to=_optional_date(params.get("dateTo"), "dateTo"),
        amount_min_cents=(
            parse_amount(amount_min, allow_zero=True) if amount_min else None
        ),
        amount_max_cents=(
            parse_amount(amount_max, allow_zero=True) if amount_max else None
        ),
    )


def sort_from_request(request: Request) -> tuple[str, str]:
    sort_by = request.query_params.get("sortBy", "date")
    if sort_by not in SORT_FIELDS:
        raise ValidationFailed(f"Invalid sortBy: {sort_by!r}")
    sort_order = "asc" if request.query_params.get("sortOrder") == "asc" else "desc"
    return sort_by, sort_order


@app.get("/api/health")
def health():
    return {"status": "ok"}


@app.get("/api/accounts", response_model=list[AccountOut])
def list_accounts(db: Session = Depends(get_db), user_id: int = Depends(current_user)):
    return AccountService(db, user_id).list_all()


@app.get("/api/accounts/archived", response_model=list[AccountOut])
def list_archived_accounts(
    db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return AccountService(db, user_id).archived()


@app.post("/api/accounts/restore-all", response_model=CountOut)
def restore_accounts(
    payload: BulkAccountIdsIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    count = AccountService(db, user_id).restore_many(payload.account_ids)
    return CountOut(count=count, message=f"Successfully restored {count} accounts")


@app.post("/api/accounts/delete-all", response_model=CountOut)
def delete_accounts(
    payload: BulkAccountIdsIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    count = AccountService(db, user_id).permanently_delete_many(payload.account_ids)
    return CountOut(count=count, message=f"Successfully deleted {count} accounts")


@app.get("/api/accounts/{account_id}", response_model=AccountOut)
def get_account(
    account_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return AccountService(db, user_id).get(account_id)


@app.post("/api/accounts", response_model=AccountOut, status_code=201)
def create_account(
    payload: AccountIn, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return AccountService(db, user_id).create(payload)


@app.put("/api/accounts/{account_id}", response_model=AccountOut)
def update_account(
    account_id: int,
    payload: AccountUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return AccountService(db, user_id).update(account_id, payload)


@app.delete("/api/accounts/{account_id}", status_code=204)
def archive_account(
    account_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    AccountService(db, user_id).archive(account_id)
    return Response(status_code=204)


@app.post("/api/accounts/{account_id}/restore", status_code=204)
def restore_account(
    account_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    AccountService(db, user_id).restore(account_id)
    return Response(status_code=204)


@app.delete("/api/accounts/{account_id}/permanent", status_code=204)
def permanently_delete_account(
    account_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    AccountService(db, user_id).permanently_delete(account_id)
    return Response(status_code=204)


@app.get("/api/categories", response_model=list[CategoryOut])
def list_categories(
    db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return CategoryService(db, user_id).list_all()


@app.get("/api/categories/with-counts", response_model=list[CategoryWithCountOut])
def list_categories_with_counts(
    db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return [
        CategoryWithCountOut(
            **CategoryOut.model_validate(category).model_dump(),
            transaction_count=count,
        )
        for category, count in CategoryService(db, user_id).with_counts()
    ]


@app.get("/api/categories/archived", response_model=list[CategoryOut])
def list_archived_categories(
    db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return CategoryService(db, user_id).archived()


@app.post("/api/categories/restore-all", response_model=CountOut)
def restore_categories(
    payload: BulkCategoryIdsIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    count = CategoryService(db, user_id).restore_many(payload.category_ids)
    return CountOut(count=count, message=f"Successfully restored {count} categories")


@app.post("/api/categories/delete-all", response_model=CountOut)
def delete_categories(
    payload: BulkCategoryIdsIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    count = CategoryService(db, user_id).permanently_delete_many(payload.category_ids)
    return CountOut(count=count, message=f"Successfully deleted {count} categories")


@app.post("/api/categories", response_model=CategoryOut, status_code=201)
def create_category(
    payload: CategoryIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return CategoryService(db, user_id).create(payload)


@app.put("/api/categories/{category_id}", response_model=CategoryOut)
def update_category(
    category_id: int,
    payload: CategoryUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return CategoryService(db, user_id).update(category_id, payload)


@app.delete("/api/categories/{category_id}", status_code=204)
def archive_category(
    category_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    CategoryService(db, user_id).archive(category_id)
    return Response(status_code=204)


@app.post("/api/categories/{category_id}/restore", status_code=204)
def restore_category(
    category_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    CategoryService(db, user_id).restore(category_id)
    return Response(status_code=204)


@app.delete("/api/categories/{category_id}/permanent", status_code=204)
def permanently_delete_category(
    category_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    CategoryService(db, user_id).permanently_delete(category_id)
    return Response(status_code=204)


@app.get("/api/transactions", response_model=TransactionPageOut)
def list_transactions(
    request: Request, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    filters = filters_from_request(request)
    sort_by, sort_order = sort_from_request(request)
    page = _optional_int(request.query_params.get("page"), "page") or 1
    limit = _optional_int(request.query_params.get("limit"), "limit")
    result = TransactionQueryService(db, user_id).query(
        filters, sort_by=sort_by, sort_order=sort_order, page=page, limit=limit
    )
    return TransactionPageOut(
        items=[TransactionOut.model_validate(txn) for txn in result.items],
        total=result.total,
        total_pages=result.total_pages,
        current_page=result.current_page,
        limit=result.limit,
    )


@app.get("/api/transactions/archived", response_model=list[TransactionOut])
def list_archived_transactions(
    db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return TransactionService(db, user_id).archived(limit=200)


@app.get("/api/transactions/export.csv")
def export_transactions_endpoint(
    request: Request, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    filters = filters_from_request(request)
    sort_by, sort_order = sort_from_request(request)
    transactions = TransactionQueryService(db, user_id).all_matching(
        filters, sort_by=sort_by, sort_order=sort_order
    )
    csv_text = export_transactions(transactions)
    filename = f"transactions_{date.today().isoformat()}.csv"
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/api/transactions/archive-all", response_model=CountOut)
def archive_transactions(
    payload: BulkIdsIn,
    policy: BulkPolicy = BulkPolicy.skip,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    count = BulkTransactionService(db, user_id, policy).archive_many(
        payload.transaction_ids
    )
    return CountOut(count=count, message=f"Successfully archived {count} transactions")


@app.post("/api/transactions/restore-all", response_model=CountOut)
def restore_transactions(
    payload: BulkIdsIn,
    policy: BulkPolicy = BulkPolicy.skip,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    count = BulkTransactionService(db, user_id, policy).restore_many(
        payload.transaction_ids
    )
    return CountOut(count=count, message=f"Successfully restored {count} transactions")


@app.post("/api/transactions/delete-all", response_model=CountOut)
def delete_transactions(
    payload: BulkIdsIn,
    policy: BulkPolicy = BulkPolicy.skip,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    count = BulkTransactionService(db, user_id, policy).permanently_delete_many(
        payload.transaction_ids
    )
    return CountOut(count=count, message=f"Successfully deleted {count} transactions")


@app.get("/api/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return TransactionService(db, user_id).get(transaction_id)


@app.post("/api/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(
    payload: TransactionIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return TransactionService(db, user_id).create(payload)


@app.put("/api/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return TransactionService(db, user_id).update(transaction_id, payload)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def archive_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    TransactionService(db, user_id).archive(transaction_id)
    return Response(status_code=204)


@app.post("/api/transactions/{transaction_id}/restore", status_code=204)
def restore_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    TransactionService(db, user_id).restore(transaction_id)
    return Response(status_code=204)


@app.delete("/api/transactions/{transaction_id}/permanent", status_code=204)
def permanently_delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    TransactionService(db, user_id).permanently_delete(transaction_id)
    return Response(status_code=204)


@app.post("/api/transfers", response_model=TransferOut, status_code=201)
def create_transfer(
    payload: TransferIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    outgoing, incoming = TransferService(db, user_id).create_transfer(payload)
    return TransferOut(
        from_transaction=TransactionOut.model_validate(outgoing),
        to_transaction=TransactionOut.model_validate(incoming),
    )


@app.get("/api/transfers/recent", response_model=list[TransferOut])
def recent_transfers(
    db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return [
        TransferOut(
            from_transaction=TransactionOut.model_validate(pair.outgoing),
            to_transaction=(
                TransactionOut.model_validate(pair.incoming) if pair.incoming else None
            ),
        )
        for pair in TransferService(db, user_id).recent()
    ]


@app.post("/api/statements/import", response_model=ImportResultOut)
def import_statement(
    payload: StatementImportIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    result = ImportService(db, user_id).import_candidates(
        payload.account_id, payload.category_id, payload.transactions
    )
    return ImportResultOut(imported_count=result.imported_count, errors=result.errors)


@app.get("/api/analytics/summary", response_model=SummaryOut)
def analytics_summary(
    db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return SummaryOut(**SummaryService(db, user_id).summary())


@app.get(
    "/api/analytics/spending-by-category", response_model=list[CategorySpendingOut]
)
def analytics_spending_by_category(
    db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return [
        CategorySpendingOut(**row)
        for row in SummaryService(db, user_id).spending_by_category()
    ]


@app.post("/api/admin/rebuild-balances", response_model=CountOut)
def admin_rebuild_balances(
    db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    repaired = rebuild_account_balances(db, user_id)
    return CountOut(count=repaired, message=f"Repaired {repaired} account balances")


@app.post("/api/admin/purge-archived", response_model=CountOut)
def admin_purge_archived(
    days: int = 30,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    cutoff = datetime.utcnow() - timedelta(days=days)
    purged = purge_archived_transactions(db, user_id, cutoff)
    return CountOut(count=purged, message=f"Purged {purged} transactions")
