import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session

from auth import read_token
from config import get_settings
from database import SessionLocal
from errors import (
    Conflict,
    Forbidden,
    InsufficientFunds,
    LedgerError,
    NotFound,
    ValidationFailed,
)
from periods import parse_month
from schemas import (
    AccountIn,
    AccountOut,
    AccountUpdateIn,
    AccountWithBalancesOut,
    AssignMoneyIn,
    BudgetEntryOut,
    BudgetIn,
    BudgetOut,
    BudgetUpdateIn,
    CategoryGroupIn,
    CategoryGroupOut,
    CategoryGroupUpdateIn,
    CategoryIn,
    CategoryOut,
    CategoryUpdateIn,
    GoalIn,
    GoalOut,
    ImportedTransactionIn,
    ImportRemoveIn,
    ImportResultOut,
    MoveMoneyIn,
    PayeeIn,
    PayeeOut,
    ReconcileIn,
    ReconciliationOut,
    SplitIn,
    TransactionIn,
    TransactionOut,
    TransactionPatch,
)
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    GoalService,
    ImportService,
    PayeeService,
    TransactionFilters,
    TransactionService,
    local_today,
)

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Envelopes")

STATUS_BY_ERROR: dict[type[LedgerError], int] = {
    NotFound: 404,
    Forbidden: 403,
    ValidationFailed: 400,
    Conflict: 409,
    InsufficientFunds: 400,
}


def status_for(exc: LedgerError) -> int:
    for error_type, status in STATUS_BY_ERROR.items():
        if isinstance(exc, error_type):
            return status
    return 400


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    status = status_for(exc)
    logging.info(f"{request.method} {request.url.path} -> {status}: {exc}")
    return JSONResponse(
        status_code=status,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logging.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "error": "InternalError"},
    )


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user(authorization: Optional[str] = Header(default=None)) -> int:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    user_id = read_token(token.strip())
    if user_id is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return user_id


def _account_with_balances(account, balances) -> AccountWithBalancesOut:
    base = AccountOut.model_validate(account).model_dump()
    return AccountWithBalancesOut(
        **base,
        working_balance_cents=balances.working_cents if balances else 0,
        cleared_balance_cents=balances.cleared_cents if balances else 0,
        uncleared_balance_cents=balances.uncleared_cents if balances else 0,
    )


# Budgets


@app.get("/api/budgets", response_model=list[BudgetOut])
def list_budgets(db: Session = Depends(get_db), user_id: int = Depends(current_user)):
    return BudgetService(db, user_id).list_all()


@app.post("/api/budgets", response_model=BudgetOut, status_code=201)
def create_budget(
    data: BudgetIn, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return BudgetService(db, user_id).create(data)


@app.get("/api/budgets/{budget_id}", response_model=BudgetOut)
def get_budget(
    budget_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return BudgetService(db, user_id).get(budget_id)


@app.patch("/api/budgets/{budget_id}", response_model=BudgetOut)
def update_budget(
    budget_id: int,
    data: BudgetUpdateIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return BudgetService(db, user_id).update(budget_id, data)


@app.delete("/api/budgets/{budget_id}", status_code=204)
def delete_budget(
    budget_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    BudgetService(db, user_id).delete(budget_id)


@app.get("/api/budgets/{budget_id}/view")
def budget_view(
    budget_id: int,
    month: Optional[str] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    try:
        period = parse_month(month, today=local_today())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return BudgetService(db, user_id).get_budget_view(
        budget_id, period.year, period.month
    )


@app.post("/api/budget-entries/assign", response_model=BudgetEntryOut)
def assign_money(
    data: AssignMoneyIn, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return BudgetService(db, user_id).assign(
        data.category_id, data.year, data.month, data.amount_cents
    )


@app.post("/api/budget-entries/move", response_model=list[BudgetEntryOut])
def move_money(
    data: MoveMoneyIn, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    source, destination = BudgetService(db, user_id).move(
        data.from_category_id,
        data.to_category_id,
        data.year,
        data.month,
        data.amount_cents,
    )
    return [source, destination]


# Category groups and categories


@app.get("/api/budgets/{budget_id}/groups", response_model=list[CategoryGroupOut])
def list_groups(
    budget_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return CategoryService(db, user_id).list_groups(budget_id)


@app.post(
    "/api/budgets/{budget_id}/groups", response_model=CategoryGroupOut, status_code=201
)
def create_group(
    budget_id: int,
    data: CategoryGroupIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return CategoryService(db, user_id).create_group(budget_id, data)


@app.patch("/api/groups/{group_id}", response_model=CategoryGroupOut)
def update_group(
    group_id: int,
    data: CategoryGroupUpdateIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return CategoryService(db, user_id).update_group(group_id, data)


@app.delete("/api/groups/{group_id}", status_code=204)
def delete_group(
    group_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    CategoryService(db, user_id).delete_group(group_id)


@app.get("/api/budgets/{budget_id}/categories", response_model=list[CategoryOut])
def list_categories(
    budget_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return CategoryService(db, user_id).list_categories(budget_id)


@app.post("/api/categories", response_model=CategoryOut, status_code=201)
def create_category(
    data: CategoryIn, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return CategoryService(db, user_id).create_category(data)


@app.get("/api/categories/{category_id}", response_model=CategoryOut)
def get_category(
    category_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return CategoryService(db, user_id).get_category(category_id)


@app.patch("/api/categories/{category_id}", response_model=CategoryOut)
def update_category(
    category_id: int,
    data: CategoryUpdateIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return CategoryService(db, user_id).update_category(category_id, data)


@app.delete("/api/categories/{category_id}", status_code=204)
def delete_category(
    category_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    CategoryService(db, user_id).delete_category(category_id)


@app.get("/api/categories/{category_id}/goal", response_model=GoalOut)
def get_goal(
    category_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return GoalService(db, user_id).get(category_id)


@app.put("/api/categories/{category_id}/goal", response_model=GoalOut)
def upsert_goal(
    category_id: int,
    data: GoalIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return GoalService(db, user_id).upsert(category_id, data)


@app.delete("/api/categories/{category_id}/goal", status_code=204)
def delete_goal(
    category_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    GoalService(db, user_id).delete(category_id)


# Accounts


@app.get(
    "/api/budgets/{budget_id}/accounts", response_model=list[AccountWithBalancesOut]
)
def list_accounts(
    budget_id: int,
    include_closed: bool = False,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    service = AccountService(db, user_id)
    accounts = service.list_all(budget_id, include_closed=include_closed)
    balances = service.balances_for_budget(budget_id)
    return [_account_with_balances(a, balances.get(a.id)) for a in accounts]


@app.post("/api/budgets/{budget_id}/accounts", response_model=AccountOut, status_code=201)
def create_account(
    budget_id: int,
    data: AccountIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return AccountService(db, user_id).create(budget_id, data)


@app.get("/api/accounts/{account_id}", response_model=AccountWithBalancesOut)
def get_account(
    account_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    service = AccountService(db, user_id)
    account = service.get(account_id)
    return _account_with_balances(account, service.calculate_balances(account_id))


@app.patch("/api/accounts/{account_id}", response_model=AccountOut)
def update_account(
    account_id: int,
    data: AccountUpdateIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return AccountService(db, user_id).update(account_id, data)


@app.post("/api/accounts/{account_id}/close", response_model=AccountOut)
def close_account(
    account_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return AccountService(db, user_id).close(account_id)


@app.post("/api/accounts/{account_id}/reopen", response_model=AccountOut)
def reopen_account(
    account_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return AccountService(db, user_id).reopen(account_id)


@app.post(
    "/api/accounts/{account_id}/reconcile/start", response_model=ReconciliationOut
)
def start_reconciliation(
    account_id: int,
    data: ReconcileIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    result = AccountService(db, user_id).start_reconciliation(
        account_id, data.statement_balance_cents
    )
    return ReconciliationOut(
        account_id=result.account_id,
        statement_balance_cents=result.statement_balance_cents,
        cleared_balance_cents=result.cleared_balance_cents,
        difference_cents=result.difference_cents,
    )


@app.post("/api/accounts/{account_id}/reconcile/finish")
def finish_reconciliation(
    account_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    count = AccountService(db, user_id).finish_reconciliation(account_id)
    return {"account_id": account_id, "reconciled": count}


# Transactions


@app.get("/api/budgets/{budget_id}/transactions", response_model=list[TransactionOut])
def list_transactions(
    budget_id: int,
    account_id: Optional[int] = None,
    category_id: Optional[int] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    approved: Optional[bool] = None,
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    filters = TransactionFilters(
        account_id=account_id,
        category_id=category_id,
        start=start,
        end=end,
        approved=approved,
        limit=min(max(limit, 1), 500),
        offset=max(offset, 0),
    )
    return TransactionService(db, user_id).list(budget_id, filters)


@app.get("/api/budgets/{budget_id}/transactions/export.csv")
def export_transactions_endpoint(
    budget_id: int,
    account_id: Optional[int] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    filters = TransactionFilters(
        account_id=account_id, start=start, end=end, limit=100_000
    )
    csv_text = TransactionService(db, user_id).export_csv(budget_id, filters)
    filename = f"transactions_{budget_id}.csv"
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post(
    "/api/budgets/{budget_id}/transactions",
    response_model=list[TransactionOut],
    status_code=201,
)
def create_transaction(
    budget_id: int,
    data: TransactionIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return TransactionService(db, user_id).create(budget_id, data)


@app.get("/api/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return TransactionService(db, user_id).get(transaction_id)


@app.patch("/api/transactions/{transaction_id}", response_model=list[TransactionOut])
def update_transaction(
    transaction_id: int,
    patch: TransactionPatch,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return TransactionService(db, user_id).update(transaction_id, patch)


@app.put("/api/transactions/{transaction_id}/splits", response_model=TransactionOut)
def replace_splits(
    transaction_id: int,
    splits: list[SplitIn],
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return TransactionService(db, user_id).replace_splits(transaction_id, splits)


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    deleted = TransactionService(db, user_id).delete(transaction_id)
    return {"deleted": deleted}


# Payees


@app.get("/api/budgets/{budget_id}/payees", response_model=list[PayeeOut])
def list_payees(
    budget_id: int, db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return PayeeService(db, user_id).list_all(budget_id)


@app.post("/api/budgets/{budget_id}/payees", response_model=PayeeOut, status_code=201)
def create_payee(
    budget_id: int,
    data: PayeeIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return PayeeService(db, user_id).create(budget_id, data)


@app.patch("/api/payees/{payee_id}", response_model=PayeeOut)
def rename_payee(
    payee_id: int,
    data: PayeeIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return PayeeService(db, user_id).rename(payee_id, data)


# Bank import


@app.post("/api/accounts/{account_id}/import", response_model=ImportResultOut)
def import_transactions(
    account_id: int,
    records: list[ImportedTransactionIn],
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    result = ImportService(db, user_id).import_transactions(account_id, records)
    return ImportResultOut(
        created=result.created, skipped=result.skipped, errors=result.errors
    )


@app.post("/api/accounts/{account_id}/import/remove")
def remove_imported(
    account_id: int,
    data: ImportRemoveIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    deleted = ImportService(db, user_id).remove_imported(account_id, data.import_ids)
    return {"deleted": deleted}


@app.post("/api/accounts/{account_id}/import/csv", response_model=ImportResultOut)
async def import_csv(
    account_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    try:
        content = (await request.body()).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="CSV must be UTF-8") from exc
    result = ImportService(db, user_id).import_csv(account_id, content)
    logging.info(
        f"CSV import into account {account_id}: {len(result.created)} created, "
        f"{len(result.skipped)} skipped, {len(result.errors)} errors"
    )
    return ImportResultOut(
        created=result.created, skipped=result.skipped, errors=result.errors
    )
