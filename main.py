import logging
import math
from datetime import date
from typing import Any, Optional

from fastapi import Body, Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from database import get_db
from ledger import ConflictError, NotFoundError
from models import TransactionType
from periods import Period, resolve_period
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountOut,
    AccountUpdateIn,
    BudgetIn,
    BudgetOut,
    BudgetUpdateIn,
    CategoryIn,
    CategoryOut,
    ContributionIn,
    GoalIn,
    GoalOut,
    GoalUpdateIn,
    ImportResultOut,
    TransactionIn,
    TransactionOut,
    TransactionWriteOut,
)
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    GoalService,
    ImportCoordinator,
    ReportService,
    TransactionFilters,
    TransactionService,
)


logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger Tracker")

scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def http_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def period_from_request(request: Request) -> Optional[Period]:
    period_slug = request.query_params.get("period")
    if not period_slug:
        return None
    try:
        return resolve_period(
            period_slug,
            request.query_params.get("start"),
            request.query_params.get("end"),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _int_param(request: Request, name: str) -> Optional[int]:
    raw = request.query_params.get(name)
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {name}") from exc


def filters_from_request(request: Request) -> TransactionFilters:
    txn_type = None
    type_param = request.query_params.get("type")
    if type_param:
        try:
            txn_type = TransactionType(type_param)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid type") from exc
    return TransactionFilters(
        type=txn_type,
        category_id=_int_param(request, "category_id"),
        account_id=_int_param(request, "account_id"),
        query=request.query_params.get("q") or None,
        min_amount_cents=_int_param(request, "min_amount_cents"),
        max_amount_cents=_int_param(request, "max_amount_cents"),
    )


def _optional_date(raw: Optional[str], name: str) -> Optional[date]:
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {name}") from exc


def write_response(txn, warnings: list[str]) -> TransactionWriteOut:
    return TransactionWriteOut(
        transaction=TransactionOut.model_validate(txn), warnings=warnings
    )


# Accounts


@app.get("/api/accounts", response_model=list[AccountOut])
def list_accounts(db: Session = Depends(get_db)):
    return AccountService(db).list_all()


@app.post("/api/accounts", response_model=AccountOut, status_code=201)
def create_account(payload: AccountIn, db: Session = Depends(get_db)):
    return AccountService(db).create(payload)


@app.get("/api/accounts/{account_id}", response_model=AccountOut)
def get_account(account_id: int, db: Session = Depends(get_db)):
    try:
        return AccountService(db).get(account_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put("/api/accounts/{account_id}", response_model=AccountOut)
def update_account(
    account_id: int, payload: AccountUpdateIn, db: Session = Depends(get_db)
):
    try:
        return AccountService(db).update(account_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/api/accounts/{account_id}", status_code=204)
def delete_account(account_id: int, db: Session = Depends(get_db)):
    try:
        AccountService(db).delete(account_id)
    except ValueError as exc:
        raise http_error(exc) from exc


# Categories


@app.get("/api/categories", response_model=list[CategoryOut])
def list_categories(db: Session = Depends(get_db)):
    return CategoryService(db).list_all()


@app.post("/api/categories", response_model=CategoryOut, status_code=201)
def create_category(payload: CategoryIn, db: Session = Depends(get_db)):
    try:
        return CategoryService(db).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put("/api/categories/{category_id}", response_model=CategoryOut)
def rename_category(
    category_id: int,
    name: str = Body(..., embed=True, min_length=1, max_length=100),
    db: Session = Depends(get_db),
):
    try:
        return CategoryService(db).rename(category_id, name)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/api/categories/{category_id}", status_code=204)
def delete_category(category_id: int, db: Session = Depends(get_db)):
    try:
        CategoryService(db).delete(category_id)
    except ValueError as exc:
        raise http_error(exc) from exc


# Budgets


@app.get("/api/budgets", response_model=list[BudgetOut])
def list_budgets(request: Request, db: Session = Depends(get_db)):
    start = _optional_date(request.query_params.get("start"), "start")
    end = _optional_date(request.query_params.get("end"), "end")
    return BudgetService(db).list(start, end)


@app.post("/api/budgets", response_model=BudgetOut, status_code=201)
def create_budget(payload: BudgetIn, db: Session = Depends(get_db)):
    try:
        return BudgetService(db).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/api/budgets/recalculate")
def recalculate_budgets(request: Request, db: Session = Depends(get_db)):
    start = _optional_date(request.query_params.get("start"), "start")
    end = _optional_date(request.query_params.get("end"), "end")
    try:
        count = BudgetService(db).recalculate(start, end)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {
        "message": f"Recalculated spent amounts for {count} budgets",
        "updated_budgets": count,
    }


@app.get("/api/budgets/{budget_id}", response_model=BudgetOut)
def get_budget(budget_id: int, db: Session = Depends(get_db)):
    try:
        return BudgetService(db).get(budget_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put("/api/budgets/{budget_id}", response_model=BudgetOut)
def update_budget(
    budget_id: int, payload: BudgetUpdateIn, db: Session = Depends(get_db)
):
    try:
        return BudgetService(db).update(budget_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/api/budgets/{budget_id}", status_code=204)
def delete_budget(budget_id: int, db: Session = Depends(get_db)):
    try:
        BudgetService(db).delete(budget_id)
    except ValueError as exc:
        raise http_error(exc) from exc


# Transactions


@app.get("/api/transactions")
def api_transactions(request: Request, db: Session = Depends(get_db)):
    period = period_from_request(request)
    filters = filters_from_request(request)
    page = max(_int_param(request, "page") or 1, 1)
    limit = min(max(_int_param(request, "limit") or 50, 1), 100)
    offset = (page - 1) * limit
    txn_service = TransactionService(db)
    items = txn_service.list(period, filters, limit=limit, offset=offset)
    total = txn_service.count(period, filters)
    return {
        "items": [TransactionOut.model_validate(txn).model_dump(mode="json") for txn in items],
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit) if total else 0,
    }


@app.post("/api/transactions", response_model=TransactionWriteOut, status_code=201)
def create_transaction(payload: TransactionIn, db: Session = Depends(get_db)):
    try:
        txn, warnings = TransactionService(db).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return write_response(txn, warnings)


@app.delete("/api/transactions")
def delete_all_transactions(db: Session = Depends(get_db)):
    count, warnings = TransactionService(db).bulk_delete()
    return {"deleted": count, "warnings": warnings}


@app.get("/api/transactions/categories")
def transaction_categories(db: Session = Depends(get_db)):
    return TransactionService(db).unique_categories()


@app.get("/api/transactions/export.csv")
def export_transactions_endpoint(request: Request, db: Session = Depends(get_db)):
    period = period_from_request(request)
    filters = filters_from_request(request)
    csv_text = TransactionService(db).export_csv(period, filters)
    filename = (
        f"transactions_{period.start}_{period.end}.csv" if period else "transactions.csv"
    )
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/api/transactions/import", response_model=ImportResultOut)
def import_transactions(
    payload: list[dict[str, Any]] = Body(...), db: Session = Depends(get_db)
):
    created, warnings = ImportCoordinator(db).import_rows(payload)
    logger.info(f"api_import: rows={len(payload)} imported={len(created)}")
    return ImportResultOut(
        imported=len(created),
        transactions=[TransactionOut.model_validate(t) for t in created],
        warnings=warnings,
    )


@app.post("/api/transactions/import/csv", response_model=ImportResultOut)
async def import_transactions_csv(
    file: UploadFile = File(...), db: Session = Depends(get_db)
):
    try:
        content = (await file.read()).decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="File must be UTF-8 encoded") from exc
    created, warnings = ImportCoordinator(db).import_csv(content)
    return ImportResultOut(
        imported=len(created),
        transactions=[TransactionOut.model_validate(t) for t in created],
        warnings=warnings,
    )


@app.get("/api/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        return TransactionService(db).get(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put("/api/transactions/{transaction_id}", response_model=TransactionWriteOut)
def update_transaction(
    transaction_id: int, payload: TransactionIn, db: Session = Depends(get_db)
):
    try:
        txn, warnings = TransactionService(db).update(transaction_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return write_response(txn, warnings)


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        warnings = TransactionService(db).delete(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"deleted": 1, "warnings": warnings}


# Goals


@app.get("/api/goals", response_model=list[GoalOut])
def list_goals(db: Session = Depends(get_db)):
    return GoalService(db).list_all()


@app.post("/api/goals", response_model=GoalOut, status_code=201)
def create_goal(payload: GoalIn, db: Session = Depends(get_db)):
    return GoalService(db).create(payload)


@app.get("/api/goals/{goal_id}", response_model=GoalOut)
def get_goal(goal_id: int, db: Session = Depends(get_db)):
    try:
        return GoalService(db).get(goal_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put("/api/goals/{goal_id}", response_model=GoalOut)
def update_goal(goal_id: int, payload: GoalUpdateIn, db: Session = Depends(get_db)):
    try:
        return GoalService(db).update(goal_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/api/goals/{goal_id}/contribute", response_model=GoalOut)
def contribute_to_goal(
    goal_id: int, payload: ContributionIn, db: Session = Depends(get_db)
):
    try:
        return GoalService(db).contribute(goal_id, payload.amount_cents)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/api/goals/{goal_id}", status_code=204)
def delete_goal(goal_id: int, db: Session = Depends(get_db)):
    try:
        GoalService(db).delete(goal_id)
    except ValueError as exc:
        raise http_error(exc) from exc


# Reports


@app.get("/api/reports/net-worth")
def report_net_worth(request: Request, db: Session = Depends(get_db)):
    try:
        return ReportService(db).net_worth_trend(_int_param(request, "months"))
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/reports/spending-by-category")
def report_spending_by_category(request: Request, db: Session = Depends(get_db)):
    months = _int_param(request, "months")
    try:
        return ReportService(db).monthly_spending_by_category(
            6 if months is None else months
        )
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/reports/income-vs-expenses")
def report_income_vs_expenses(request: Request, db: Session = Depends(get_db)):
    months = _int_param(request, "months")
    try:
        return ReportService(db).income_vs_expenses(12 if months is None else months)
    except ValueError as exc:
        raise http_error(exc) from exc
