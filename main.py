import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Sequence

from fastapi import Depends, FastAPI, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import Principal, principal_from_header
from config import get_settings
from database import SessionLocal, engine, init_db
from errors import InternalFault, TrackerError, ValidationFailed
from models import (
    Budget,
    Category,
    CategoryType,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from reconciliation import BudgetSnapshot
from responses import failure_body, success_body, utc_timestamp
from schemas import (
    BudgetDuplicateIn,
    BudgetIn,
    BudgetListQuery,
    BudgetPatch,
    BudgetTemplateIn,
    BulkTransactionsIn,
    CategoryIn,
    CategoryPatch,
    TransactionIn,
    TransactionPatch,
)
from services import (
    BudgetService,
    CategoryFilters,
    CategoryService,
    Page,
    ReconciledBudget,
    TransactionFilters,
    TransactionService,
    TransactionSummary,
    budget_tags,
)
from validation import MAX_AMOUNT, cents_to_amount

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

API_PREFIX = "/fin-tracker/v1"

app = FastAPI(title="Finance Tracker API")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_principal(authorization: Optional[str] = Header(default=None)) -> Principal:
    return principal_from_header(authorization)


@app.on_event("startup")
def startup_event():
    if settings.auto_create_tables:
        init_db(engine)
        logger.info("startup: tables created")


def respond(data: Any, status_code: int = 200) -> JSONResponse:
    body = success_body(jsonable_encoder(data), timestamp=utc_timestamp())
    return JSONResponse(status_code=status_code, content=body)


def fail(status_code: int, message: str, status: str) -> JSONResponse:
    body = failure_body(message, status=status, timestamp=utc_timestamp())
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(TrackerError)
async def tracker_error_handler(request: Request, exc: TrackerError):
    return fail(exc.status_code, exc.message, exc.status)


@app.exception_handler(InternalFault)
async def internal_fault_handler(request: Request, exc: InternalFault):
    logger.error(f"internal_fault: path={request.url.path} reason={exc.message}")
    return fail(exc.status_code, exc.message, exc.status)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return fail(400, _validation_message(exc.errors()), "Fail")


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    status = "error" if exc.status_code >= 500 else "Fail"
    return fail(exc.status_code, str(exc.detail), status)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"unhandled error: path={request.url.path}")
    return fail(500, "System Failure", "error")


def _validation_message(errors: Sequence[Any]) -> str:
    if not errors:
        return "Invalid request"
    first = errors[0]
    reason = (first.get("ctx") or {}).get("error")
    if reason is not None:
        return str(reason)
    location = ".".join(
        str(part) for part in first.get("loc", ()) if part not in ("body", "query")
    )
    message = str(first.get("msg", "Invalid request"))
    return f"{location}: {message}" if location else message


def category_out(category: Category) -> dict[str, Any]:
    return {
        "id": category.id,
        "name": category.name,
        "type": category.type,
        "color": category.color,
        "icon": category.icon,
        "archived": category.archived,
        "archived_at": category.archived_at,
        "created_at": category.created_at,
        "updated_at": category.updated_at,
    }


def transaction_out(txn: Transaction) -> dict[str, Any]:
    pattern = None
    if txn.recurrence_frequency is not None:
        pattern = {
            "frequency": txn.recurrence_frequency,
            "interval": txn.recurrence_interval,
            "end_date": txn.recurrence_end_date,
        }
    return {
        "id": txn.id,
        "type": txn.type,
        "category_id": txn.category_id,
        "category_name": txn.category_name,
        "amount": cents_to_amount(txn.amount_cents),
        "currency": txn.currency_code,
        "note": txn.note,
        "date": txn.date,
        "status": txn.status,
        "tags": txn.tags,
        "location": txn.location,
        "source": txn.source,
        "is_recurring": txn.is_recurring,
        "recurring_pattern": pattern,
        "created_at": txn.created_at,
        "updated_at": txn.updated_at,
    }


def summary_out(summary: TransactionSummary) -> dict[str, Any]:
    return {
        "total_income": cents_to_amount(summary.total_income_cents),
        "total_expense": cents_to_amount(summary.total_expense_cents),
        "total_transfer": cents_to_amount(summary.total_transfer_cents),
        "average_amount": round(summary.average_amount_cents / 100, 2),
        "transaction_count": summary.transaction_count,
    }


def snapshot_out(snapshot: BudgetSnapshot) -> dict[str, Any]:
    return {
        "total_budget": cents_to_amount(snapshot.total_budget_cents),
        "total_spent": cents_to_amount(snapshot.total_spent_cents),
        "remaining_budget": cents_to_amount(snapshot.remaining_cents),
        "utilization_percentage": round(snapshot.utilization_percentage, 1),
        "budget_status": snapshot.status,
    }


def breakdown_out(snapshot: BudgetSnapshot) -> list[dict[str, Any]]:
    return [
        {
            "category_id": row.category_id,
            "category": row.name,
            "color": row.color,
            "allocated_amount": cents_to_amount(row.allocated_cents),
            "spent_amount": cents_to_amount(row.spent_cents),
            "remaining_amount": cents_to_amount(row.remaining_cents),
            "percentage": round(row.percentage, 1),
            "status": row.status,
        }
        for row in snapshot.categories
    ]


def budget_out(item: ReconciledBudget) -> dict[str, Any]:
    budget: Budget = item.budget
    return {
        "id": budget.id,
        "name": budget.name,
        "type": budget.type,
        "period": {"start_date": budget.start_date, "end_date": budget.end_date},
        "categories": breakdown_out(item.snapshot),
        **snapshot_out(item.snapshot),
        "currency": budget.currency_code,
        "status": budget.status,
        "notifications": {
            "enabled": budget.notifications_enabled,
            "threshold": budget.notification_threshold,
            "email_alerts": budget.email_alerts,
            "push_alerts": budget.push_alerts,
        },
        "tags": budget_tags(budget),
        "notes": budget.notes,
        "last_reconciled_at": budget.last_reconciled_at,
        "created_at": budget.created_at,
        "updated_at": budget.updated_at,
    }


def page_out(page: Page, items: list[Any]) -> dict[str, Any]:
    return {
        "items": items,
        "pagination": {
            "page": page.page,
            "limit": page.limit,
            "total": page.total,
            "pages": page.pages,
            "has_next": page.has_next,
            "has_prev": page.has_prev,
        },
    }


def _query_int(request: Request, name: str, default: int) -> int:
    raw = request.query_params.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValidationFailed(f"Invalid {name} parameter") from exc


def _query_datetime(request: Request, name: str) -> Optional[datetime]:
    raw = request.query_params.get(name)
    if not raw:
        return None
    try:
        value = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValidationFailed(f"Invalid {name} date") from exc
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _query_decimal(request: Request, name: str) -> Optional[Decimal]:
    raw = request.query_params.get(name)
    if not raw:
        return None
    try:
        value = Decimal(raw)
    except InvalidOperation as exc:
        raise ValidationFailed(f"Invalid {name} parameter") from exc
    if not value.is_finite() or abs(value) > MAX_AMOUNT:
        raise ValidationFailed(f"Invalid {name} parameter")
    return value


def _query_bool(request: Request, name: str) -> bool:
    raw = request.query_params.get(name, "")
    return raw.strip().lower() in ("1", "true", "yes", "on")


def filters_from_request(request: Request) -> TransactionFilters:
    params = request.query_params
    txn_type = None
    if params.get("type"):
        try:
            txn_type = TransactionType(params["type"])
        except ValueError as exc:
            raise ValidationFailed("Invalid type filter") from exc
    status = None
    if params.get("status"):
        try:
            status = TransactionStatus(params["status"])
        except ValueError as exc:
            raise ValidationFailed("Invalid status filter") from exc
    category_id = _query_int(request, "category_id", 0) or None
    tags = [t.strip() for t in params.get("tags", "").split(",") if t.strip()]
    return TransactionFilters(
        type=txn_type,
        category_id=category_id,
        status=status,
        start=_query_datetime(request, "start_date"),
        end=_query_datetime(request, "end_date"),
        min_amount=_query_decimal(request, "min_amount"),
        max_amount=_query_decimal(request, "max_amount"),
        tags=tags,
        query=params.get("search") or None,
    )


@app.get("/health")
def health():
    return respond({"status": "ok"})


# Categories


@app.post(f"{API_PREFIX}/categories")
def create_category(
    data: CategoryIn,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    category = CategoryService(db, principal.user_id).create(data)
    return respond(category_out(category), status_code=201)


@app.get(f"{API_PREFIX}/categories")
def list_categories(
    request: Request,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    category_type = None
    if request.query_params.get("type"):
        try:
            category_type = CategoryType(request.query_params["type"])
        except ValueError as exc:
            raise ValidationFailed("Invalid type filter") from exc
    filters = CategoryFilters(
        type=category_type,
        search=request.query_params.get("search") or None,
        include_archived=_query_bool(request, "include_archived"),
    )
    page = CategoryService(db, principal.user_id).list(
        filters,
        page=_query_int(request, "page", 1),
        limit=_query_int(request, "limit", 50),
    )
    return respond(page_out(page, [category_out(c) for c in page.items]))


@app.get(f"{API_PREFIX}/categories/{{category_id}}")
def get_category(
    category_id: int,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    category = CategoryService(db, principal.user_id).get(category_id)
    return respond(category_out(category))


@app.patch(f"{API_PREFIX}/categories/{{category_id}}")
def update_category(
    category_id: int,
    data: CategoryPatch,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    category = CategoryService(db, principal.user_id).update(category_id, data)
    return respond(category_out(category))


@app.post(f"{API_PREFIX}/categories/{{category_id}}/archive")
def archive_category(
    category_id: int,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    category = CategoryService(db, principal.user_id).archive(category_id)
    return respond(category_out(category))


@app.post(f"{API_PREFIX}/categories/{{category_id}}/restore")
def restore_category(
    category_id: int,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    category = CategoryService(db, principal.user_id).restore(category_id)
    return respond(category_out(category))


# Transactions


@app.post(f"{API_PREFIX}/transactions")
def create_transaction(
    data: TransactionIn,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, principal.user_id).create(data)
    return respond(transaction_out(txn), status_code=201)


@app.post(f"{API_PREFIX}/transactions/bulk")
def bulk_import_transactions(
    data: BulkTransactionsIn,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    created = TransactionService(db, principal.user_id).bulk_import(data.transactions)
    return respond(
        {"count": len(created), "items": [transaction_out(t) for t in created]},
        status_code=201,
    )


@app.get(f"{API_PREFIX}/transactions")
def list_transactions(
    request: Request,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    page = TransactionService(db, principal.user_id).list(
        filters_from_request(request),
        page=_query_int(request, "page", 1),
        limit=_query_int(request, "limit", 20),
        sort_by=request.query_params.get("sort_by", "date"),
        sort_order=request.query_params.get("sort_order", "desc"),
    )
    body = page_out(page, [transaction_out(t) for t in page.items])
    body["summary"] = summary_out(page.summary)
    return respond(body)


@app.get(f"{API_PREFIX}/transactions/analytics")
def transaction_analytics(
    request: Request,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    result = TransactionService(db, principal.user_id).analytics(
        _query_datetime(request, "start_date"), _query_datetime(request, "end_date")
    )

    def with_amounts(row: dict[str, Any]) -> dict[str, Any]:
        out = {k: v for k, v in row.items() if not k.endswith("_cents")}
        out["total"] = cents_to_amount(row["total_cents"])
        if "average_cents" in row:
            out["average"] = round(row["average_cents"] / 100, 2)
        return out

    return respond(
        {
            "summary": summary_out(result.summary),
            "category_breakdown": [with_amounts(r) for r in result.category_breakdown],
            "monthly_trends": [with_amounts(r) for r in result.monthly_trends],
            "top_spending_categories": [
                with_amounts(r) for r in result.top_spending_categories
            ],
            "net_savings": cents_to_amount(result.net_savings_cents),
        }
    )


@app.get(f"{API_PREFIX}/transactions/{{transaction_id}}")
def get_transaction(
    transaction_id: int,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, principal.user_id).get(transaction_id)
    return respond(transaction_out(txn))


@app.patch(f"{API_PREFIX}/transactions/{{transaction_id}}")
def update_transaction(
    transaction_id: int,
    data: TransactionPatch,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, principal.user_id).update(transaction_id, data)
    return respond(transaction_out(txn))


@app.delete(f"{API_PREFIX}/transactions/{{transaction_id}}")
def delete_transaction(
    transaction_id: int,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    TransactionService(db, principal.user_id).delete(transaction_id)
    return respond({"id": transaction_id, "deleted": True})


# Budgets


@app.post(f"{API_PREFIX}/budgets")
def create_budget(
    data: BudgetIn,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    item = BudgetService(db, principal.user_id).create(data)
    return respond(budget_out(item), status_code=201)


@app.get(f"{API_PREFIX}/budgets")
def list_budgets(
    request: Request,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    try:
        query = BudgetListQuery(
            status=request.query_params.get("status") or None,
            type=request.query_params.get("type") or None,
        )
    except ValidationError as exc:
        raise ValidationFailed(_validation_message(exc.errors())) from exc
    page = BudgetService(db, principal.user_id).list(
        status=query.status,
        budget_type=query.type,
        page=_query_int(request, "page", 1),
        limit=_query_int(request, "limit", 10),
    )
    return respond(page_out(page, [budget_out(item) for item in page.items]))


@app.get(f"{API_PREFIX}/budgets/overview")
def budget_overview(
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    overview = BudgetService(db, principal.user_id).overview()
    return respond(
        {
            "total_budgets": len(overview.budgets),
            "total_allocated": cents_to_amount(overview.total_budget_cents),
            "total_spent": cents_to_amount(overview.total_spent_cents),
            "total_remaining": cents_to_amount(overview.remaining_cents),
            "average_utilization": round(overview.average_utilization, 1),
            "budgets": [
                {
                    "id": item.budget.id,
                    "name": item.budget.name,
                    "type": item.budget.type,
                    "period": {
                        "start_date": item.budget.start_date,
                        "end_date": item.budget.end_date,
                    },
                    **snapshot_out(item.snapshot),
                }
                for item in overview.budgets
            ],
        }
    )


@app.post(f"{API_PREFIX}/budgets/template")
def create_budget_from_template(
    data: BudgetTemplateIn,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    item = BudgetService(db, principal.user_id).create_from_template(data)
    return respond(budget_out(item), status_code=201)


@app.get(f"{API_PREFIX}/budgets/{{budget_id}}")
def get_budget(
    budget_id: int,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    item = BudgetService(db, principal.user_id).get(budget_id)
    return respond(budget_out(item))


@app.put(f"{API_PREFIX}/budgets/{{budget_id}}")
def replace_budget(
    budget_id: int,
    data: BudgetIn,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    patch = BudgetPatch.model_validate(data.model_dump())
    item = BudgetService(db, principal.user_id).update(budget_id, patch)
    return respond(budget_out(item))


@app.patch(f"{API_PREFIX}/budgets/{{budget_id}}")
def update_budget(
    budget_id: int,
    data: BudgetPatch,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    item = BudgetService(db, principal.user_id).update(budget_id, data)
    return respond(budget_out(item))


@app.delete(f"{API_PREFIX}/budgets/{{budget_id}}")
def delete_budget(
    budget_id: int,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    budget = BudgetService(db, principal.user_id).delete(budget_id)
    return respond({"id": budget.id, "status": budget.status})


@app.get(f"{API_PREFIX}/budgets/{{budget_id}}/analytics")
def budget_analytics(
    budget_id: int,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    result = BudgetService(db, principal.user_id).analytics(budget_id)
    return respond(
        {
            "budget": budget_out(ReconciledBudget(result.budget, result.snapshot)),
            "category_breakdown": breakdown_out(result.snapshot),
            "recent_transactions": [
                transaction_out(t) for t in result.recent_transactions
            ],
            "alerts": [
                {
                    "type": alert.level,
                    "message": alert.message,
                    "category": alert.scope,
                    "category_id": alert.category_id,
                }
                for alert in result.alerts
            ],
        }
    )


@app.post(f"{API_PREFIX}/budgets/{{budget_id}}/duplicate")
def duplicate_budget(
    budget_id: int,
    data: BudgetDuplicateIn,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    item = BudgetService(db, principal.user_id).duplicate(budget_id, data)
    return respond(budget_out(item), status_code=201)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
