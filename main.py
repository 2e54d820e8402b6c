import logging
from typing import Any, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import AuthService, admin_payload, ensure_bootstrap_admin, read_token
from cache import TTLCache, get_cache
from config import get_settings
from database import SessionLocal, session_scope
from errors import DomainError
from locks import KeyedLock, get_rollup_locks
from models import Admin, CategoryType
from scheduler import SchedulerManager
from schemas import (
    BudgetYearIn,
    BudgetYearUpdate,
    BulkTransactionsIn,
    CategoryIn,
    CategoryUpdate,
    FiscalYearTransactionIn,
    LoginIn,
    TransactionIn,
    TransactionUpdate,
)
from services import (
    BudgetYearService,
    CategoryService,
    ReportService,
    TransactionFilters,
    TransactionService,
    category_to_dict,
    transaction_to_dict,
    year_to_dict,
)


logger = logging.getLogger(__name__)

app = FastAPI(title="APBD Budget Backend")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    with session_scope() as session:
        ensure_bootstrap_admin(session)
    if get_settings().scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def ok(data: Any = None, message: Optional[str] = None, status_code: int = 200) -> JSONResponse:
    body: dict[str, Any] = {"success": True}
    if data is not None:
        body["data"] = data
    if message:
        body["message"] = message
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def fail(status_code: int, message: str, error: Optional[str] = None) -> JSONResponse:
    body: dict[str, Any] = {"success": False, "message": message}
    if error and not get_settings().is_production:
        body["error"] = error
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(DomainError)
def domain_error_handler(request: Request, exc: DomainError):
    if exc.status_code >= 500:
        logger.error(f"request_failed: {request.method} {request.url.path}: {exc}")
        return fail(exc.status_code, str(exc), repr(exc.__cause__ or exc))
    return fail(exc.status_code, str(exc))


@app.exception_handler(RequestValidationError)
def request_validation_handler(request: Request, exc: RequestValidationError):
    messages = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        messages.append(f"{location}: {err.get('msg')}" if location else err.get("msg"))
    return fail(400, "; ".join(messages) or "Invalid request")


@app.exception_handler(StarletteHTTPException)
def http_error_handler(request: Request, exc: StarletteHTTPException):
    return fail(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"request_failed: {request.method} {request.url.path}")
    return fail(500, "Internal server error", repr(exc))


def require_admin(
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> Admin:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Access token is required")
    payload = read_token(authorization[7:].strip())
    if payload is None:
        raise HTTPException(status_code=403, detail="Invalid or expired token")
    admin = db.get(Admin, payload["id"])
    if not admin:
        raise HTTPException(status_code=403, detail="Invalid or expired token")
    return admin


def transaction_service(
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_cache),
    locks: KeyedLock = Depends(get_rollup_locks),
) -> TransactionService:
    return TransactionService(db, cache=cache, locks=locks)


@app.get("/health")
def health():
    return ok({"status": "ok"})


# auth


@app.post("/auth/login")
def login(payload: LoginIn, db: Session = Depends(get_db)):
    admin, token = AuthService(db).login(payload.username, payload.password)
    return ok({"token": token, "user": admin_payload(admin)}, "Login successful")


@app.get("/auth/verify")
def verify(admin: Admin = Depends(require_admin), db: Session = Depends(get_db)):
    return ok({"user": admin_payload(AuthService(db).verify(admin.id))})


@app.post("/auth/logout")
def logout(admin: Admin = Depends(require_admin)):
    logger.info(f"auth: logout admin_id={admin.id}")
    return ok(message="Logout successful")


# budget years


@app.get("/years")
def list_years(db: Session = Depends(get_db), cache: TTLCache = Depends(get_cache)):
    return ok(BudgetYearService(db, cache).list_all())


@app.get("/years/{year_id}")
def get_year(year_id: int, db: Session = Depends(get_db), cache: TTLCache = Depends(get_cache)):
    return ok(BudgetYearService(db, cache).get_detail(year_id))


@app.post("/years", status_code=201)
def create_year(
    payload: BudgetYearIn,
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_cache),
    admin: Admin = Depends(require_admin),
):
    year = BudgetYearService(db, cache).create(payload)
    return ok(year_to_dict(year), "Budget year created", status_code=201)


@app.put("/years/{year_id}")
def update_year(
    year_id: int,
    payload: BudgetYearUpdate,
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_cache),
    admin: Admin = Depends(require_admin),
):
    year = BudgetYearService(db, cache).update(year_id, payload)
    return ok(year_to_dict(year), "Budget year updated")


@app.delete("/years/{year_id}")
def delete_year(
    year_id: int,
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_cache),
    admin: Admin = Depends(require_admin),
):
    BudgetYearService(db, cache).delete(year_id)
    return ok(message="Budget year deleted")


# categories


@app.get("/categories")
def list_categories(
    type: Optional[CategoryType] = None,
    level: Optional[int] = None,
    parent: Optional[int] = None,
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_cache),
):
    return ok(CategoryService(db, cache).list(type, level, parent))


@app.get("/categories/tree")
def category_tree(
    type: Optional[CategoryType] = None,
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_cache),
):
    return ok(CategoryService(db, cache).tree(type))


@app.get("/categories/{category_id}")
def get_category(
    category_id: int, db: Session = Depends(get_db), cache: TTLCache = Depends(get_cache)
):
    return ok(CategoryService(db, cache).get_detail(category_id))


@app.post("/categories", status_code=201)
def create_category(
    payload: CategoryIn,
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_cache),
    admin: Admin = Depends(require_admin),
):
    category = CategoryService(db, cache).create(payload)
    return ok(category_to_dict(category), "Category created", status_code=201)


@app.put("/categories/{category_id}")
def update_category(
    category_id: int,
    payload: CategoryUpdate,
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_cache),
    admin: Admin = Depends(require_admin),
):
    category = CategoryService(db, cache).update(category_id, payload)
    return ok(category_to_dict(category), "Category updated")


@app.delete("/categories/{category_id}")
def delete_category(
    category_id: int,
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_cache),
    admin: Admin = Depends(require_admin),
):
    CategoryService(db, cache).delete(category_id)
    return ok(message="Category deleted")


# transactions


@app.get("/transactions")
def list_transactions(
    year: Optional[int] = None,
    category: Optional[int] = None,
    type: Optional[CategoryType] = None,
    level: Optional[int] = None,
    service: TransactionService = Depends(transaction_service),
):
    filters = TransactionFilters(fiscal_year=year, category_id=category, type=type, level=level)
    return ok(service.list(filters))


@app.get("/transactions/totals")
def transaction_totals(
    year: Optional[int] = None,
    type: Optional[CategoryType] = None,
    service: TransactionService = Depends(transaction_service),
):
    return ok(service.totals(year, type))


@app.get("/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int, service: TransactionService = Depends(transaction_service)
):
    return ok(service.get_detail(transaction_id))


@app.post("/transactions", status_code=201)
def create_transaction(
    payload: TransactionIn,
    service: TransactionService = Depends(transaction_service),
    admin: Admin = Depends(require_admin),
):
    txn = service.create(payload)
    return ok(transaction_to_dict(txn), "Transaction created", status_code=201)


@app.post("/transactions/bulk", status_code=201)
def bulk_create_transactions(
    payload: BulkTransactionsIn,
    service: TransactionService = Depends(transaction_service),
    admin: Admin = Depends(require_admin),
):
    result = service.bulk_create(payload.transactions)
    return ok(
        {"count": result.count},
        f"{result.count} transactions created",
        status_code=201,
    )


@app.put("/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdate,
    service: TransactionService = Depends(transaction_service),
    admin: Admin = Depends(require_admin),
):
    txn = service.update(transaction_id, payload)
    return ok(transaction_to_dict(txn), "Transaction updated")


@app.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    service: TransactionService = Depends(transaction_service),
    admin: Admin = Depends(require_admin),
):
    service.delete(transaction_id)
    return ok(message="Transaction deleted")


@app.post("/apbd/{category_type}", status_code=201)
def create_apbd_entry(
    category_type: CategoryType,
    payload: FiscalYearTransactionIn,
    service: TransactionService = Depends(transaction_service),
    admin: Admin = Depends(require_admin),
):
    txn = service.create_for_fiscal_year(payload, category_type)
    return ok(transaction_to_dict(txn), "Transaction created", status_code=201)


@app.post("/rollup/ensure")
def ensure_rollups(
    service: TransactionService = Depends(transaction_service),
    admin: Admin = Depends(require_admin),
):
    outcomes = service.recalculate_all()
    failed = [o for o in outcomes if not o.ok]
    return ok(
        {"recalculated": len(outcomes), "failed": len(failed)},
        "Rollups ensured",
    )


# reports


@app.get("/dashboard/{year}")
def dashboard(year: int, db: Session = Depends(get_db), cache: TTLCache = Depends(get_cache)):
    return ok(ReportService(db, cache).dashboard(year))


@app.get("/reports/breakdown/{year}/{category_type}")
def breakdown(
    year: int,
    category_type: CategoryType,
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_cache),
):
    return ok(ReportService(db, cache).breakdown(year, category_type))


@app.get("/reports/comparison")
def comparison(
    type: CategoryType = CategoryType.revenue,
    level: int = 2,
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_cache),
):
    return ok(ReportService(db, cache).comparison(type, level))


@app.get("/reports/composition")
def composition(
    type: CategoryType = CategoryType.revenue,
    year: Optional[int] = None,
    level: int = 2,
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_cache),
):
    return ok(ReportService(db, cache).composition(type, year, level))


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
