import logging
from typing import Optional, TypeVar

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from cache import (
    CacheAside,
    CacheHealthMonitor,
    InvalidationCoordinator,
    build_cache_store,
)
from config import get_settings
from database import SessionLocal
from ledger import LedgerUnavailable
from models import TransactionType, User, UserRole
from scheduler import SchedulerManager
from schemas import (
    AdminTransactionIn,
    AdminTransactionListQuery,
    AnalyticsQuery,
    CategoryIn,
    CategoryOut,
    CategoryUpdate,
    ProfileUpdate,
    RoleUpdate,
    TransactionIn,
    TransactionListQuery,
    TransactionUpdate,
    TrendsQuery,
    UserOut,
)
from services import (
    AdminTransactionService,
    AnalyticsService,
    CategoryService,
    NotFoundError,
    TransactionService,
    UserService,
    serialize_transaction,
)

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Finance Tracker")

cache_store = build_cache_store(settings)
cache_aside = CacheAside(cache_store)
invalidator = InvalidationCoordinator(cache_store)
health_monitor = CacheHealthMonitor(cache_store, invalidator)
scheduler_manager = SchedulerManager(health_monitor)

M = TypeVar("M", bound=BaseModel)

ANY_ROLE = (UserRole.admin, UserRole.user, UserRole.read_only)
WRITER_ROLES = (UserRole.admin, UserRole.user)
GLOBAL_VIEW_ROLES = (UserRole.admin, UserRole.read_only)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_cache() -> CacheAside:
    return cache_aside


def get_invalidator() -> InvalidationCoordinator:
    return invalidator


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.detail},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "message": "Validation errors",
            "errors": [err.get("msg") for err in exc.errors()],
        },
    )


@app.exception_handler(LedgerUnavailable)
@app.exception_handler(SQLAlchemyError)
async def ledger_error_handler(request: Request, exc: Exception):
    logger.error(f"ledger_error: path={request.url.path} error={exc}")
    return JSONResponse(
        status_code=500,
        content={"success": False, "message": "Internal server error"},
    )


def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
    # identity is asserted by the authenticating proxy in front of the API
    raw_user_id = request.headers.get("X-User-Id")
    if not raw_user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        return UserService(db).get(int(raw_user_id))
    except ValueError as exc:
        raise HTTPException(status_code=401, detail="Invalid user") from exc


def require_roles(*roles: UserRole):
    def dependency(user: User = Depends(get_current_user)) -> User:
        if user.role not in roles:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return user

    return dependency


def query_from_request(model: type[M], request: Request) -> M:
    try:
        return model.model_validate(dict(request.query_params))
    except ValidationError as exc:
        raise RequestValidationError(exc.errors()) from exc


def status_for(exc: ValueError) -> int:
    return 404 if isinstance(exc, NotFoundError) else 400


def respond(data: object, from_cache: bool = False) -> dict:
    return {"success": True, "data": data, "fromCache": from_cache}


@app.get("/health")
def health():
    return {"success": True, "cache": {"available": cache_store.available}}


@app.get("/api/analytics/dashboard")
def analytics_dashboard(
    request: Request,
    db: Session = Depends(get_db),
    cache: CacheAside = Depends(get_cache),
    user: User = Depends(require_roles(*ANY_ROLE)),
):
    query = query_from_request(AnalyticsQuery, request)
    data, from_cache = AnalyticsService(db, cache).user_analytics(user.id, query)
    return respond(data, from_cache)


@app.get("/api/analytics/global")
def analytics_global(
    request: Request,
    db: Session = Depends(get_db),
    cache: CacheAside = Depends(get_cache),
    user: User = Depends(require_roles(*GLOBAL_VIEW_ROLES)),
):
    query = query_from_request(AnalyticsQuery, request)
    data, from_cache = AnalyticsService(db, cache).global_analytics(query)
    return respond(data, from_cache)


@app.get("/api/analytics/categories")
@app.get("/api/categories/stats/user")
def analytics_categories(
    request: Request,
    db: Session = Depends(get_db),
    cache: CacheAside = Depends(get_cache),
    user: User = Depends(require_roles(*ANY_ROLE)),
):
    query = query_from_request(AnalyticsQuery, request)
    data, from_cache = AnalyticsService(db, cache).category_analytics(user.id, query)
    return respond(data, from_cache)


@app.get("/api/analytics/trends")
def analytics_trends(
    request: Request,
    db: Session = Depends(get_db),
    cache: CacheAside = Depends(get_cache),
    user: User = Depends(require_roles(*ANY_ROLE)),
):
    query = query_from_request(TrendsQuery, request)
    data, from_cache = AnalyticsService(db, cache).spending_trends(user.id, query)
    return respond(data, from_cache)


@app.get("/api/categories")
def list_categories(
    type: Optional[TransactionType] = None,
    db: Session = Depends(get_db),
    cache: CacheAside = Depends(get_cache),
    user: User = Depends(require_roles(*ANY_ROLE)),
):
    data, from_cache = CategoryService(db, cache).list_all(type)
    return respond(data, from_cache)


@app.get("/api/categories/{category_id}")
def get_category(
    category_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(*ANY_ROLE)),
):
    try:
        category = CategoryService(db).get(category_id)
    except ValueError as exc:
        raise HTTPException(status_code=status_for(exc), detail=str(exc)) from exc
    return respond(CategoryOut.model_validate(category).model_dump(mode="json"))


@app.post("/api/categories", status_code=201)
def create_category(
    payload: CategoryIn,
    db: Session = Depends(get_db),
    invalidator: InvalidationCoordinator = Depends(get_invalidator),
    user: User = Depends(require_roles(UserRole.admin)),
):
    try:
        category = CategoryService(db, invalidator=invalidator).create(payload)
    except ValueError as exc:
        raise HTTPException(status_code=status_for(exc), detail=str(exc)) from exc
    return {
        "success": True,
        "message": "Category created successfully",
        "data": CategoryOut.model_validate(category).model_dump(mode="json"),
    }


@app.put("/api/categories/{category_id}")
def update_category(
    category_id: int,
    payload: CategoryUpdate,
    db: Session = Depends(get_db),
    invalidator: InvalidationCoordinator = Depends(get_invalidator),
    user: User = Depends(require_roles(UserRole.admin)),
):
    try:
        category = CategoryService(db, invalidator=invalidator).update(
            category_id, payload
        )
    except ValueError as exc:
        raise HTTPException(status_code=status_for(exc), detail=str(exc)) from exc
    return {
        "success": True,
        "message": "Category updated successfully",
        "data": CategoryOut.model_validate(category).model_dump(mode="json"),
    }


@app.delete("/api/categories/{category_id}")
def delete_category(
    category_id: int,
    db: Session = Depends(get_db),
    invalidator: InvalidationCoordinator = Depends(get_invalidator),
    user: User = Depends(require_roles(UserRole.admin)),
):
    try:
        CategoryService(db, invalidator=invalidator).delete(category_id)
    except ValueError as exc:
        raise HTTPException(status_code=status_for(exc), detail=str(exc)) from exc
    return {"success": True, "message": "Category deleted successfully"}


@app.get("/api/transactions")
def list_transactions(
    request: Request,
    db: Session = Depends(get_db),
    cache: CacheAside = Depends(get_cache),
    user: User = Depends(require_roles(*ANY_ROLE)),
):
    query = query_from_request(TransactionListQuery, request)
    data, from_cache = TransactionService(db, user.id, cache).list_page(query)
    return respond(data, from_cache)


@app.get("/api/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(*ANY_ROLE)),
):
    try:
        txn = TransactionService(db, user.id).get(transaction_id)
    except ValueError as exc:
        raise HTTPException(status_code=status_for(exc), detail=str(exc)) from exc
    return respond(serialize_transaction(txn))


@app.post("/api/transactions", status_code=201)
def create_transaction(
    payload: TransactionIn,
    db: Session = Depends(get_db),
    invalidator: InvalidationCoordinator = Depends(get_invalidator),
    user: User = Depends(require_roles(*WRITER_ROLES)),
):
    try:
        txn = TransactionService(db, user.id, invalidator=invalidator).create(payload)
    except ValueError as exc:
        raise HTTPException(status_code=status_for(exc), detail=str(exc)) from exc
    return {
        "success": True,
        "message": "Transaction created successfully",
        "data": serialize_transaction(txn),
    }


@app.put("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdate,
    db: Session = Depends(get_db),
    invalidator: InvalidationCoordinator = Depends(get_invalidator),
    user: User = Depends(require_roles(*WRITER_ROLES)),
):
    try:
        txn = TransactionService(db, user.id, invalidator=invalidator).update(
            transaction_id, payload
        )
    except ValueError as exc:
        raise HTTPException(status_code=status_for(exc), detail=str(exc)) from exc
    return {
        "success": True,
        "message": "Transaction updated successfully",
        "data": serialize_transaction(txn),
    }


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    invalidator: InvalidationCoordinator = Depends(get_invalidator),
    user: User = Depends(require_roles(*WRITER_ROLES)),
):
    try:
        TransactionService(db, user.id, invalidator=invalidator).delete(transaction_id)
    except ValueError as exc:
        raise HTTPException(status_code=status_for(exc), detail=str(exc)) from exc
    return {"success": True, "message": "Transaction deleted successfully"}


@app.get("/api/admin/transactions")
def admin_list_transactions(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(UserRole.admin)),
):
    query = query_from_request(AdminTransactionListQuery, request)
    return respond(AdminTransactionService(db).list_all(query))


@app.post("/api/admin/transactions", status_code=201)
def admin_create_transaction(
    payload: AdminTransactionIn,
    db: Session = Depends(get_db),
    invalidator: InvalidationCoordinator = Depends(get_invalidator),
    user: User = Depends(require_roles(UserRole.admin)),
):
    try:
        txn = AdminTransactionService(db, invalidator=invalidator).create_for(payload)
    except ValueError as exc:
        raise HTTPException(status_code=status_for(exc), detail=str(exc)) from exc
    return {
        "success": True,
        "message": "Transaction created successfully",
        "data": serialize_transaction(txn),
    }


@app.put("/api/admin/transactions/{transaction_id}")
def admin_update_transaction(
    transaction_id: int,
    payload: TransactionUpdate,
    db: Session = Depends(get_db),
    invalidator: InvalidationCoordinator = Depends(get_invalidator),
    user: User = Depends(require_roles(UserRole.admin)),
):
    try:
        txn = AdminTransactionService(db, invalidator=invalidator).update(
            transaction_id, payload
        )
    except ValueError as exc:
        raise HTTPException(status_code=status_for(exc), detail=str(exc)) from exc
    return {
        "success": True,
        "message": "Transaction updated successfully",
        "data": serialize_transaction(txn),
    }


@app.delete("/api/admin/transactions/{transaction_id}")
def admin_delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    invalidator: InvalidationCoordinator = Depends(get_invalidator),
    user: User = Depends(require_roles(UserRole.admin)),
):
    try:
        AdminTransactionService(db, invalidator=invalidator).delete(transaction_id)
    except ValueError as exc:
        raise HTTPException(status_code=status_for(exc), detail=str(exc)) from exc
    return {"success": True, "message": "Transaction deleted successfully"}


def _user_payload(user: User) -> dict:
    return UserOut.model_validate(user).model_dump(mode="json")


@app.get("/api/users/profile")
def get_profile(user: User = Depends(require_roles(*ANY_ROLE))):
    return respond(_user_payload(user))


@app.put("/api/users/profile")
def update_profile(
    payload: ProfileUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(*WRITER_ROLES)),
):
    try:
        updated = UserService(db).update_profile(user.id, payload)
    except ValueError as exc:
        raise HTTPException(status_code=status_for(exc), detail=str(exc)) from exc
    return {
        "success": True,
        "message": "Profile updated successfully",
        "data": _user_payload(updated),
    }


@app.get("/api/users")
@app.get("/api/admin/users")
def list_users(
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(UserRole.admin)),
):
    return respond([_user_payload(u) for u in UserService(db).list_all()])


@app.put("/api/users/{user_id}/role")
@app.put("/api/admin/users/{user_id}/role")
def update_user_role(
    user_id: int,
    payload: RoleUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(UserRole.admin)),
):
    try:
        updated = UserService(db).update_role(user_id, payload)
    except ValueError as exc:
        raise HTTPException(status_code=status_for(exc), detail=str(exc)) from exc
    return {
        "success": True,
        "message": "User role updated successfully",
        "data": _user_payload(updated),
    }


@app.delete("/api/users/{user_id}")
@app.delete("/api/admin/users/{user_id}")
def delete_user(
    user_id: int,
    db: Session = Depends(get_db),
    invalidator: InvalidationCoordinator = Depends(get_invalidator),
    user: User = Depends(require_roles(UserRole.admin)),
):
    try:
        UserService(db, invalidator).delete(user_id, acting_user_id=user.id)
    except ValueError as exc:
        raise HTTPException(status_code=status_for(exc), detail=str(exc)) from exc
    return {"success": True, "message": "User deleted successfully"}


@app.get("/api/admin/stats")
def admin_stats(
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(UserRole.admin)),
):
    return respond(UserService(db).system_stats())
