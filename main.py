import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from fastapi import (
    APIRouter,
    Depends,
    FastAPI,
    File,
    Form,
    Header,
    Query,
    Request,
    UploadFile,
)
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from aggregation import alert_payload, summary_payload
from auth import decode_token, issue_token
from config import get_settings
from database import Database
from errors import AppError, AuthError, ValidationError
from models import Category, ExpenseType, Transaction, TransactionType, User
from money import cents_to_amount, parse_amount
from periods import parse_iso_date, parse_month, parse_range
from receipts import ReceiptStore, iter_file
from schemas import (
    CategoryIn,
    CategoryRenameIn,
    IncomeIn,
    IncomeUpdateIn,
    LoginIn,
    SignupIn,
    TransactionIn,
    TransactionUpdate,
    build,
    fold_source,
    unfold_source,
    validation_error_from,
)
from services import (
    CategoryService,
    SummaryService,
    TransactionFilters,
    TransactionService,
    UserService,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


def _load_app_version() -> str:
    try:
        import tomllib
    except ImportError:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError):
        return "unknown"
    return str(data.get("project", {}).get("version", "unknown"))


APP_VERSION = _load_app_version()

router = APIRouter()


def get_db(request: Request) -> Iterator[Session]:
    db = request.app.state.database.session()
    try:
        yield db
    finally:
        db.close()


def get_receipt_store(request: Request) -> ReceiptStore:
    return request.app.state.receipts


def current_user(
    authorization: Optional[str] = Header(None), db: Session = Depends(get_db)
) -> User:
    scheme, _, token = (authorization or "").partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise AuthError("No token provided")
    data = decode_token(token)
    user = UserService(db).get(int(data["id"]))
    if not user:
        raise AuthError("User not found", title="Invalid token")
    return user


def user_json(user: User) -> dict[str, object]:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "created_at": user.created_at.isoformat(),
    }


def category_json(
    category: Category, usage: Optional[tuple[int, int]] = None
) -> dict[str, object]:
    payload: dict[str, object] = {
        "id": category.id,
        "name": category.name,
        "type": category.type.value,
        "created_at": category.created_at.isoformat(),
    }
    if usage is not None:
        count, total = usage
        payload["transactions"] = count
        payload["total"] = cents_to_amount(total)
    return payload


def transaction_json(txn: Transaction) -> dict[str, object]:
    is_expense = txn.type == TransactionType.expense
    payload: dict[str, object] = {
        "id": txn.id,
        "type": txn.type.value,
        "amount": cents_to_amount(txn.amount_cents),
        "description": txn.description,
        "date": txn.date.isoformat(),
        "category_id": txn.category_id,
        "category": (
            {
                "id": txn.category.id,
                "name": txn.category.name,
                "type": txn.category.type.value,
            }
            if txn.category
            else None
        ),
        "account_id": txn.account_id,
        "expense_type": txn.expense_type.value if is_expense else None,
        "start_date": txn.start_date.isoformat() if txn.start_date else None,
        "end_date": txn.end_date.isoformat() if txn.end_date else None,
        "has_receipt": bool(txn.receipt_path),
        "receipt_url": f"/api/receipts/{txn.id}" if txn.receipt_path else None,
        "created_at": txn.created_at.isoformat(),
        "updated_at": txn.updated_at.isoformat(),
    }
    if not is_expense:
        payload["source"] = txn.source
    return payload


def _page(limit: int, offset: int) -> tuple[int, int]:
    return min(max(limit, 1), MAX_PAGE_SIZE), max(offset, 0)


def _optional_int(value: Optional[str], field: str) -> Optional[int]:
    if value is None or not value.strip() or value.strip() == "null":
        return None
    try:
        return int(value)
    except ValueError as exc:
        raise ValidationError(f"{field} must be an integer") from exc


def _optional_date(value: Optional[str], field: str):
    if value is None or not value.strip():
        return None
    return parse_iso_date(value.strip(), field)


def _expense_type(value: str) -> ExpenseType:
    try:
        return ExpenseType(value)
    except ValueError as exc:
        raise ValidationError(
            'Type must be either "one-time" or "recurring"', title="Invalid type"
        ) from exc


def _has_file(upload: Optional[UploadFile]) -> bool:
    return upload is not None and bool(upload.filename)


@router.post("/api/auth/signup", status_code=201)
def signup(payload: SignupIn, db: Session = Depends(get_db)):
    user = UserService(db).signup(payload)
    return {
        "message": "User created successfully",
        "user": user_json(user),
        "token": issue_token(user.id, user.email),
    }


@router.post("/api/auth/login")
def login(payload: LoginIn, db: Session = Depends(get_db)):
    user = UserService(db).authenticate(payload.email, payload.password)
    return {
        "message": "Login successful",
        "user": user_json(user),
        "token": issue_token(user.id, user.email),
    }


@router.get("/api/auth/me")
def me(user: User = Depends(current_user)):
    return {"message": "User profile retrieved successfully", "user": user_json(user)}


@router.get("/api/user/profile")
def profile(user: User = Depends(current_user), db: Session = Depends(get_db)):
    full = UserService(db).profile(user.id)
    data = user_json(full)
    data["accounts"] = [
        {
            "id": account.id,
            "name": account.name,
            "type": account.type,
            "balance": cents_to_amount(account.balance_cents),
        }
        for account in full.accounts
    ]
    return {"message": "User profile retrieved successfully", "profile": data}


@router.get("/api/expenses")
def list_expenses(
    start: Optional[str] = None,
    end: Optional[str] = None,
    category: Optional[str] = None,
    expense_type: Optional[str] = Query(None, alias="type"),
    limit: int = 50,
    offset: int = 0,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    limit, offset = _page(limit, offset)
    filters = TransactionFilters(
        start=_optional_date(start, "start"),
        end=_optional_date(end, "end"),
        category=(category or "").strip() or None,
        type=TransactionType.expense,
        expense_type=_expense_type(expense_type) if expense_type else None,
    )
    service = TransactionService(db, user.id)
    if filters.narrows():
        expenses = service.list_with_filters(filters, limit=limit, offset=offset)
    else:
        expenses = service.list_for_user(
            limit=limit, offset=offset, txn_type=TransactionType.expense
        )
    return {
        "message": "Expenses retrieved successfully",
        "expenses": [transaction_json(txn) for txn in expenses],
        "total": len(expenses),
        "filters": {
            "start": start,
            "end": end,
            "category": category,
            "type": expense_type,
        },
        "pagination": {"limit": limit, "offset": offset},
    }


@router.get("/api/expenses/{expense_id}")
def get_expense(
    expense_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    txn = TransactionService(db, user.id).get(expense_id, TransactionType.expense)
    return {"message": "Expense retrieved successfully", "expense": transaction_json(txn)}


@router.post("/api/expenses", status_code=201)
def create_expense(
    amount: Optional[str] = Form(None),
    date: Optional[str] = Form(None),
    category_id: Optional[str] = Form(None, alias="categoryId"),
    account_id: Optional[str] = Form(None, alias="accountId"),
    description: Optional[str] = Form(None),
    expense_type: str = Form("one-time", alias="type"),
    start_date: Optional[str] = Form(None, alias="startDate"),
    end_date: Optional[str] = Form(None, alias="endDate"),
    receipt: Optional[UploadFile] = File(None),
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
    store: ReceiptStore = Depends(get_receipt_store),
):
    has_file = _has_file(receipt)
    if has_file:
        store.validate(receipt.filename, receipt.content_type)
    if not amount or not date:
        raise ValidationError(
            "Amount and date are required", title="Missing required fields"
        )
    data = build(
        TransactionIn,
        amount_cents=parse_amount(amount),
        type=TransactionType.expense,
        date=parse_iso_date(date.strip()),
        category_id=_optional_int(category_id, "categoryId"),
        account_id=_optional_int(account_id, "accountId"),
        description=(description or "").strip() or None,
        expense_type=_expense_type(expense_type or "one-time"),
        start_date=_optional_date(start_date, "startDate"),
        end_date=_optional_date(end_date, "endDate"),
    )

    receipt_path = (
        store.save(receipt.filename, receipt.content_type, receipt.file)
        if has_file
        else None
    )
    try:
        txn = TransactionService(db, user.id).create(data, receipt_path=receipt_path)
    except Exception:
        store.remove(receipt_path)
        raise
    logger.info("expense_created: user_id=%s expense_id=%s", user.id, txn.id)
    return {"message": "Expense created successfully", "expense": transaction_json(txn)}


@router.put("/api/expenses/{expense_id}")
def update_expense(
    expense_id: int,
    amount: Optional[str] = Form(None),
    date: Optional[str] = Form(None),
    category_id: Optional[str] = Form(None, alias="categoryId"),
    account_id: Optional[str] = Form(None, alias="accountId"),
    description: Optional[str] = Form(None),
    expense_type: Optional[str] = Form(None, alias="type"),
    start_date: Optional[str] = Form(None, alias="startDate"),
    end_date: Optional[str] = Form(None, alias="endDate"),
    receipt: Optional[UploadFile] = File(None),
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
    store: ReceiptStore = Depends(get_receipt_store),
):
    has_file = _has_file(receipt)
    if has_file:
        store.validate(receipt.filename, receipt.content_type)

    changes: dict[str, object] = {}
    if amount is not None:
        changes["amount_cents"] = parse_amount(amount)
    if date is not None:
        changes["date"] = parse_iso_date(date.strip())
    if category_id is not None:
        changes["category_id"] = _optional_int(category_id, "categoryId")
    if account_id is not None:
        changes["account_id"] = _optional_int(account_id, "accountId")
    if description is not None:
        changes["description"] = description.strip() or None
    if expense_type is not None:
        changes["expense_type"] = _expense_type(expense_type)
    if start_date is not None:
        changes["start_date"] = _optional_date(start_date, "startDate")
    if end_date is not None:
        changes["end_date"] = _optional_date(end_date, "endDate")
    data = build(TransactionUpdate, **changes)

    service = TransactionService(db, user.id)
    if not changes and not has_file:
        raise ValidationError("No valid fields to update", title="No updates provided")
    service.get(expense_id, TransactionType.expense)

    receipt_path = (
        store.save(receipt.filename, receipt.content_type, receipt.file)
        if has_file
        else None
    )
    try:
        txn, replaced = service.update(
            expense_id,
            data,
            txn_type=TransactionType.expense,
            receipt_path=receipt_path,
        )
    except Exception:
        store.remove(receipt_path)
        raise
    store.remove(replaced)
    return {"message": "Expense updated successfully", "expense": transaction_json(txn)}


@router.delete("/api/expenses/{expense_id}")
def delete_expense(
    expense_id: int,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
    store: ReceiptStore = Depends(get_receipt_store),
):
    txn = TransactionService(db, user.id).delete(expense_id, TransactionType.expense)
    store.remove(txn.receipt_path)
    return {"message": "Expense deleted successfully", "expense": transaction_json(txn)}


@router.get("/api/incomes")
def list_incomes(
    start: Optional[str] = None,
    end: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    limit, offset = _page(limit, offset)
    filters = TransactionFilters(
        start=_optional_date(start, "start"),
        end=_optional_date(end, "end"),
        type=TransactionType.income,
    )
    service = TransactionService(db, user.id)
    if filters.narrows():
        incomes = service.list_with_filters(filters, limit=limit, offset=offset)
    else:
        incomes = service.list_for_user(
            limit=limit, offset=offset, txn_type=TransactionType.income
        )
    return {
        "message": "Incomes retrieved successfully",
        "incomes": [transaction_json(txn) for txn in incomes],
        "total": len(incomes),
        "filters": {"start": start, "end": end},
        "pagination": {"limit": limit, "offset": offset},
    }


@router.get("/api/incomes/{income_id}")
def get_income(
    income_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    txn = TransactionService(db, user.id).get(income_id, TransactionType.income)
    return {"message": "Income retrieved successfully", "income": transaction_json(txn)}


@router.post("/api/incomes", status_code=201)
def create_income(
    payload: IncomeIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    data = build(
        TransactionIn,
        amount_cents=parse_amount(payload.amount),
        type=TransactionType.income,
        date=parse_iso_date(payload.date.strip()),
        category_id=payload.category_id,
        account_id=payload.account_id,
        description=fold_source(payload.source, payload.description),
        source=(payload.source or "").strip() or None,
    )
    txn = TransactionService(db, user.id).create(data)
    logger.info("income_created: user_id=%s income_id=%s", user.id, txn.id)
    return {"message": "Income created successfully", "income": transaction_json(txn)}


@router.put("/api/incomes/{income_id}")
def update_income(
    income_id: int,
    payload: IncomeUpdateIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    provided = payload.model_fields_set
    changes: dict[str, object] = {}
    if "amount" in provided:
        changes["amount_cents"] = parse_amount(payload.amount)
    if "date" in provided:
        changes["date"] = parse_iso_date((payload.date or "").strip())
    if "category_id" in provided:
        changes["category_id"] = payload.category_id
    if "account_id" in provided:
        changes["account_id"] = payload.account_id
    service = TransactionService(db, user.id)
    if "description" in provided or "source" in provided:
        stored = service.get(income_id, TransactionType.income)
        if "source" in provided:
            source = (payload.source or "").strip() or None
            changes["source"] = source
        else:
            source = stored.source
        if "description" in provided:
            text = payload.description
        else:
            text = unfold_source(stored.description, stored.source)
        changes["description"] = fold_source(source, text)

    txn, _ = service.update(
        income_id,
        build(TransactionUpdate, **changes),
        txn_type=TransactionType.income,
    )
    return {"message": "Income updated successfully", "income": transaction_json(txn)}


@router.delete("/api/incomes/{income_id}")
def delete_income(
    income_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    txn = TransactionService(db, user.id).delete(income_id, TransactionType.income)
    return {"message": "Income deleted successfully", "income": transaction_json(txn)}


@router.get("/api/categories")
def list_categories(user: User = Depends(current_user), db: Session = Depends(get_db)):
    service = CategoryService(db, user.id)
    usage = service.usage()
    categories = [
        category_json(category, usage.get(category.id, (0, 0)))
        for category in service.list_all()
    ]
    return {
        "message": "Categories retrieved successfully",
        "categories": categories,
        "total": len(categories),
    }


@router.post("/api/categories", status_code=201)
def create_category(
    payload: CategoryIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    category = CategoryService(db, user.id).create(payload)
    return {"message": "Category created successfully", "category": category_json(category)}


@router.put("/api/categories/{category_id}")
def rename_category(
    category_id: int,
    payload: CategoryRenameIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    category = CategoryService(db, user.id).rename(category_id, payload.name)
    return {"message": "Category updated successfully", "category": category_json(category)}


@router.delete("/api/categories/{category_id}")
def delete_category(
    category_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    category = CategoryService(db, user.id).delete(category_id)
    return {"message": "Category deleted successfully", "category": category_json(category)}


@router.get("/api/summary/monthly")
def monthly_summary(
    month: Optional[str] = None,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    period = parse_month(month)
    summary = SummaryService(db, user.id).monthly(period)
    return {
        "message": "Monthly summary retrieved successfully",
        "period": period.slug,
        "summary": summary_payload(summary),
    }


@router.get("/api/summary/alerts")
def summary_alerts(user: User = Depends(current_user), db: Session = Depends(get_db)):
    period, alert = SummaryService(db, user.id).alerts()
    payload = alert_payload(alert)
    payload["current_month"] = period.slug
    return payload


@router.get("/api/summary")
def range_summary(
    start: Optional[str] = None,
    end: Optional[str] = None,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    period = parse_range(start, end)
    summary = SummaryService(db, user.id).for_range(period)
    return {
        "message": "Summary retrieved successfully",
        "period": {"start": period.start.isoformat(), "end": period.end.isoformat()},
        "summary": summary_payload(summary, include_breakdown=True),
    }


@router.get("/api/receipts/{expense_id}")
def get_receipt(
    expense_id: int,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
    store: ReceiptStore = Depends(get_receipt_store),
):
    txn = TransactionService(db, user.id).get(expense_id, TransactionType.expense)
    receipt = store.resolve(txn)
    return StreamingResponse(
        iter_file(receipt.path),
        media_type=receipt.media_type,
        headers={
            "Content-Disposition": receipt.content_disposition,
            "Content-Length": str(receipt.size),
        },
    )


@router.get("/health")
def health():
    return {
        "status": "OK",
        "message": "Finance tracker API is running",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/")
def index():
    return {
        "message": "Welcome to the finance tracker API",
        "version": APP_VERSION,
        "endpoints": {
            "auth": {
                "signup": "POST /api/auth/signup",
                "login": "POST /api/auth/login",
                "me": "GET /api/auth/me",
            },
            "expenses": {
                "list": "GET /api/expenses",
                "get": "GET /api/expenses/:id",
                "create": "POST /api/expenses",
                "update": "PUT /api/expenses/:id",
                "delete": "DELETE /api/expenses/:id",
            },
            "incomes": {
                "list": "GET /api/incomes",
                "get": "GET /api/incomes/:id",
                "create": "POST /api/incomes",
                "update": "PUT /api/incomes/:id",
                "delete": "DELETE /api/incomes/:id",
            },
            "categories": {
                "list": "GET /api/categories",
                "create": "POST /api/categories",
                "update": "PUT /api/categories/:id",
                "delete": "DELETE /api/categories/:id",
            },
            "summary": {
                "monthly": "GET /api/summary/monthly",
                "date_range": "GET /api/summary",
                "alerts": "GET /api/summary/alerts",
            },
            "user": {"profile": "GET /api/user/profile"},
            "receipts": {"get": "GET /api/receipts/:expenseId"},
            "health": "GET /health",
        },
    }


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    error = validation_error_from(list(exc.errors()))
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    if exc.status_code == 404:
        content = {
            "error": "Route not found",
            "message": "The requested endpoint does not exist",
        }
    else:
        content = {"error": "Request failed", "message": str(exc.detail)}
    return JSONResponse(
        status_code=exc.status_code, content=content, headers=exc.headers
    )


async def store_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception("store_error: path=%s", request.url.path)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": "An unexpected error occurred",
        },
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error: path=%s", request.url.path)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Something went wrong!",
            "message": "An unexpected error occurred",
        },
    )


def create_app(
    database: Optional[Database] = None, receipts: Optional[ReceiptStore] = None
) -> FastAPI:
    settings = get_settings()
    database = database or Database(
        settings.database_url, create_schema=settings.auto_create_schema
    )
    receipts = receipts or ReceiptStore()

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        database.connect()
        try:
            yield
        finally:
            database.disconnect()

    application = FastAPI(
        title="Finance Tracker API", version=APP_VERSION, lifespan=lifespan
    )
    application.state.database = database
    application.state.receipts = receipts
    application.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_origin],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    application.add_exception_handler(AppError, app_error_handler)
    application.add_exception_handler(RequestValidationError, request_validation_handler)
    application.add_exception_handler(StarletteHTTPException, http_exception_handler)
    application.add_exception_handler(SQLAlchemyError, store_error_handler)
    application.add_exception_handler(Exception, unhandled_error_handler)
    application.include_router(router)
    return application


app = create_app()
