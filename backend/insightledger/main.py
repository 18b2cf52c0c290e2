import asyncio
import logging
import time
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from fastapi import FastAPI, Header, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .auth_utils import TokenClaims, create_access_token, decode_access_token
from .config import settings
from .persistence import ensure_demo_user, get_persistence
from .schemas import (
    ApiErrorDetail,
    ApiErrorPayload,
    ApiErrorResponse,
    AskRequest,
    AskResponse,
    AuthResponse,
    BudgetCreate,
    BudgetPeriod,
    BudgetResponse,
    CategoryCreate,
    CategoryResponse,
    CategorySummary,
    DashboardStatsResponse,
    HealthResponse,
    InsightsResponse,
    LoginRequest,
    MessageResponse,
    MonthlyTrendItem,
    RegisterRequest,
    SpendingByCategoryItem,
    SuggestionsRequest,
    SuggestionsResponse,
    TransactionCreate,
    TransactionResponse,
    TransactionType,
    UserResponse,
    naive_utc,
)
from .services.analytics import (
    budget_usage,
    build_ask_prompt,
    build_insights,
    build_suggestion_prompt,
    fold_monthly_trends,
    month_bounds,
    months_ago,
    previous_month_bounds,
)
from .services.gemini import GeminiError, gemini
from .store import store

logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(
    title="InsightLedger API",
    version="0.1.0",
    description="Personal finance tracking: transactions, categories, budgets, analytics and AI insights.",
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

persistence = get_persistence()


class RateLimiter:
    """Fixed-window request counter keyed by client address.

    Expired windows are swept at most once per window length.
    """

    def __init__(self, max_requests: int, window_seconds: int) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.windows: dict[str, tuple[float, int]] = {}
        self.last_sweep: float | None = None

    def _sweep(self, now: float) -> None:
        if self.last_sweep is not None and now - self.last_sweep < self.window_seconds:
            return
        expired = [key for key, (started, _) in self.windows.items() if now - started >= self.window_seconds]
        for key in expired:
            del self.windows[key]
        self.last_sweep = now

    def hit(self, key: str, now: float | None = None) -> bool:
        if self.max_requests <= 0:
            return True
        now = time.monotonic() if now is None else now
        self._sweep(now)
        started, count = self.windows.get(key, (now, 0))
        if now - started >= self.window_seconds:
            started, count = now, 0
        count += 1
        self.windows[key] = (started, count)
        return count <= self.max_requests

    def reset(self) -> None:
        self.windows.clear()
        self.last_sweep = None


rate_limiter = RateLimiter(settings.rate_limit_max_requests, settings.rate_limit_window_seconds)


def build_error_response(details: list[ApiErrorDetail], message: str = "Invalid request payload") -> JSONResponse:
    payload = ApiErrorResponse(
        error=ApiErrorPayload(code="VALIDATION_ERROR", message=message, details=details)
    )
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=payload.model_dump())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details: list[ApiErrorDetail] = []
    for err in exc.errors():
        loc = ".".join(str(item) for item in err.get("loc", []) if item not in {"body", "query", "path"})
        details.append(ApiErrorDetail(field=loc or "body", message=err.get("msg", "validation error")))
    return build_error_response(details)


@app.exception_handler(ValueError)
async def value_error_exception_handler(request: Request, exc: ValueError) -> JSONResponse:
    return build_error_response([ApiErrorDetail(field="body", message=str(exc))])


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    if request.url.path.startswith("/api/"):
        client_ip = request.client.host if request.client else "unknown"
        if not rate_limiter.hit(client_ip):
            logger.warning("Rate limit exceeded for %s", client_ip)
            return JSONResponse(
                status_code=429,
                content={"detail": "Too many requests from this IP, please try again later."},
            )
    return await call_next(request)


SECURITY_HEADERS = {
    "Content-Security-Policy": (
        "default-src 'self';base-uri 'self';font-src 'self' https: data:;form-action 'self';"
        "frame-ancestors 'self';img-src 'self' data:;object-src 'none';script-src 'self';"
        "script-src-attr 'none';style-src 'self' https: 'unsafe-inline';upgrade-insecure-requests"
    ),
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Origin-Agent-Cluster": "?1",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
    "X-Content-Type-Options": "nosniff",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Frame-Options": "SAMEORIGIN",
    "X-Permitted-Cross-Domain-Policies": "none",
    "X-XSS-Protection": "0",
}


# Registered after the rate limiter so it wraps it and 429s carry the headers too.
@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    for name, value in SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    return response


@app.on_event("startup")
async def on_startup() -> None:
    try:
        ensure_demo_user(persistence)
    except HTTPException as exc:
        logger.error("Failed to ensure demo user: %s", exc.detail)


def _token_from_header(authorization: str | None) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="Authentication required")
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
        raise HTTPException(status_code=401, detail="Invalid token")
    return parts[1].strip()


def _require_user(authorization: str | None) -> TokenClaims:
    claims = decode_access_token(_token_from_header(authorization))
    if claims is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return claims


def _user_response(row: dict[str, Any]) -> UserResponse:
    return UserResponse(id=row["id"], email=row["email"], name=row["name"], role=row["role"])


def _auth_response(row: dict[str, Any]) -> AuthResponse:
    token = create_access_token(row["id"], row["email"], row["role"])
    return AuthResponse(token=token, user=_user_response(row))


def _category_response(row: dict[str, Any]) -> CategoryResponse:
    return CategoryResponse(
        id=row["id"],
        userId=row["user_id"],
        name=row["name"],
        type=row["type"],
        icon=row["icon"],
        color=row["color"],
        createdAt=row["created_at"],
        updatedAt=row["updated_at"],
    )


def _summary(category: dict[str, Any] | None) -> CategorySummary | None:
    return CategorySummary(**category) if category else None


def _transaction_response(row: dict[str, Any]) -> TransactionResponse:
    return TransactionResponse(
        id=row["id"],
        userId=row["user_id"],
        categoryId=row["category_id"],
        category=_summary(row.get("category")),
        type=row["type"],
        amount=float(row["amount"]),
        description=row["description"],
        date=row["date"],
        createdAt=row["created_at"],
        updatedAt=row["updated_at"],
    )


def _budget_response(row: dict[str, Any]) -> BudgetResponse:
    return BudgetResponse(
        id=row["id"],
        userId=row["user_id"],
        categoryId=row["category_id"],
        category=_summary(row.get("category")),
        amount=float(row["amount"]),
        period=row["period"],
        startDate=row["start_date"],
        endDate=row["end_date"],
        spent=float(row["spent"]),
        remaining=float(row["remaining"]),
        createdAt=row["created_at"],
        updatedAt=row["updated_at"],
    )


async def _with_spending(user_id: UUID, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    totals = await asyncio.gather(
        *(
            asyncio.to_thread(
                persistence.sum_transactions, user_id, TransactionType.expense.value, row["start_date"], row["end_date"], row["category_id"]
            )
            for row in rows
        )
    )
    return [budget_usage(row, spent) for row, (spent, _) in zip(rows, totals)]


@app.get("/api/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(status="ok", message="InsightLedger API is running")


@app.post("/api/auth/register", response_model=AuthResponse, status_code=201)
async def auth_register(payload: RegisterRequest) -> AuthResponse:
    user = persistence.register_user(payload.email, payload.password, payload.name)
    logger.info("Registered user %s", user["id"])
    return _auth_response(user)


@app.post("/api/auth/login", response_model=AuthResponse)
async def auth_login(payload: LoginRequest) -> AuthResponse:
    user = persistence.authenticate_user(payload.email, payload.password)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return _auth_response(user)


@app.get("/api/auth/me", response_model=UserResponse)
async def auth_me(authorization: str | None = Header(default=None)) -> UserResponse:
    claims = _require_user(authorization)
    user = persistence.get_user_by_id(claims.user_id)
    if user is None:
        raise HTTPException(status_code=401, detail="user not found")
    return _user_response(user)


@app.post("/api/categories", response_model=CategoryResponse, status_code=201)
async def create_category(payload: CategoryCreate, authorization: str | None = Header(default=None)) -> CategoryResponse:
    claims = _require_user(authorization)
    return _category_response(persistence.create_category(claims.user_id, payload))


@app.get("/api/categories", response_model=list[CategoryResponse])
async def list_categories(
    category_type: TransactionType | None = Query(default=None, alias="type"),
    authorization: str | None = Header(default=None),
) -> list[CategoryResponse]:
    claims = _require_user(authorization)
    rows = persistence.list_categories(claims.user_id, category_type.value if category_type else None)
    return [_category_response(row) for row in rows]


@app.get("/api/categories/{category_id}", response_model=CategoryResponse)
async def get_category(category_id: UUID, authorization: str | None = Header(default=None)) -> CategoryResponse:
    claims = _require_user(authorization)
    return _category_response(persistence.get_category(claims.user_id, category_id))


@app.put("/api/categories/{category_id}", response_model=CategoryResponse)
async def update_category(
    category_id: UUID,
    payload: CategoryCreate,
    authorization: str | None = Header(default=None),
) -> CategoryResponse:
    claims = _require_user(authorization)
    return _category_response(persistence.update_category(claims.user_id, category_id, payload))


@app.delete("/api/categories/{category_id}", response_model=MessageResponse)
async def delete_category(category_id: UUID, authorization: str | None = Header(default=None)) -> MessageResponse:
    claims = _require_user(authorization)
    persistence.delete_category(claims.user_id, category_id)
    return MessageResponse(message="Category deleted successfully")


@app.post("/api/transactions", response_model=TransactionResponse, status_code=201)
async def create_transaction(payload: TransactionCreate, authorization: str | None = Header(default=None)) -> TransactionResponse:
    claims = _require_user(authorization)
    return _transaction_response(persistence.create_transaction(claims.user_id, payload))


@app.get("/api/transactions", response_model=list[TransactionResponse])
async def list_transactions(
    start_date: datetime | None = Query(default=None, alias="startDate"),
    end_date: datetime | None = Query(default=None, alias="endDate"),
    tx_type: TransactionType | None = Query(default=None, alias="type"),
    category_id: UUID | None = Query(default=None, alias="categoryId"),
    authorization: str | None = Header(default=None),
) -> list[TransactionResponse]:
    claims = _require_user(authorization)
    rows = persistence.list_transactions(
        claims.user_id,
        start=naive_utc(start_date),
        end=naive_utc(end_date),
        tx_type=tx_type.value if tx_type else None,
        category_id=category_id,
    )
    return [_transaction_response(row) for row in rows]


@app.get("/api/transactions/{transaction_id}", response_model=TransactionResponse)
async def get_transaction(transaction_id: UUID, authorization: str | None = Header(default=None)) -> TransactionResponse:
    claims = _require_user(authorization)
    return _transaction_response(persistence.get_transaction(claims.user_id, transaction_id))


@app.put("/api/transactions/{transaction_id}", response_model=TransactionResponse)
async def update_transaction(
    transaction_id: UUID,
    payload: TransactionCreate,
    authorization: str | None = Header(default=None),
) -> TransactionResponse:
    claims = _require_user(authorization)
    return _transaction_response(persistence.update_transaction(claims.user_id, transaction_id, payload))


@app.delete("/api/transactions/{transaction_id}", response_model=MessageResponse)
async def delete_transaction(transaction_id: UUID, authorization: str | None = Header(default=None)) -> MessageResponse:
    claims = _require_user(authorization)
    persistence.delete_transaction(claims.user_id, transaction_id)
    return MessageResponse(message="Transaction deleted successfully")


@app.post("/api/budgets", response_model=BudgetResponse, status_code=201)
async def create_budget(payload: BudgetCreate, authorization: str | None = Header(default=None)) -> BudgetResponse:
    claims = _require_user(authorization)
    row = persistence.create_budget(claims.user_id, payload)
    return _budget_response((await _with_spending(claims.user_id, [row]))[0])


@app.get("/api/budgets", response_model=list[BudgetResponse])
async def list_budgets(
    period: BudgetPeriod | None = Query(default=None),
    active: bool = Query(default=False),
    authorization: str | None = Header(default=None),
) -> list[BudgetResponse]:
    claims = _require_user(authorization)
    rows = persistence.list_budgets(
        claims.user_id,
        period=period.value if period else None,
        active_at=store.now() if active else None,
    )
    return [_budget_response(row) for row in await _with_spending(claims.user_id, rows)]


@app.get("/api/budgets/{budget_id}", response_model=BudgetResponse)
async def get_budget(budget_id: UUID, authorization: str | None = Header(default=None)) -> BudgetResponse:
    claims = _require_user(authorization)
    row = persistence.get_budget(claims.user_id, budget_id)
    return _budget_response((await _with_spending(claims.user_id, [row]))[0])


@app.put("/api/budgets/{budget_id}", response_model=BudgetResponse)
async def update_budget(
    budget_id: UUID,
    payload: BudgetCreate,
    authorization: str | None = Header(default=None),
) -> BudgetResponse:
    claims = _require_user(authorization)
    row = persistence.update_budget(claims.user_id, budget_id, payload)
    return _budget_response((await _with_spending(claims.user_id, [row]))[0])


@app.delete("/api/budgets/{budget_id}", response_model=MessageResponse)
async def delete_budget(budget_id: UUID, authorization: str | None = Header(default=None)) -> MessageResponse:
    claims = _require_user(authorization)
    persistence.delete_budget(claims.user_id, budget_id)
    return MessageResponse(message="Budget deleted successfully")


@app.get("/api/analytics/dashboard", response_model=DashboardStatsResponse)
async def dashboard_stats(authorization: str | None = Header(default=None)) -> DashboardStatsResponse:
    claims = _require_user(authorization)
    start, end = month_bounds(store.now())
    (income, _), (expenses, _), count = await asyncio.gather(
        asyncio.to_thread(persistence.sum_transactions, claims.user_id, TransactionType.income.value, start, end),
        asyncio.to_thread(persistence.sum_transactions, claims.user_id, TransactionType.expense.value, start, end),
        asyncio.to_thread(persistence.count_transactions, claims.user_id, start, end),
    )
    return DashboardStatsResponse(
        period="monthly",
        startDate=start,
        endDate=end,
        totalIncome=float(income),
        totalExpenses=float(expenses),
        balance=float(income - expenses),
        transactionCount=count,
    )


@app.get("/api/analytics/spending-by-category", response_model=list[SpendingByCategoryItem])
async def spending_by_category(
    start_date: datetime | None = Query(default=None, alias="startDate"),
    end_date: datetime | None = Query(default=None, alias="endDate"),
    authorization: str | None = Header(default=None),
) -> list[SpendingByCategoryItem]:
    claims = _require_user(authorization)
    now = store.now()
    start = naive_utc(start_date) or month_bounds(now)[0]
    end = naive_utc(end_date) or now
    rows = await asyncio.to_thread(persistence.spending_by_category, claims.user_id, start, end)
    return [
        SpendingByCategoryItem(
            categoryId=row["category_id"],
            categoryName=row["category"]["name"],
            categoryIcon=row["category"]["icon"],
            categoryColor=row["category"]["color"],
            total=float(row["total"]),
            count=row["count"],
        )
        for row in rows
    ]


@app.get("/api/analytics/monthly-trends", response_model=list[MonthlyTrendItem])
async def monthly_trends(
    months: int = Query(default=6, le=120),
    authorization: str | None = Header(default=None),
) -> list[MonthlyTrendItem]:
    claims = _require_user(authorization)
    if months <= 0:
        months = 6
    rows = await asyncio.to_thread(persistence.monthly_totals, claims.user_id, months_ago(store.now(), months))
    return [
        MonthlyTrendItem(month=item["month"], income=float(item["income"]), expenses=float(item["expenses"]))
        for item in fold_monthly_trends(rows)
    ]


@app.get("/api/analytics/insights", response_model=InsightsResponse)
async def insights(authorization: str | None = Header(default=None)) -> InsightsResponse:
    claims = _require_user(authorization)
    now = store.now()
    month_start, _ = month_bounds(now)
    last_start, last_end = previous_month_bounds(now)
    (current_total, _), (last_total, _), top_categories, budgets = await asyncio.gather(
        asyncio.to_thread(persistence.sum_transactions, claims.user_id, TransactionType.expense.value, month_start),
        asyncio.to_thread(persistence.sum_transactions, claims.user_id, TransactionType.expense.value, last_start, last_end),
        asyncio.to_thread(persistence.spending_by_category, claims.user_id, month_start, None, 3),
        asyncio.to_thread(persistence.list_budgets, claims.user_id, None, now),
    )
    budgets = await _with_spending(claims.user_id, budgets)
    return InsightsResponse(insights=build_insights(current_total, last_total, top_categories, budgets))


@app.post("/api/analytics/ask", response_model=AskResponse)
async def ask_ai(payload: AskRequest, authorization: str | None = Header(default=None)) -> AskResponse:
    claims = _require_user(authorization)
    now = store.now()
    month_start, _ = month_bounds(now)
    income, expenses, categories, recent, budgets = await asyncio.gather(
        asyncio.to_thread(persistence.sum_transactions, claims.user_id, TransactionType.income.value, month_start, now),
        asyncio.to_thread(persistence.sum_transactions, claims.user_id, TransactionType.expense.value, month_start, now),
        asyncio.to_thread(persistence.spending_by_category, claims.user_id, month_start, now, 5, True),
        asyncio.to_thread(persistence.list_transactions, claims.user_id, limit=20),
        asyncio.to_thread(persistence.list_budgets, claims.user_id, None, now),
    )
    prompt = build_ask_prompt(payload.question, income, expenses, categories, budgets, recent)
    try:
        answer = await gemini.generate_financial_answer(prompt)
    except GeminiError as exc:
        logger.error("Ask AI error: %s", exc)
        raise HTTPException(status_code=502, detail=str(exc) or "Failed to get AI response") from exc
    return AskResponse(answer=answer)


@app.post("/api/analytics/suggestions", response_model=SuggestionsResponse)
async def suggestion_prompts(
    payload: SuggestionsRequest | None = None,
    authorization: str | None = Header(default=None),
) -> SuggestionsResponse:
    claims = _require_user(authorization)
    now = store.now()
    month_start, _ = month_bounds(now)
    (income, _), (expenses, _), budgets = await asyncio.gather(
        asyncio.to_thread(persistence.sum_transactions, claims.user_id, TransactionType.income.value, month_start, now),
        asyncio.to_thread(persistence.sum_transactions, claims.user_id, TransactionType.expense.value, month_start, now),
        asyncio.to_thread(persistence.list_budgets, claims.user_id, None, now),
    )
    budgets = await _with_spending(claims.user_id, budgets)
    financial_data = {
        "currency": "USD",
        "currentBalance": float(income - expenses),
        "totalIncomeThisMonth": float(income),
        "totalExpensesThisMonth": float(expenses),
        "activeBudgets": [
            {
                "name": budget["category"]["name"] if budget.get("category") else "Uncategorized",
                "spent": float(budget["spent"]),
                "limit": float(Decimal(budget["amount"])),
            }
            for budget in budgets
        ],
        "savingsGoals": [],
    }
    recent_messages = payload.recentMessages if payload else []
    prompt = build_suggestion_prompt(recent_messages, financial_data)
    return SuggestionsResponse(suggestions=await gemini.generate_suggestion_prompts(prompt))
