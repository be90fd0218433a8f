import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import get_settings
from database import get_db
from models import TransactionType, User
from oauth import GoogleOAuthClient, OAuthError
from scheduler import SchedulerManager
from schemas import (
    AuthOut,
    BudgetIn,
    BudgetOut,
    BudgetUpdate,
    CategoryIn,
    CategoryOut,
    CategoryUpdate,
    ChartPointOut,
    CurrentUserOut,
    GoogleStatusOut,
    LoginIn,
    MessageOut,
    RefreshIn,
    RegisterIn,
    SummaryOut,
    TokenRefreshOut,
    TokensOut,
    TransactionIn,
    TransactionOut,
    TransactionPageOut,
    TransactionUpdate,
    UserDetailOut,
    UserOut,
)
from security import TokenPair
from services import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    AuthError,
    AuthResult,
    AuthService,
    BudgetProgress,
    BudgetService,
    CategoryService,
    ConflictError,
    DemoService,
    NotFoundError,
    TransactionFilters,
    TransactionService,
)

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()

scheduler_manager = SchedulerManager()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    scheduler_manager.start()
    try:
        yield
    finally:
        scheduler_manager.stop()


app = FastAPI(
    title="Personal Finance API",
    description=(
        "Transactions, categories and monthly budgets with cookie-based "
        "access/refresh token authentication."
    ),
    docs_url="/api/docs",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.cors_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error_body(request: Request, status_code: int, message: object) -> dict:
    return {
        "statusCode": status_code,
        "message": message,
        "path": request.url.path,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.status_code, exc.detail),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    messages = [
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}"
        for err in exc.errors()
    ]
    return JSONResponse(status_code=422, content=_error_body(request, 422, messages))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    user_id = getattr(request.state, "user_id", None) or "anonymous"
    logging.exception(
        f"unhandled_error: method={request.method} path={request.url.path} "
        f"query={dict(request.query_params)} user={user_id}"
    )
    return JSONResponse(
        status_code=500, content=_error_body(request, 500, "Internal server error")
    )


def http_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, AuthError):
        return HTTPException(status_code=401, detail=str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def set_auth_cookies(response: Response, tokens: TokenPair) -> None:
    options = {
        "httponly": True,
        "secure": settings.cookie_secure,
        "samesite": settings.cookie_samesite,
        "path": "/",
    }
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access_token,
        max_age=settings.access_token_ttl_secs,
        **options,
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        max_age=settings.refresh_token_ttl_secs,
        **options,
    )


def clear_auth_cookies(response: Response) -> None:
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(
            name,
            path="/",
            secure=settings.cookie_secure,
            httponly=True,
            samesite=settings.cookie_samesite,
        )


def tokens_out(tokens: TokenPair) -> TokensOut:
    return TokensOut(
        access_token=tokens.access_token, refresh_token=tokens.refresh_token
    )


def auth_out(result: AuthResult) -> AuthOut:
    return AuthOut(
        user=UserOut.model_validate(result.user), tokens=tokens_out(result.tokens)
    )


def budget_out(progress: BudgetProgress) -> BudgetOut:
    budget = progress.budget
    return BudgetOut(
        id=budget.id,
        amount=budget.amount,
        month=budget.month,
        year=budget.year,
        category_id=budget.category_id,
        user_id=budget.user_id,
        created_at=budget.created_at,
        updated_at=budget.updated_at,
        category=CategoryOut.model_validate(budget.category),
        spent=progress.spent,
        remaining=progress.remaining,
    )


def access_token_from_request(request: Request) -> Optional[str]:
    header = request.headers.get("authorization", "")
    if header.startswith("Bearer "):
        return header[len("Bearer ") :].strip() or None
    return request.cookies.get(ACCESS_COOKIE)


def current_user(request: Request, db: Session = Depends(get_db)) -> User:
    try:
        user = AuthService(db).authenticate(access_token_from_request(request))
    except AuthError as exc:
        raise http_error(exc) from exc
    request.state.user_id = user.id
    return user


@app.get("/health")
def health():
    return {"status": "ok", "version": APP_VERSION}


@app.post("/api/auth/register", response_model=AuthOut, status_code=201)
def register(payload: RegisterIn, response: Response, db: Session = Depends(get_db)):
    try:
        result = AuthService(db).register(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    set_auth_cookies(response, result.tokens)
    return auth_out(result)


@app.post("/api/auth/login", response_model=AuthOut)
def login(payload: LoginIn, response: Response, db: Session = Depends(get_db)):
    try:
        result = AuthService(db).login(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    set_auth_cookies(response, result.tokens)
    return auth_out(result)


@app.post("/api/auth/refresh", response_model=TokenRefreshOut)
def refresh(
    request: Request,
    response: Response,
    payload: Optional[RefreshIn] = None,
    db: Session = Depends(get_db),
):
    token = request.cookies.get(REFRESH_COOKIE) or (
        payload.refresh_token if payload else None
    )
    try:
        tokens = AuthService(db).refresh(token)
    except AuthError as exc:
        raise http_error(exc) from exc
    set_auth_cookies(response, tokens)
    return TokenRefreshOut(tokens=tokens_out(tokens))


@app.post("/api/auth/logout", response_model=MessageOut)
def logout(
    request: Request,
    response: Response,
    payload: Optional[RefreshIn] = None,
    db: Session = Depends(get_db),
):
    token = request.cookies.get(REFRESH_COOKIE) or (
        payload.refresh_token if payload else None
    )
    AuthService(db).logout(token)
    clear_auth_cookies(response)
    return MessageOut(message="Logged out successfully")


@app.post("/api/auth/logout-all", response_model=MessageOut)
def logout_all(
    response: Response,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    AuthService(db).logout_all(user.id)
    clear_auth_cookies(response)
    return MessageOut(message="Logged out from all devices successfully")


@app.get("/api/auth/google")
def google_auth():
    try:
        url = GoogleOAuthClient().authorization_url()
    except OAuthError as exc:
        raise http_error(exc) from exc
    return RedirectResponse(url=url, status_code=302)


@app.get("/api/auth/google/callback")
def google_callback(
    code: Optional[str] = Query(None), db: Session = Depends(get_db)
):
    client = GoogleOAuthClient()
    try:
        provider_tokens = client.exchange_code(code or "")
        profile = client.fetch_profile(provider_tokens.access_token)
    except OAuthError as exc:
        raise http_error(exc) from exc
    result = AuthService(db).google_login(profile, provider_tokens)
    response = RedirectResponse(
        url=f"{settings.frontend_url.rstrip('/')}/auth/callback", status_code=302
    )
    set_auth_cookies(response, result.tokens)
    return response


@app.get("/api/auth/google/status", response_model=GoogleStatusOut)
def google_status():
    return GoogleStatusOut(
        configured=bool(settings.google_client_id and settings.google_client_secret),
        client_id_set=bool(settings.google_client_id),
        client_secret_set=bool(settings.google_client_secret),
        callback_url=settings.google_callback_url,
        frontend_url=settings.frontend_url,
    )


@app.get("/api/auth/demo", response_model=AuthOut)
def demo_login(response: Response, db: Session = Depends(get_db)):
    result = DemoService(db).login()
    set_auth_cookies(response, result.tokens)
    return auth_out(result)


@app.get("/api/user/me", response_model=CurrentUserOut)
def get_current_user(user: User = Depends(current_user)):
    return CurrentUserOut(user=UserDetailOut.model_validate(user))


@app.post("/api/categories", response_model=CategoryOut, status_code=201)
def create_category(
    payload: CategoryIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        return CategoryService(db, user.id).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/categories", response_model=list[CategoryOut])
def list_categories(user: User = Depends(current_user), db: Session = Depends(get_db)):
    return CategoryService(db, user.id).list_all()


@app.get("/api/categories/{category_id}", response_model=CategoryOut)
def get_category(
    category_id: int,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        return CategoryService(db, user.id).get(category_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.patch("/api/categories/{category_id}", response_model=CategoryOut)
def update_category(
    category_id: int,
    payload: CategoryUpdate,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        return CategoryService(db, user.id).update(category_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/api/categories/{category_id}", response_model=MessageOut)
def delete_category(
    category_id: int,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        CategoryService(db, user.id).delete(category_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return MessageOut(message="Category deleted")


@app.post("/api/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(
    payload: TransactionIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        return TransactionService(db, user.id).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/transactions", response_model=TransactionPageOut)
def list_transactions(
    type: Optional[TransactionType] = Query(None),
    category_id: Optional[int] = Query(None, alias="categoryId"),
    on_date: Optional[date] = Query(None, alias="date"),
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    filters = TransactionFilters(
        type=type,
        category_id=category_id,
        on_date=on_date,
        start=start_date,
        end=end_date,
    )
    try:
        page = TransactionService(db, user.id).list(filters, limit=limit, offset=offset)
    except ValueError as exc:
        raise http_error(exc) from exc
    return TransactionPageOut.model_validate(page)


@app.get("/api/transactions/summary", response_model=SummaryOut)
def transactions_summary(
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        summary = TransactionService(db, user.id).summary(start_date, end_date)
    except ValueError as exc:
        raise http_error(exc) from exc
    return SummaryOut.model_validate(summary)


@app.get("/api/transactions/chart-data", response_model=list[ChartPointOut])
def transactions_chart_data(
    start_date: date = Query(..., alias="startDate"),
    end_date: date = Query(..., alias="endDate"),
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        points = TransactionService(db, user.id).chart_data(start_date, end_date)
    except ValueError as exc:
        raise http_error(exc) from exc
    return [ChartPointOut.model_validate(point) for point in points]


@app.get("/api/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        return TransactionService(db, user.id).get(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.patch("/api/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdate,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        return TransactionService(db, user.id).update(transaction_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/api/transactions/{transaction_id}", response_model=MessageOut)
def delete_transaction(
    transaction_id: int,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        TransactionService(db, user.id).delete(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return MessageOut(message="Transaction deleted")


@app.post("/api/budgets", response_model=BudgetOut, status_code=201)
def create_budget(
    payload: BudgetIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        return budget_out(BudgetService(db, user.id).create(payload))
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/budgets", response_model=list[BudgetOut])
def list_budgets(
    month: Optional[int] = Query(None, ge=1, le=12),
    year: Optional[int] = Query(None),
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    return [budget_out(p) for p in BudgetService(db, user.id).list(month, year)]


@app.get("/api/budgets/{budget_id}", response_model=BudgetOut)
def get_budget(
    budget_id: int,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        return budget_out(BudgetService(db, user.id).get(budget_id))
    except ValueError as exc:
        raise http_error(exc) from exc


@app.patch("/api/budgets/{budget_id}", response_model=BudgetOut)
def update_budget(
    budget_id: int,
    payload: BudgetUpdate,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        return budget_out(BudgetService(db, user.id).update(budget_id, payload))
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/api/budgets/{budget_id}", response_model=MessageOut)
def delete_budget(
    budget_id: int,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        BudgetService(db, user.id).delete(budget_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return MessageOut(message="Budget deleted")
