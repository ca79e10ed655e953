"""FastAPI application exposing ETF, portfolio and user management endpoints."""

import logging
from decimal import Decimal
from pathlib import Path
from typing import Annotated, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.staticfiles import StaticFiles
from prometheus_client import Counter
from pydantic import BaseModel, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from sqlalchemy.orm import Session

from . import credentials, services
from .auth import (
    create_access_token,
    create_refresh_token,
    decode_token,
    get_actor,
    get_current_user,
    get_db,
    hash_password,
    require_admin,
    verify_password,
)
from .config import settings
from .database import SessionLocal, init_db
from .models.user import Role, User
from .policy import Actor, can_delete_user, can_read, can_write, enforce

logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)
app = FastAPI(title=settings.api_title)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    max_age=3600,
)

SENSITIVE_RATE_LIMIT = settings.sensitive_rate_limit

# Prometheus counter to track API requests by method, endpoint and status code
REQUEST_COUNTER = Counter(
    "api_requests_total",
    "Total API requests",
    ["method", "endpoint", "status"],
)


def _bootstrap_admin() -> None:
    if not (settings.admin_username and settings.admin_password):
        return
    db = SessionLocal()
    try:
        credentials.ensure_admin(
            db, settings.admin_username.strip(), hash_password(settings.admin_password)
        )
    finally:
        db.close()


init_db()
_bootstrap_admin()


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log incoming requests and their outcomes while updating metrics."""
    logger.info("request %s %s", request.method, request.url.path)
    try:
        response = await call_next(request)
        REQUEST_COUNTER.labels(
            method=request.method,
            endpoint=request.url.path,
            status=str(response.status_code),
        ).inc()
        logger.info(
            "response %s %s status %s",
            request.method,
            request.url.path,
            response.status_code,
        )
        return response
    except Exception:
        REQUEST_COUNTER.labels(
            method=request.method,
            endpoint=request.url.path,
            status="500",
        ).inc()
        logger.exception(
            "error handling %s %s", request.method, request.url.path
        )
        raise


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Report malformed request bodies and parameters as 400 Bad Request."""
    errors = exc.errors()
    detail = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    logger.info("validation error %s %s: %s", request.method, request.url.path, detail)
    return JSONResponse(status_code=400, content={"detail": detail})


class ApiModel(BaseModel):
    """Base schema using camelCase names on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class RegisterRequest(ApiModel):
    username: Optional[str] = None
    password: Optional[str] = None


class LoginRequest(ApiModel):
    username: str
    password: str


class RefreshRequest(ApiModel):
    refresh_token: str


class TokenResponse(ApiModel):
    """JWT access and refresh tokens."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class UserResponse(ApiModel):
    """Serialized user account; the password hash is never included."""

    id: int
    username: str
    role: Role


class ChangePasswordRequest(ApiModel):
    current_password: Optional[str] = None
    new_password: Optional[str] = None


class CreateUserRequest(ApiModel):
    username: Optional[str] = None
    password: Optional[str] = None
    role: Optional[str] = None


class UpdateUserRequest(ApiModel):
    username: Optional[str] = None
    role: Optional[str] = None
    new_password: Optional[str] = None


# Largest value the NUMERIC(6, 4) expense_ratio column holds
MAX_EXPENSE_RATIO = Decimal("99.9999")

# Decimals go out as JSON numbers rather than strings
JsonDecimal = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class EtfRequest(ApiModel):
    """Request body for creating or replacing an ETF."""

    ticker: Optional[str] = None
    description: Optional[str] = None
    asset_class: Optional[str] = None
    expense_ratio: Optional[Decimal] = Field(None, ge=0, le=MAX_EXPENSE_RATIO)
    is_public: bool = False


class EtfResponse(ApiModel):
    id: int
    ticker: str
    description: Optional[str] = None
    asset_class: Optional[str] = None
    expense_ratio: Optional[JsonDecimal] = None
    user_id: int
    is_public: bool


class PortfolioRequest(ApiModel):
    """Request body for creating or replacing a portfolio."""

    name: Optional[str] = None
    is_public: bool = False


class PortfolioResponse(ApiModel):
    id: int
    name: str
    user_id: int
    is_public: bool


class MembershipResponse(ApiModel):
    id: int
    portfolio_id: int
    etf_id: int


def _require_text(value: Optional[str], message: str) -> str:
    """Return ``value`` trimmed, rejecting missing or blank input."""
    if value is None or not value.strip():
        raise HTTPException(status_code=400, detail=message)
    return value.strip()


def _parse_role(value: Optional[str]) -> Role:
    raw = _require_text(value, "Role is required")
    try:
        return Role(raw.upper())
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid role")


def _etf_fields(payload: EtfRequest) -> dict:
    fields = payload.model_dump(exclude={"ticker"})
    fields["ticker"] = _require_text(payload.ticker, "Ticker is required")
    return fields


def _portfolio_fields(payload: PortfolioRequest) -> dict:
    return {
        "name": _require_text(payload.name, "Name is required"),
        "is_public": payload.is_public,
    }


def _tokens(user: User) -> TokenResponse:
    return TokenResponse(
        access_token=create_access_token(user),
        refresh_token=create_refresh_token(user),
    )


@app.get("/health")
def health():
    return {"status": "ok"}


# --- Registration and login ---


@app.post("/api/register", response_class=PlainTextResponse)
@limiter.limit(SENSITIVE_RATE_LIMIT)
def register(request: Request, payload: RegisterRequest, db: Session = Depends(get_db)):
    """Create a USER account."""

    username = _require_text(payload.username, "Username is required")
    _require_text(payload.password, "Password is required")
    if credentials.get_user_by_username(db, username) is not None:
        raise HTTPException(status_code=400, detail="Username is already taken")
    credentials.create_user(db, username, hash_password(payload.password), Role.USER)
    return "User registered successfully"


@app.post("/api/login", response_model=TokenResponse)
@limiter.limit(SENSITIVE_RATE_LIMIT)
def login(request: Request, payload: LoginRequest, db: Session = Depends(get_db)):
    user = credentials.get_user_by_username(db, payload.username.strip())
    if not user or not verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return _tokens(user)


@app.post("/api/refresh", response_model=TokenResponse)
@limiter.limit(SENSITIVE_RATE_LIMIT)
def refresh(request: Request, payload: RefreshRequest, db: Session = Depends(get_db)):
    username = decode_token(payload.refresh_token, expected_type="refresh")
    user = credentials.get_user_by_username(db, username)
    if user is None:
        raise HTTPException(status_code=401, detail="User not found")
    return _tokens(user)


# --- Self-service profile ---


@app.get("/api/auth/user", response_model=UserResponse)
def get_own_profile(current_user: User = Depends(get_current_user)):
    return current_user


@app.put("/api/auth/change-password", status_code=204)
@limiter.limit(SENSITIVE_RATE_LIMIT)
def change_password(
    request: Request,
    payload: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Replace the caller's password after checking the current one."""

    _require_text(payload.current_password, "Current password is required")
    _require_text(payload.new_password, "New password is required")
    if not verify_password(payload.current_password, current_user.password_hash):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    credentials.set_password_hash(db, current_user.id, hash_password(payload.new_password))
    return Response(status_code=204)


# --- User management (admin only) ---


@app.get("/api/auth/users", response_model=List[UserResponse], dependencies=[Depends(require_admin)])
def list_users(
    search: Optional[str] = None,
    sort_by: Optional[str] = Query(None, alias="sortBy"),
    sort_direction: Optional[str] = Query(None, alias="sortDirection"),
    db: Session = Depends(get_db),
):
    return credentials.list_users(db, search, sort_by, sort_direction)


@app.get("/api/auth/users/{user_id}", response_model=UserResponse, dependencies=[Depends(require_admin)])
def get_user(user_id: int, db: Session = Depends(get_db)):
    user = credentials.get_user(db, user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@app.post("/api/auth/users", response_model=UserResponse, dependencies=[Depends(require_admin)])
def create_user(payload: CreateUserRequest, db: Session = Depends(get_db)):
    username = _require_text(payload.username, "Username is required")
    _require_text(payload.password, "Password is required")
    role = _parse_role(payload.role)
    if credentials.get_user_by_username(db, username) is not None:
        raise HTTPException(status_code=400, detail="Username is already taken")
    return credentials.create_user(db, username, hash_password(payload.password), role)


@app.put("/api/auth/users/{user_id}", response_model=UserResponse, dependencies=[Depends(require_admin)])
def update_user(user_id: int, payload: UpdateUserRequest, db: Session = Depends(get_db)):
    """Update username and role, and the password when a new one is given."""

    username = _require_text(payload.username, "Username is required")
    role = _parse_role(payload.role)
    user = credentials.get_user(db, user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    if credentials.username_exists(db, username, exclude_id=user_id):
        raise HTTPException(status_code=400, detail="Username is already taken")
    user = credentials.update_user(db, user, username, role)
    if payload.new_password and payload.new_password.strip():
        credentials.set_password_hash(db, user_id, hash_password(payload.new_password))
    return user


@app.delete("/api/auth/users/{user_id}", status_code=204)
def delete_user(user_id: int, actor: Actor = Depends(require_admin), db: Session = Depends(get_db)):
    target = credentials.get_user(db, user_id)
    enforce(can_delete_user(actor, target), "User")
    credentials.delete_user(db, target)
    return Response(status_code=204)


# --- ETFs ---


@app.get("/api/etfs", response_model=List[EtfResponse])
def list_etfs(
    search: Optional[str] = None,
    sort_by: Optional[str] = Query(None, alias="sortBy"),
    sort_direction: Optional[str] = Query(None, alias="sortDirection"),
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """Return the ETFs the caller may see, optionally searched and sorted."""

    return services.list_etfs(db, actor, search, sort_by, sort_direction)


@app.get("/api/etfs/{etf_id}", response_model=EtfResponse)
def get_etf(etf_id: int, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    etf = services.get_etf(db, etf_id)
    enforce(can_read(actor, etf), "ETF")
    return etf


@app.post("/api/etfs", response_model=EtfResponse)
def create_etf(payload: EtfRequest, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return services.create_etf(db, actor.id, _etf_fields(payload))


@app.put("/api/etfs/{etf_id}", response_model=EtfResponse)
def update_etf(
    etf_id: int,
    payload: EtfRequest,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    etf = services.get_etf(db, etf_id)
    enforce(can_write(actor, etf), "ETF")
    return services.update_etf(db, etf, _etf_fields(payload))


@app.delete("/api/etfs/{etf_id}", status_code=204)
def delete_etf(etf_id: int, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    etf = services.get_etf(db, etf_id)
    enforce(can_write(actor, etf), "ETF")
    services.delete_etf(db, etf)
    return Response(status_code=204)


# --- Portfolios ---


@app.get("/api/portfolios", response_model=List[PortfolioResponse])
def list_portfolios(
    search: Optional[str] = None,
    sort_by: Optional[str] = Query(None, alias="sortBy"),
    sort_direction: Optional[str] = Query(None, alias="sortDirection"),
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """Return the portfolios the caller may see, optionally searched and sorted."""

    return services.list_portfolios(db, actor, search, sort_by, sort_direction)


@app.get("/api/portfolios/{portfolio_id}", response_model=PortfolioResponse)
def get_portfolio(portfolio_id: int, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    portfolio = services.get_portfolio(db, portfolio_id)
    enforce(can_read(actor, portfolio), "Portfolio")
    return portfolio


@app.post("/api/portfolios", response_model=PortfolioResponse)
def create_portfolio(
    payload: PortfolioRequest, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)
):
    return services.create_portfolio(db, actor.id, _portfolio_fields(payload))


@app.put("/api/portfolios/{portfolio_id}", response_model=PortfolioResponse)
def update_portfolio(
    portfolio_id: int,
    payload: PortfolioRequest,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    portfolio = services.get_portfolio(db, portfolio_id)
    enforce(can_write(actor, portfolio), "Portfolio")
    return services.update_portfolio(db, portfolio, _portfolio_fields(payload))


@app.delete("/api/portfolios/{portfolio_id}", status_code=204)
def delete_portfolio(portfolio_id: int, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    portfolio = services.get_portfolio(db, portfolio_id)
    enforce(can_write(actor, portfolio), "Portfolio")
    services.delete_portfolio(db, portfolio)
    return Response(status_code=204)


@app.get("/api/portfolios/{portfolio_id}/etfs", response_model=List[EtfResponse])
def list_portfolio_etfs(
    portfolio_id: int, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)
):
    portfolio = services.get_portfolio(db, portfolio_id)
    enforce(can_read(actor, portfolio), "Portfolio")
    return services.list_portfolio_etfs(db, actor, portfolio_id)


@app.post("/api/portfolios/{portfolio_id}/etfs/{etf_id}", response_model=MembershipResponse)
def add_etf_to_portfolio(
    portfolio_id: int,
    etf_id: int,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """Add an ETF the caller can see to a portfolio the caller can modify."""

    portfolio = services.get_portfolio(db, portfolio_id)
    enforce(can_write(actor, portfolio), "Portfolio")
    etf = services.get_etf(db, etf_id)
    enforce(can_read(actor, etf), "ETF")
    return services.add_etf_to_portfolio(db, portfolio_id, etf_id)


@app.delete("/api/portfolios/{portfolio_id}/etfs/{etf_id}", status_code=204)
def remove_etf_from_portfolio(
    portfolio_id: int,
    etf_id: int,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    portfolio = services.get_portfolio(db, portfolio_id)
    enforce(can_write(actor, portfolio), "Portfolio")
    services.remove_etf_from_portfolio(db, portfolio_id, etf_id)
    return Response(status_code=204)


if settings.static_dir and Path(settings.static_dir).is_dir():
    app.mount("/", StaticFiles(directory=settings.static_dir, html=True), name="static")
