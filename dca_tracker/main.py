import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    MetaData,
    Numeric,
    String,
    Table,
    create_engine,
    func,
    insert,
    select,
)
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from dca_tracker.coins import COIN_METADATA, COINS, normalize_coin
from dca_tracker.config import Settings, configure_logging
from dca_tracker.identity import (
    AuthSession,
    IdentityError,
    IdentityProviderUnavailable,
    IdentityUser,
    StaticIdentityProvider,
    SupabaseIdentityProvider,
    code_challenge,
    new_code_verifier,
)

settings = Settings.from_env()
configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="DCA Tracker")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = settings.database_url
connect_args = {}
if database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(database_url, connect_args=connect_args)
metadata = MetaData()

ACCESS_COOKIE = "dca-access-token"
REFRESH_COOKIE = "dca-refresh-token"
VERIFIER_COOKIE = "dca-code-verifier"
REFRESH_COOKIE_MAX_AGE = 30 * 24 * 60 * 60
DEFAULT_ACCESS_MAX_AGE = 60 * 60
VERIFIER_MAX_AGE = 10 * 60
LOGIN_PATH = "/login"
AUTH_ERROR_PATH = "/auth/auth-code-error"
NUMERIC_PRECISION = 28
NUMERIC_SCALE = 10


def build_identity_provider(config: Settings):
    if config.supabase_url and config.supabase_anon_key:
        return SupabaseIdentityProvider(
            base_url=config.supabase_url,
            anon_key=config.supabase_anon_key,
            oauth_provider=config.oauth_provider,
        )
    logger.warning("SUPABASE_URL/SUPABASE_ANON_KEY not set; no user can sign in.")
    return StaticIdentityProvider()


IDENTITY_PROVIDER = build_identity_provider(settings)

users = Table(
    "users",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("email", String(255), nullable=False),
    Column("name", String(255)),
    Column("avatar", String(1024)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

contributions = Table(
    "contributions",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(64), ForeignKey("users.id"), nullable=False, index=True),
    Column("coin", String(20), nullable=False),
    Column("coin_price", Numeric(NUMERIC_PRECISION, NUMERIC_SCALE), nullable=False),
    Column("contribution_amount", Numeric(NUMERIC_PRECISION, NUMERIC_SCALE), nullable=False),
    Column("coin_quantity", Numeric(NUMERIC_PRECISION, NUMERIC_SCALE), nullable=False),
    Column("date", DateTime, nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)


@app.on_event("startup")
def init_db() -> None:
    metadata.create_all(engine)


def fits_numeric_column(value: Decimal) -> bool:
    if not value.is_finite():
        return False
    _, digits, exponent = value.as_tuple()
    digits = list(digits)
    while exponent < 0 and len(digits) > 1 and digits[-1] == 0:
        digits.pop()
        exponent += 1
    integer_digits = len(digits) + exponent
    return -exponent <= NUMERIC_SCALE and integer_digits <= NUMERIC_PRECISION - NUMERIC_SCALE


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ContributionPayload(ApiModel):
    coin: str | None = None
    coin_price: Decimal | None = None
    contribution_amount: Decimal | None = None
    coin_quantity: Decimal | None = None
    date: datetime | None = None

    @classmethod
    def validate_payload(cls, payload: "ContributionPayload") -> "ContributionPayload":
        if (
            not payload.coin
            or not payload.coin_price
            or not payload.contribution_amount
            or not payload.coin_quantity
        ):
            raise ValueError(
                "Required fields missing: coin, coinPrice, contributionAmount, coinQuantity."
            )
        payload.coin = normalize_coin(payload.coin)
        if payload.coin_price <= 0:
            raise ValueError("Coin price must be greater than zero.")
        if payload.contribution_amount <= 0:
            raise ValueError("Contribution amount must be greater than zero.")
        if payload.coin_quantity <= 0:
            raise ValueError("Coin quantity must be greater than zero.")

        for label, value in (
            ("Coin price", payload.coin_price),
            ("Contribution amount", payload.contribution_amount),
            ("Coin quantity", payload.coin_quantity),
        ):
            if not fits_numeric_column(value):
                raise ValueError(
                    f"{label} must have at most {NUMERIC_PRECISION - NUMERIC_SCALE} integer digits "
                    f"and {NUMERIC_SCALE} decimal places."
                )

        if payload.date is not None and payload.date.tzinfo is not None:
            payload.date = payload.date.astimezone(timezone.utc).replace(tzinfo=None)
        return payload


class DeleteContributionPayload(ApiModel):
    id: str | None = None


class ContributionResponse(ApiModel):
    id: str
    user_id: str
    coin: str
    coin_price: Decimal
    contribution_amount: Decimal
    coin_quantity: Decimal
    date: datetime
    created_at: datetime | None = None


class ContributionListResponse(ApiModel):
    contributions: list[ContributionResponse]


class ContributionEnvelope(ApiModel):
    contribution: ContributionResponse


class MessageResponse(ApiModel):
    message: str


class UserProfileResponse(ApiModel):
    id: str
    email: str
    name: str | None = None
    avatar: str | None = None
    created_at: datetime | None = None
    contributions: list[ContributionResponse] = []


class UserEnvelope(ApiModel):
    user: UserProfileResponse


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        message = error.get("msg", "Invalid value.")
        messages.append(f"{location}: {message}" if location else message)
    return JSONResponse(status_code=400, content={"detail": "; ".join(messages) or "Invalid request."})


@app.exception_handler(SQLAlchemyError)
async def handle_persistence_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("Persistence failure on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error."})


def extract_access_token(request: Request) -> str | None:
    authorization = request.headers.get("authorization")
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            return token.strip()
    return request.cookies.get(ACCESS_COOKIE) or None


def resolve_identity(request: Request) -> tuple[IdentityUser | None, AuthSession | None]:
    """Look up the caller at the identity provider.

    Returns the user and, when the access token had to be refreshed, the new
    session so its cookies can be re-issued.
    """
    token = extract_access_token(request)
    refresh_token = request.cookies.get(REFRESH_COOKIE)
    try:
        user = IDENTITY_PROVIDER.get_user(token) if token else None
        if user is not None or not refresh_token:
            return user, None
        session = IDENTITY_PROVIDER.refresh_session(refresh_token)
    except IdentityError as exc:
        logger.info("Session rejected by identity provider: %s", exc)
        return None, None
    except IdentityProviderUnavailable as exc:
        logger.warning("Identity provider unavailable: %s", exc)
        return None, None
    return session.user, session


def is_protected_path(path: str) -> bool:
    return path == "/" or path == "/crypto" or path.startswith("/crypto/")


def set_session_cookies(response, session: AuthSession) -> None:
    response.set_cookie(
        ACCESS_COOKIE,
        session.access_token,
        max_age=session.expires_in or DEFAULT_ACCESS_MAX_AGE,
        httponly=True,
        samesite="lax",
        secure=settings.cookie_secure,
    )
    if session.refresh_token:
        response.set_cookie(
            REFRESH_COOKIE,
            session.refresh_token,
            max_age=REFRESH_COOKIE_MAX_AGE,
            httponly=True,
            samesite="lax",
            secure=settings.cookie_secure,
        )


def clear_session_cookies(response) -> None:
    response.delete_cookie(ACCESS_COOKIE)
    response.delete_cookie(REFRESH_COOKIE)


@app.middleware("http")
async def session_guard(request: Request, call_next):
    user, refreshed = await run_in_threadpool(resolve_identity, request)
    request.state.identity = user

    path = request.url.path
    if user is None and is_protected_path(path):
        response = RedirectResponse(LOGIN_PATH, status_code=302)
    elif user is not None and path == LOGIN_PATH:
        response = RedirectResponse("/", status_code=302)
    else:
        response = await call_next(request)

    if refreshed is not None:
        set_session_cookies(response, refreshed)
    return response


def get_identity(request: Request) -> IdentityUser:
    identity = getattr(request.state, "identity", None)
    if identity is None:
        raise HTTPException(status_code=401, detail="Not authenticated.")
    return identity


def ensure_user(conn, identity: IdentityUser) -> dict:
    row = conn.execute(select(users).where(users.c.id == identity.id)).mappings().first()
    if row:
        return dict(row)
    if not identity.email:
        raise HTTPException(status_code=400, detail="User email not available.")
    row = conn.execute(
        insert(users)
        .values(
            id=identity.id,
            email=identity.email,
            name=identity.display_name,
            avatar=identity.avatar_url,
        )
        .returning(users.c.id, users.c.email, users.c.name, users.c.avatar, users.c.created_at)
    ).mappings().first()
    if not row:
        raise HTTPException(status_code=500, detail="Failed to create user.")
    logger.info("Created profile for user %s", identity.id)
    return dict(row)


def fetch_contributions(conn, user_id: str) -> list[ContributionResponse]:
    rows = conn.execute(
        select(contributions)
        .where(contributions.c.user_id == user_id)
        .order_by(contributions.c.date.desc(), contributions.c.created_at.desc())
    ).mappings().all()
    return [contribution_from_row(row) for row in rows]


def contribution_from_row(row) -> ContributionResponse:
    return ContributionResponse(
        id=row["id"],
        user_id=row["user_id"],
        coin=row["coin"],
        coin_price=row["coin_price"],
        contribution_amount=row["contribution_amount"],
        coin_quantity=row["coin_quantity"],
        date=row["date"],
        created_at=row["created_at"],
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/api/contributions", response_model=ContributionListResponse)
def list_contributions(request: Request) -> ContributionListResponse:
    identity = get_identity(request)
    with engine.begin() as conn:
        items = fetch_contributions(conn, identity.id)
    return ContributionListResponse(contributions=items)


@app.post("/api/contributions", response_model=ContributionEnvelope)
def create_contribution(payload: ContributionPayload, request: Request) -> ContributionEnvelope:
    identity = get_identity(request)
    try:
        payload = ContributionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        insert(contributions)
        .values(
            id=str(uuid.uuid4()),
            user_id=identity.id,
            coin=payload.coin,
            coin_price=payload.coin_price,
            contribution_amount=payload.contribution_amount,
            coin_quantity=payload.coin_quantity,
            date=payload.date or datetime.now(timezone.utc).replace(tzinfo=None),
        )
        .returning(*contributions.c)
    )
    with engine.begin() as conn:
        ensure_user(conn, identity)
        row = conn.execute(stmt).mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create contribution.")
    logger.info("User %s added %s contribution %s", identity.id, row["coin"], row["id"])
    return ContributionEnvelope(contribution=contribution_from_row(row))


@app.delete("/api/contributions", response_model=MessageResponse)
def delete_contribution(payload: DeleteContributionPayload, request: Request) -> MessageResponse:
    identity = get_identity(request)
    contribution_id = payload.id.strip() if payload.id else ""
    if not contribution_id:
        raise HTTPException(status_code=400, detail="Contribution id required.")

    stmt = contributions.delete().where(
        contributions.c.id == contribution_id,
        contributions.c.user_id == identity.id,
    )
    with engine.begin() as conn:
        result = conn.execute(stmt)
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Contribution not found.")
    logger.info("User %s deleted contribution %s", identity.id, contribution_id)
    return MessageResponse(message="Contribution deleted.")


@app.get("/api/user", response_model=UserEnvelope)
def get_user_profile(request: Request) -> UserEnvelope:
    identity = get_identity(request)
    # Without an email there is no profile to show, so this is 401; create answers 400.
    if not identity.email:
        raise HTTPException(status_code=401, detail="Not authenticated.")
    with engine.begin() as conn:
        row = ensure_user(conn, identity)
        items = fetch_contributions(conn, identity.id)
    return UserEnvelope(
        user=UserProfileResponse(
            id=row["id"],
            email=row["email"],
            name=row["name"],
            avatar=row["avatar"],
            created_at=row["created_at"],
            contributions=items,
        )
    )


@app.get(LOGIN_PATH)
def login(request: Request) -> RedirectResponse:
    verifier = new_code_verifier()
    redirect_to = str(request.url_for("auth_callback"))
    response = RedirectResponse(
        IDENTITY_PROVIDER.authorize_url(redirect_to, code_challenge(verifier)),
        status_code=302,
    )
    response.set_cookie(
        VERIFIER_COOKIE,
        verifier,
        max_age=VERIFIER_MAX_AGE,
        httponly=True,
        samesite="lax",
        secure=settings.cookie_secure,
    )
    return response


@app.get("/auth/callback", name="auth_callback")
def auth_callback(
    request: Request, code: str | None = None, next_path: str = Query("/", alias="next")
) -> RedirectResponse:
    if not code:
        return RedirectResponse(AUTH_ERROR_PATH, status_code=302)
    try:
        session = IDENTITY_PROVIDER.exchange_code_for_session(
            code, request.cookies.get(VERIFIER_COOKIE)
        )
    except (IdentityError, IdentityProviderUnavailable) as exc:
        logger.warning("Error exchanging code for session: %s", exc)
        return RedirectResponse(AUTH_ERROR_PATH, status_code=302)

    target = next_path if next_path.startswith("/") and not next_path.startswith("//") else "/"
    response = RedirectResponse(target, status_code=302)
    set_session_cookies(response, session)
    response.delete_cookie(VERIFIER_COOKIE)
    logger.info("User %s signed in", session.user.id)
    return response


@app.get(AUTH_ERROR_PATH, response_class=HTMLResponse)
def auth_code_error() -> HTMLResponse:
    return HTMLResponse(
        "<!doctype html><title>Sign-in failed</title>"
        "<h1>Sign-in failed</h1>"
        f'<p>The authorization code could not be exchanged. <a href="{LOGIN_PATH}">Try again</a>.</p>',
        status_code=400,
    )


@app.post("/auth/logout")
def logout(request: Request) -> RedirectResponse:
    token = extract_access_token(request)
    if token:
        try:
            IDENTITY_PROVIDER.sign_out(token)
        except (IdentityError, IdentityProviderUnavailable) as exc:
            logger.warning("Provider sign-out failed: %s", exc)
    response = RedirectResponse(LOGIN_PATH, status_code=303)
    clear_session_cookies(response)
    return response


@app.get("/", response_class=HTMLResponse)
def home() -> HTMLResponse:
    links = "".join(
        f'<li><a href="/crypto/{coin}">{COIN_METADATA[coin].name} ({COIN_METADATA[coin].symbol})</a></li>'
        for coin in COINS
    )
    return HTMLResponse(
        "<!doctype html><title>DCA Tracker</title>"
        f'<h1>DCA Tracker</h1><ul>{links}</ul><div id="dashboard" data-source="/api/contributions"></div>'
    )


@app.get("/crypto/{coin}", response_class=HTMLResponse)
def coin_page(coin: str) -> HTMLResponse:
    try:
        normalized = normalize_coin(coin)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail="Coin not found.") from exc
    metadata_entry = COIN_METADATA[normalized]
    return HTMLResponse(
        f"<!doctype html><title>{metadata_entry.name} | DCA Tracker</title>"
        f'<h1>{metadata_entry.name} ({metadata_entry.symbol})</h1>'
        f'<div id="coin-detail" data-coin="{normalized}" data-source="/api/contributions"></div>'
    )
