"""
FastAPI entrypoint for the chart analysis Mini App backend.

Routes:
- /api/analyze: chart image + timeframe -> AnalysisResult
- /api/health: is the inference credential configured
- /api/auth/*: delegated to Supabase auth
- /api/payment/*: SOL payment for credits, checked against Helius

Clients are built once in the lifespan, kept on app.state and injected with
Depends so tests can override them.
"""

import os
import logging
from contextlib import asynccontextmanager
from dotenv import load_dotenv, find_dotenv

# Local runs keep API keys and wallet addresses in .env; deployed instances
# set them on the process. A UTF-16 .env is retried with that encoding.
_dotenv_path = find_dotenv(usecwd=True) or None
if _dotenv_path:
    try:
        load_dotenv(_dotenv_path)
    except UnicodeError:
        load_dotenv(_dotenv_path, encoding="utf-16")
else:
    load_dotenv()

# LOG_LEVEL=DEBUG also logs raw model replies and upstream request lines
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, File, Form, Header, Request, Response, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .analyzer import analyze_chart
from .config import Settings
from .errors import (
    AuthenticationError,
    ChartSignalError,
    ConfigurationError,
    InsufficientResource,
    ValidationError,
)
from .helius_client import HeliusClient
from .llm_client import VisionClient, build_vision_client
from .payments import PaymentRecord, PaymentService
from .schemas import (
    AnalysisRequest,
    AnalysisResult,
    AuthSession,
    AuthUser,
    Credentials,
    ErrorResponse,
    HealthResponse,
    PaymentInitRequest,
    PaymentResponse,
    PaymentVerifyRequest,
)
from .supabase_client import SupabaseClient
from .telegram_auth import verify_init_data

ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/png", "image/jpg", "image/webp"}

# Read once, after .env is loaded
SETTINGS = Settings.from_env()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = SETTINGS
    app.state.settings = settings
    app.state.vision_client = build_vision_client(settings)
    app.state.supabase = SupabaseClient(
        settings.supabase_url,
        settings.supabase_anon_key,
        settings.supabase_service_key,
    )
    app.state.helius = HeliusClient(settings.helius_api_key)
    app.state.payments = PaymentService(settings, app.state.supabase, app.state.helius)
    logger.info(
        "startup provider=%s api_configured=%s auth_configured=%s payments_configured=%s",
        settings.llm_provider,
        app.state.vision_client.configured,
        app.state.supabase.configured,
        app.state.helius.configured and bool(settings.receiver_wallet_address),
    )
    try:
        yield
    finally:
        await app.state.vision_client.aclose()
        await app.state.supabase.aclose()
        await app.state.helius.aclose()


app = FastAPI(title="Chart Signal API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=SETTINGS.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------- error rendering ----------

@app.exception_handler(ChartSignalError)
async def _chart_signal_error_handler(request: Request, exc: ChartSignalError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


@app.exception_handler(RequestValidationError)
async def _request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{where}: {first.get('msg')}" if where else first.get("msg")
    return JSONResponse(status_code=400, content=ErrorResponse(error="Invalid request", message=message).model_dump(exclude_none=True))


@app.exception_handler(Exception)
async def _unhandled_error_handler(request: Request, exc: Exception):
    logger.error("unhandled_error path=%s", request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error", "message": str(exc)})


# ---------- dependencies ----------

def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_vision_client(request: Request) -> VisionClient:
    return request.app.state.vision_client


def get_supabase(request: Request) -> SupabaseClient:
    return request.app.state.supabase


def get_payment_service(request: Request) -> PaymentService:
    return request.app.state.payments


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_access_token(authorization: Optional[str] = Header(None)) -> str:
    token = _bearer_token(authorization)
    if not token:
        raise AuthenticationError("Not authenticated", "Missing bearer token")
    return token


async def get_current_user(
    token: str = Depends(get_access_token),
    supabase: SupabaseClient = Depends(get_supabase),
) -> Dict[str, Any]:
    return await supabase.get_user(token)


async def read_chart_upload(chart: UploadFile, settings: Settings) -> bytes:
    """Reads at most one byte past the upload limit."""
    too_large = ValidationError("Chart image too large", f"Maximum size is {settings.max_upload_mb}MB")
    declared = getattr(chart, "size", None)
    if declared is not None and declared > settings.max_upload_bytes:
        raise too_large
    image = await chart.read(settings.max_upload_bytes + 1)
    if not image:
        raise ValidationError("No chart image provided")
    if len(image) > settings.max_upload_bytes:
        raise too_large
    return image


# ---------- routes ----------

@app.get("/")
def root():
    return {"ok": True, "service": "chartsignal"}


@app.get("/api/health", response_model=HealthResponse)
def health(vision_client: VisionClient = Depends(get_vision_client)):
    return HealthResponse(api_configured=vision_client.configured)


@app.post(
    "/api/analyze",
    response_model=AnalysisResult,
    response_model_exclude_none=True,
    responses={400: {"model": ErrorResponse}, 402: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def analyze_endpoint(
    response: Response,
    chart: Optional[UploadFile] = File(None),
    timeframe: Optional[str] = Form(None),
    init_data: Optional[str] = Form(None, alias="initData"),
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
    vision_client: VisionClient = Depends(get_vision_client),
    supabase: SupabaseClient = Depends(get_supabase),
):
    # Unsupported types are dropped like a missing upload
    if chart is None or (chart.content_type or "").lower() not in ALLOWED_IMAGE_TYPES:
        raise ValidationError("No chart image provided")
    image = await read_chart_upload(chart, settings)
    if not timeframe or not timeframe.strip():
        raise ValidationError("Timeframe is required")
    if not vision_client.configured:
        raise ConfigurationError("API key not configured")

    identity = verify_init_data(
        init_data,
        settings.telegram_bot_token,
        max_age_seconds=settings.telegram_init_data_max_age,
    )
    if identity:
        logger.info("analyze.identity verified user_id=%s name=%s", identity.id, identity.name)
    elif init_data:
        logger.warning("analyze.identity unverified init_data present, continuing anonymously")

    user_id: Optional[str] = None
    token = _bearer_token(authorization)
    if token:
        user = await supabase.get_user(token)
        user_id = str(user.get("id"))
        if await supabase.get_credits(user_id) < 1:
            raise InsufficientResource("Insufficient credits", "Buy more credits to continue")

    logger.info(
        "analyze.request timeframe=%s mime=%s bytes=%d telegram_user=%s account=%s",
        timeframe,
        chart.content_type,
        len(image),
        identity.id if identity else None,
        user_id,
    )

    request = AnalysisRequest(image=image, mime_type=chart.content_type.lower(), timeframe=timeframe.strip())
    try:
        result = await analyze_chart(request, vision_client, max_retries=settings.llm_max_retries)
    except ChartSignalError:
        raise
    except Exception as e:
        logger.error("analyze.failed", exc_info=True)
        raise ChartSignalError("Failed to analyze chart", str(e))

    if user_id:
        remaining = await supabase.consume_credit(user_id)
        response.headers["X-Credits-Remaining"] = str(remaining)
        logger.info("analyze.credit_consumed account=%s remaining=%d", user_id, remaining)

    logger.info(
        "analyze.response recommendation=%s certainty=%d",
        result.recommendation,
        result.certainty,
    )
    return result


# ---------- auth ----------

def _auth_user(user: Dict[str, Any], credits: Optional[int] = None) -> AuthUser:
    return AuthUser(id=str(user.get("id")), email=user.get("email"), credits=credits)


@app.post("/api/auth/signup", response_model=AuthSession, response_model_exclude_none=True)
async def signup(
    body: Credentials,
    settings: Settings = Depends(get_settings),
    supabase: SupabaseClient = Depends(get_supabase),
):
    data = await supabase.sign_up(body.email, body.password)
    # With email confirmation on, GoTrue returns the bare user
    user = data.get("user") or data
    credits = None
    if user.get("id"):
        credits = settings.signup_bonus_credits
        await supabase.create_credits(str(user["id"]), credits)
    logger.info("auth.signup user_id=%s confirmed=%s", user.get("id"), bool(data.get("access_token")))
    return AuthSession(
        access_token=data.get("access_token"),
        refresh_token=data.get("refresh_token"),
        expires_in=data.get("expires_in"),
        user=_auth_user(user, credits) if user.get("id") else None,
    )


@app.post("/api/auth/login", response_model=AuthSession, response_model_exclude_none=True)
async def login(body: Credentials, supabase: SupabaseClient = Depends(get_supabase)):
    data = await supabase.sign_in(body.email, body.password)
    user = data.get("user") or {}
    credits = await supabase.get_credits(str(user["id"])) if user.get("id") else None
    logger.info("auth.login user_id=%s", user.get("id"))
    return AuthSession(
        access_token=data.get("access_token"),
        refresh_token=data.get("refresh_token"),
        expires_in=data.get("expires_in"),
        user=_auth_user(user, credits) if user.get("id") else None,
    )


@app.post("/api/auth/logout")
async def logout(
    token: str = Depends(get_access_token),
    supabase: SupabaseClient = Depends(get_supabase),
):
    await supabase.sign_out(token)
    return {"success": True}


@app.get("/api/auth/user", response_model=AuthUser, response_model_exclude_none=True)
async def current_user(
    user: Dict[str, Any] = Depends(get_current_user),
    supabase: SupabaseClient = Depends(get_supabase),
):
    return _auth_user(user, await supabase.get_credits(str(user["id"])))


# ---------- payments ----------

def _payment_response(record: PaymentRecord, balance: Optional[int] = None, message: Optional[str] = None) -> PaymentResponse:
    return PaymentResponse(
        payment_id=record.id,
        status=record.status,
        sender_address=record.sender_address,
        receiver_address=record.receiver_address,
        amount=record.expected_amount,
        credits=record.credits,
        expires_at=record.expires_at.isoformat(),
        signature=record.signature,
        balance=balance,
        message=message,
    )


@app.post("/api/payment/init", response_model=PaymentResponse, response_model_exclude_none=True)
async def payment_init(
    body: PaymentInitRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    payments: PaymentService = Depends(get_payment_service),
):
    record = await payments.init_payment(str(user["id"]), body.wallet_address, body.credits)
    return _payment_response(
        record,
        message=f"Send {record.expected_amount} SOL to {record.receiver_address} before {record.expires_at.isoformat()}",
    )


_VERIFY_MESSAGES = {
    "pending": "Payment not found yet, try again shortly",
    "verified": "Payment verified",
    "cancelled": "Payment window expired",
}


@app.post("/api/payment/verify", response_model=PaymentResponse, response_model_exclude_none=True)
async def payment_verify(
    body: PaymentVerifyRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    payments: PaymentService = Depends(get_payment_service),
):
    outcome = await payments.verify_payment(str(user["id"]), body.payment_id)
    return _payment_response(outcome.payment, outcome.balance, _VERIFY_MESSAGES.get(outcome.payment.status))


def run() -> None:
    import uvicorn

    uvicorn.run("chartsignal.main:app", host="0.0.0.0", port=SETTINGS.port)


if __name__ == "__main__":
    run()
