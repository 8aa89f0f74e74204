import json
import math
import logging
import traceback
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

import mpesa
from config import Settings
from errors import MpesaError, ValidationError
from middleware import (
    ErrorHandlingMiddleware,
    RateLimitMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
    client_ip,
)
from models import (
    CallbackAck,
    ErrorDetail,
    ErrorResponse,
    HealthResponse,
    MessageResponse,
    STKPushRequest,
    TokenResponse,
)

logger = logging.getLogger(__name__)

NOT_FOUND_MESSAGE = "Not Found - The requested resource does not exist"
MISSING_FIELDS_MESSAGE = "Amount and phone number are required."


def configure_logging(settings: Settings):
    logging.basicConfig(
        level=settings.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def iso_now() -> str:
    """Current UTC time as ISO-8601 with milliseconds and a Z suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


async def read_stk_push_body(request: Request) -> STKPushRequest:
    """Parse a JSON or form-encoded STK Push body. Any other content type reads as empty."""
    content_type = request.headers.get("content-type", "").lower()

    if content_type.startswith("application/x-www-form-urlencoded"):
        data = dict(await request.form())
    elif content_type and "json" not in content_type:
        data = {}
    else:
        raw = await request.body()
        if not raw.strip():
            data = {}
        else:
            try:
                data = json.loads(raw)
            except ValueError:
                raise ValidationError("Malformed JSON in request body.")

    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")

    try:
        return STKPushRequest(**data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ()))
        raise ValidationError(f"Invalid value for {field}: {first.get('msg')}")


# API Endpoints
router = APIRouter(prefix="/api/mpesa", tags=["M-Pesa"])


@router.post("/stk-push")
async def stk_push(request: Request, settings: Settings = Depends(get_settings)):
    """Prompt the payer's phone to approve a payment"""
    data = await read_stk_push_body(request)

    if not data.is_complete():
        raise ValidationError(MISSING_FIELDS_MESSAGE)
    if not math.isfinite(data.amount) or data.amount < 0:
        raise ValidationError("Amount must be a positive number.")

    result = await run_in_threadpool(mpesa.initiate_stk_push, settings, data)
    return JSONResponse(status_code=200, content=result)


@router.post("/callback", response_model=CallbackAck)
async def mpesa_callback(request: Request):
    """Receive a payment outcome notification from Daraja"""
    raw = await request.body()
    try:
        payload = json.loads(raw) if raw.strip() else {}
    except ValueError:
        payload = raw.decode("utf-8", errors="replace")
    return mpesa.handle_callback(payload)


@router.get("/token", response_model=TokenResponse)
def access_token(settings: Settings = Depends(get_settings)):
    """Fetch a fresh Daraja access token (for testing/admin purposes)"""
    return {"accessToken": mpesa.get_access_token(settings)}


def _error_response(request: Request, exc: Exception, status_code: int, message: str) -> JSONResponse:
    settings = request.app.state.settings
    stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))

    logger.error(f"{status_code} - {message} - {request.url.path} - {request.method} - {client_ip(request)}")
    logger.error(stack)

    detail = ErrorDetail(message=message, stack=None if settings.is_production else stack)
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=detail).to_content())


def register_exception_handlers(app: FastAPI):
    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        logger.warning(f"Rejected {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code, content=MessageResponse(message=exc.message).model_dump()
        )

    @app.exception_handler(MpesaError)
    async def mpesa_error_handler(request: Request, exc: MpesaError):
        return _error_response(request, exc, exc.status_code, exc.message)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        message = NOT_FOUND_MESSAGE if exc.status_code == 404 else str(exc.detail)
        response = _error_response(request, exc, exc.status_code, message)
        if exc.headers:
            response.headers.update(exc.headers)
        return response


async def unhandled_error_response(request: Request, exc: Exception) -> JSONResponse:
    return _error_response(request, exc, 500, str(exc) or "Internal Server Error")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Server is running on port {settings.port} in {settings.environment} mode")
        yield
        logger.info("Application is shutting down...")

    app = FastAPI(
        title="M-Pesa Processor",
        description="Relays STK Push requests and callbacks to Safaricom's Daraja API",
        version="1.0.0",
        docs_url="/api-docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.settings = settings

    # Middleware Configuration (last added runs first)
    app.add_middleware(ErrorHandlingMiddleware, handler=unhandled_error_response)
    app.add_middleware(RateLimitMiddleware, limit=settings.rate_limit)
    app.add_middleware(
        RequestLoggingMiddleware, log_format="combined" if settings.is_production else "dev"
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["Content-Type", "Authorization"],
    )
    app.add_middleware(SecurityHeadersMiddleware)

    register_exception_handlers(app)

    @app.get("/", response_model=HealthResponse)
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "UP",
            "message": "M-Pesa Processor is running.",
            "timestamp": iso_now(),
        }

    app.include_router(router)
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.port)
