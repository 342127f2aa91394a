import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

# Import all models to ensure they're registered with SQLAlchemy Base
from . import (
    models,  # noqa: F401
    models_billing,  # noqa: F401
)
from .config import ALLOWED_ORIGINS, APP_VERSION, CACHE_ENABLED, RATE_LIMIT_ENABLED, SQUARE_ENVIRONMENT
from .database import Base, engine
from .domain.billing import (
    admin_router,
    kiosk_router,
    square_webhooks_router,
    stripe_billing_router,
    subscriptions_router,
)
from .rate_limiter import get_redis_client
from .routes.cron import router as cron_router
from .routes.square import router as square_router
from .routes.square_catalog import router as square_catalog_router
from .routes.square_payments import payment_router
from .routes.square_payments import router as square_payments_router
from .routes.system import router as system_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"KioskPay {APP_VERSION} starting (Square {SQUARE_ENVIRONMENT})")
    try:
        Base.metadata.create_all(bind=engine, checkfirst=True)
        logger.info("✅ Schema ready")
    except SQLAlchemyError as e:
        # Workers starting together race on CREATE TABLE
        if "already exists" in str(e) or "duplicate key" in str(e):
            logger.info("Schema already created by another worker")
        else:
            logger.error(f"❌ Could not create schema: {e}")

    if CACHE_ENABLED or RATE_LIMIT_ENABLED:
        try:
            get_redis_client()
        except Exception as e:
            logger.warning(f"⚠️ Redis unreachable, webhook dedupe and rate limits use the database and memory: {e}")

    yield
    logger.info("KioskPay shutting down")


app = FastAPI(title="KioskPay API", version=APP_VERSION, lifespan=lifespan)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed kiosk requests are client errors; report them as 400 with the pydantic details"""
    logger.warning(f"Validation error for {request.url.path}: {exc.errors()}")
    return JSONResponse(status_code=400, content={"detail": jsonable_errors(exc)})


def jsonable_errors(exc: RequestValidationError) -> list:
    # pydantic puts the raised ValueError under ctx, which JSONResponse cannot encode
    errors = []
    for error in exc.errors():
        error = dict(error)
        if "ctx" in error:
            error["ctx"] = {key: str(value) for key, value in error["ctx"].items()}
        errors.append(error)
    return errors


@app.middleware("http")
async def log_requests(request: Request, call_next):
    try:
        response = await call_next(request)
        return response
    except Exception as e:
        logger.error(f"{request.method} {request.url.path} - Error: {str(e)}")
        raise


logger.info(f"CORS allowed origins: {ALLOWED_ORIGINS}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

# Routes
app.include_router(system_router)
app.include_router(square_router)
app.include_router(square_catalog_router)
app.include_router(square_payments_router)
app.include_router(payment_router)
app.include_router(cron_router)
app.include_router(subscriptions_router)
app.include_router(kiosk_router)
app.include_router(admin_router)
app.include_router(square_webhooks_router)
app.include_router(stripe_billing_router)


@app.get("/")
def root():
    return {"message": "KioskPay API is running"}
