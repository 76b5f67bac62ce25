from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from postora.config import settings
from postora.database import engine
from postora.api.credits import router as credits_router
from postora.api.subscriptions import router as subscriptions_router
from postora.api.webhooks import router as webhooks_router
from postora.services.generation_gate import GenerationCreditsRequired
from postora.services.ledger_store import (
    AccountNotFound,
    InsufficientCredits,
    LedgerWriteConflict,
)
from postora.services.payment_service import WebhookVerificationError

# Configure structlog
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        (
            structlog.dev.ConsoleRenderer()
            if settings.APP_ENV == "development"
            else structlog.processors.JSONRenderer()
        ),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(0),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    log.info("starting_up", env=settings.APP_ENV)

    yield

    # Shutdown
    log.info("shutting_down")
    await engine.dispose()


app = FastAPI(
    title="PostoraAI Credits",
    lifespan=lifespan,
)

# CORS middleware for development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.APP_ENV == "development" else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Domain error -> HTTP status mapping
# ---------------------------------------------------------------------------

@app.exception_handler(InsufficientCredits)
async def insufficient_credits_handler(request: Request, exc: InsufficientCredits):
    return JSONResponse(
        status_code=402,
        content={
            "detail": "Insufficient credits",
            "required": exc.required,
            "available": exc.available,
            "shortfall": exc.shortfall,
        },
    )


@app.exception_handler(GenerationCreditsRequired)
async def generation_credits_handler(request: Request, exc: GenerationCreditsRequired):
    return JSONResponse(
        status_code=402,
        content={
            "detail": str(exc),
            "required": exc.required,
            "available": exc.available,
            "shortfall": exc.shortfall,
        },
    )


@app.exception_handler(AccountNotFound)
async def account_not_found_handler(request: Request, exc: AccountNotFound):
    return JSONResponse(status_code=404, content={"detail": "Credit account not found"})


@app.exception_handler(LedgerWriteConflict)
async def ledger_conflict_handler(request: Request, exc: LedgerWriteConflict):
    log.error("ledger_write_conflict_exhausted", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=503,
        content={"detail": "Credit ledger is busy, please retry"},
        headers={"Retry-After": "1"},
    )


@app.exception_handler(WebhookVerificationError)
async def webhook_verification_handler(request: Request, exc: WebhookVerificationError):
    log.warning("stripe_webhook_rejected", error=str(exc))
    return JSONResponse(status_code=400, content={"detail": str(exc)})


app.include_router(credits_router)
app.include_router(subscriptions_router)
app.include_router(webhooks_router)


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
