from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.exc import TimeoutError as SQLAlchemyTimeoutError
from custody.api.v1.routes import router as api_router
from custody.core.config import get_settings, parse_cors_origins
from custody.core.errors import CustodyError
import logging
import time
from custody.core.database import Base, engine, SessionLocal
from custody.core.logging import configure_logging
from custody.jobs.scheduler import CustodyScheduler
from custody.middlewares.rate_limit import limiter
from custody.services.chain import ChainGatewayError
from custody.services.ledger import LedgerStore
import custody.models  # noqa: F401  (registers tables on Base.metadata)


settings = get_settings()

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
_started_at = time.time()
_scheduler: CustodyScheduler | None = None


@app.exception_handler(SQLAlchemyTimeoutError)
async def sqlalchemy_timeout_handler(request, exc):
    logger.warning("Database pool timeout on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"detail": "Service is busy. Please retry in a moment."},
    )


@app.exception_handler(CustodyError)
async def custody_error_handler(request, exc: CustodyError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(ChainGatewayError)
async def chain_error_handler(request, exc: ChainGatewayError):
    logger.warning("Chain gateway error on %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=502, content={"detail": f"Chain node error: {exc.message}"})


app.add_middleware(
    CORSMiddleware,
    allow_origins=parse_cors_origins(settings.cors_origins or ""),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix=settings.api_v1_prefix)


@app.on_event("startup")
def ensure_tables():
    global _scheduler
    if settings.auto_create_tables:
        # Optional local fallback for fresh environments.
        try:
            Base.metadata.create_all(bind=engine)
            LedgerStore(SessionLocal).ensure_system_accounts()
        except Exception as exc:
            logger.warning("DB unavailable on startup, skipping table creation: %s", exc)

    if settings.background_jobs_enabled:
        _scheduler = CustodyScheduler()
        _scheduler.start()


@app.on_event("shutdown")
def stop_jobs():
    if _scheduler is not None:
        _scheduler.shutdown()


@app.get("/")
def root():
    return {"status": "ok"}


@app.get("/healthz")
def healthz():
    # Liveness: process is up.
    return {
        "status": "ok",
        "uptime_seconds": int(max(0, time.time() - _started_at)),
        "service": settings.app_name,
    }


@app.get("/readyz")
def readyz():
    # Readiness: database is reachable.
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        return {
            "status": "ready",
            "uptime_seconds": int(max(0, time.time() - _started_at)),
        }
    except Exception as exc:
        logger.warning("Readiness DB check failed: %s", exc)
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "detail": "database_unavailable"},
        )
    finally:
        db.close()
