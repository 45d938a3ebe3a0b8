import logging
import os
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import runtime
from .config import settings
from .routers import market, status
from .workers import start_workers, stop_workers

_log_path = settings.log_path
try:
    log_dir = os.path.dirname(os.path.abspath(_log_path))
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
    logging.basicConfig(
        filename=_log_path,
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )
except Exception:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    logging.getLogger(__name__).warning("Failed to initialize file logging at %s.", _log_path)

app = FastAPI(title="DCA Lab", docs_url=None, redoc_url=None)

allow_all = os.getenv("DCA_ALLOW_ALL_ORIGINS", "1") == "1"
raw_origins = os.getenv(
    "ALLOWED_ORIGINS",
    "http://localhost:8787,http://127.0.0.1:8787,http://localhost:5173",
)
allowed_origins = [origin.strip() for origin in raw_origins.split(",") if origin.strip()]

# De-dupe while preserving order
allowed_origins = list(dict.fromkeys(allowed_origins))

if allow_all:
    allowed_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=False if allow_all else True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type"],
    max_age=600,
)

app.include_router(market.router, prefix=settings.api_prefix)
app.include_router(status.router, prefix=settings.api_prefix)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/version")
def version():
    # Lightweight deploy verification endpoint.
    return {
        "build_id": os.getenv("GIT_COMMIT", "local"),
        "build_time": os.getenv("BUILD_TIMESTAMP", "unknown"),
        "environment": os.getenv("ENVIRONMENT", "development"),
        "method_version": settings.method_version,
    }


@app.on_event("startup")
async def _startup():
    logging.getLogger(__name__).info(
        "Auto refresh: interval=%ss, request fresh window=%ss",
        settings.refresh.interval,
        settings.refresh.fresh_window,
    )
    app.state.warmup_task = start_workers(runtime.refresher)


@app.on_event("shutdown")
async def _shutdown():
    await stop_workers(runtime.refresher)
