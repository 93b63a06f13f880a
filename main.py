import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.v1.api import api_router
from app.config import CORS_ORIGINS, LOG_LEVEL
from app.database import engine, Base
from app.middleware.request_logging import RequestLoggingMiddleware
from app.models import GmailSyncSettings, ImportedTransaction, LedgerEntry  # noqa: F401 (register tables)
from app.services.sync_errors import SyncError

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Ledger Gmail Sync",
    description="Imports transactions from Gmail receipts and bank alerts into the expense ledger",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(SyncError)
async def sync_error_handler(request: Request, exc: SyncError):
    """Render run-level failures as {error, code, message}."""
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.method} {request.url.path}", exc_info=exc)
    return JSONResponse(status_code=500, content=SyncError("Internal server error").to_dict())


@app.on_event("startup")
def on_startup():
    """Create database tables on startup."""
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created/verified")


app.include_router(api_router)


@app.get("/")
def health_check():
    return {"status": "ok"}
