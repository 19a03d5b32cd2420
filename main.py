"""
FastAPI Application Entry Point
Sales CSV import into the CRM and parcel label fulfillment
"""
from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse
import os
import asyncio
from dotenv import load_dotenv
from starlette.middleware.base import BaseHTTPMiddleware
import logging
import json
import sys
import time
import uuid as _uuid
from typing import Callable, Dict
from routers import (
    imports,
    import_progress,
    templates,
    labels,
    export,
)

from database import DATABASE_URL, init_db, check_db_health
from services.errors import (
    CarrierError,
    IllegalTransitionError,
    ImportLockedError,
    ImportValidationError,
    JobNotFoundError,
    LabelOrderNotFoundError,
    MergeConfirmationRequired,
    TemplateNotFoundError,
)
from collections import defaultdict
from asyncio import Lock

# Load environment variables
load_dotenv()


# ---- Logging setup (JSON; good for Cloud Run) ----
class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "severity": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S%z"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        # Include traceback if present
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
handler = logging.StreamHandler(sys.stdout)
handler.setFormatter(JsonFormatter())

root = logging.getLogger()
root.handlers = [handler]
root.setLevel(LOG_LEVEL)

# Optional: crank down noisy libs
logging.getLogger("uvicorn.access").setLevel(logging.INFO)
logging.getLogger("uvicorn.error").setLevel(logging.INFO)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)  # bump to INFO to see SQL
logging.getLogger("httpx").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Sales Import API",
    description="CSV sales import into the CRM and parcel label generation",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)

cors_origins_raw = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5000")
cors_origins = [origin.strip() for origin in cors_origins_raw.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["http://localhost:3000"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
# ---- Request/Response logging middleware ----
class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-Id") or str(_uuid.uuid4())
        start = time.time()

        # Attach request_id so handlers can use it
        request.state.request_id = request_id

        # Log request (avoid reading full body for large uploads)
        logger.info(
            f"REQ {request.method} {request.url.path} "
            f"qs={request.url.query!s} ip={request.client.host if request.client else '-'} "
            f"rid={request_id} ua={request.headers.get('user-agent','-')}"
        )
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(f"Uncaught exception in request pipeline rid={request_id}")
            raise

        dur_ms = int((time.time() - start) * 1000)
        logger.info(
            f"RES {request.method} {request.url.path} "
            f"status={response.status_code} durMs={dur_ms} rid={request_id}"
        )
        # Make request id visible to clients
        response.headers["X-Request-Id"] = request_id
        return response

app.add_middleware(RequestIDMiddleware)


# ---- Rate Limiting Middleware ----
class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Simple in-memory rate limiter.
    Limits requests per IP per time window. Progress polling and event
    streams are exempt since the UI hits them continuously while a job runs.
    """
    def __init__(self, app, requests_per_minute: int = 60, burst_size: int = 100):
        super().__init__(app)
        self.requests_per_minute = requests_per_minute
        self.burst_size = burst_size
        self.window_seconds = 60
        self._requests: Dict[str, list] = defaultdict(list)
        self._lock = Lock()
        # Endpoints exempt from rate limiting
        self._exempt_paths = {"/healthz", "/api/health", "/", "/api/docs", "/api/redoc", "/api/openapi.json"}

    def _is_exempt(self, request: Request) -> bool:
        path = request.url.path
        if path in self._exempt_paths or path.endswith("/events"):
            return True
        return request.method == "GET" and path.startswith("/api/import-csv/")

    async def dispatch(self, request: Request, call_next: Callable):
        # Skip rate limiting for health checks, docs and progress reads
        if self._is_exempt(request):
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        current_time = time.time()

        async with self._lock:
            # Clean old requests outside window
            self._requests[client_ip] = [
                t for t in self._requests[client_ip]
                if current_time - t < self.window_seconds
            ]

            # Check if over limit
            if len(self._requests[client_ip]) >= self.requests_per_minute:
                logger.warning(f"Rate limit exceeded for IP: {client_ip}")
                return JSONResponse(
                    status_code=429,
                    content={
                        "error": "Rate limit exceeded",
                        "retry_after_seconds": self.window_seconds,
                    },
                    headers={"Retry-After": str(self.window_seconds)},
                )

            # Check burst limit (too many in very short time)
            recent_requests = [t for t in self._requests[client_ip] if current_time - t < 1]
            if len(recent_requests) >= self.burst_size // 10:  # 10 requests per second max
                logger.warning(f"Burst limit exceeded for IP: {client_ip}")
                return JSONResponse(
                    status_code=429,
                    content={
                        "error": "Too many requests in short time",
                        "retry_after_seconds": 1,
                    },
                    headers={"Retry-After": "1"},
                )

            # Record this request
            self._requests[client_ip].append(current_time)

        response = await call_next(request)

        # Add rate limit headers
        remaining = self.requests_per_minute - len(self._requests.get(client_ip, []))
        response.headers["X-RateLimit-Limit"] = str(self.requests_per_minute)
        response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
        response.headers["X-RateLimit-Reset"] = str(int(current_time + self.window_seconds))

        return response


# Add rate limiting (configurable via env)
RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"
RATE_LIMIT_RPM = int(os.getenv("RATE_LIMIT_RPM", "120"))  # 120 requests per minute default

if RATE_LIMIT_ENABLED:
    app.add_middleware(RateLimitMiddleware, requests_per_minute=RATE_LIMIT_RPM)
    logger.info(f"Rate limiting enabled: {RATE_LIMIT_RPM} requests/minute")


@app.get("/")
async def root():
    return {"ok": True, "service": "sales-import"}

@app.get("/healthz")
async def healthz():
    """Basic health check for load balancers."""
    return {"ok": True}


@app.get("/api/health")
async def api_health():
    """Comprehensive health check including database status."""
    db_health = await check_db_health()
    overall_status = "healthy" if db_health["status"] == "healthy" else "degraded"
    return {
        "status": overall_status,
        "database": db_health,
        "timestamp": time.time(),
    }


# --- Error handlers ---
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.error(f"Validation error: {exc.errors()}")
    return JSONResponse(status_code=422, content={"detail": exc.errors(), "error": "Validation failed"})

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

@app.exception_handler(ImportValidationError)
async def import_validation_handler(request: Request, exc: ImportValidationError):
    logger.warning(f"Import rejected: {exc.message}")
    return JSONResponse(status_code=400, content={"error": exc.message, "details": exc.details})

@app.exception_handler(ImportLockedError)
async def import_locked_handler(request: Request, exc: ImportLockedError):
    return JSONResponse(status_code=409, content={"error": exc.message, "lock": exc.lock})

@app.exception_handler(JobNotFoundError)
@app.exception_handler(TemplateNotFoundError)
@app.exception_handler(LabelOrderNotFoundError)
async def not_found_handler(request: Request, exc: Exception):
    return JSONResponse(status_code=404, content={"error": str(exc)})

@app.exception_handler(IllegalTransitionError)
async def illegal_transition_handler(request: Request, exc: IllegalTransitionError):
    return JSONResponse(status_code=409, content={"error": exc.message, "currentState": exc.current_state})

@app.exception_handler(MergeConfirmationRequired)
async def merge_confirmation_handler(request: Request, exc: MergeConfirmationRequired):
    return JSONResponse(
        status_code=409,
        content={"error": exc.message, "requiresConfirmation": True, "emails": exc.emails},
    )

@app.exception_handler(CarrierError)
async def carrier_error_handler(request: Request, exc: CarrierError):
    status = exc.status_code if exc.status_code and 400 <= exc.status_code < 500 else 502
    logger.warning(f"Carrier error ({status}): {exc.message}")
    return JSONResponse(status_code=status, content={"error": exc.message, "errors": exc.errors})

@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"error": str(exc)})

# --- Routers ---
# imports first: its static paths (/jobs, /active, /lock) must win over /{job_id}
app.include_router(imports.router, prefix="/api", tags=["imports"])
app.include_router(import_progress.router, prefix="/api", tags=["import-progress"])
app.include_router(templates.router, prefix="/api", tags=["templates"])
app.include_router(labels.router, prefix="/api", tags=["labels"])
app.include_router(export.router, prefix="/api", tags=["export"])

# --- Startup/shutdown ---
@app.on_event("startup")
async def startup():
    logger.info("Starting Sales Import API...")
    # In-memory SQLite has no migrations to run, so its tables are always created here
    if os.getenv("INIT_DB_ON_STARTUP", "false").lower() == "true" or DATABASE_URL.startswith("sqlite"):
        try:
            logger.info("Initializing database tables...")
            await asyncio.wait_for(init_db(), timeout=120)  # 2 minutes for slow connections
            logger.info("✅ Database initialized successfully")
        except asyncio.TimeoutError:
            logger.error("❌ DB init timed out after 120s, continuing without init")
        except Exception as e:
            logger.error(f"❌ DB init failed (continuing to serve): {e}", exc_info=True)
    else:
        logger.info("Skipping DB init on startup")
@app.on_event("shutdown")
async def shutdown():
    logger.info("Shutting down Sales Import API...")

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8080)),
        reload=os.getenv("NODE_ENV") != "production"
    )
