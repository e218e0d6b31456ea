from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from psycopg import errors as pg_errors
import json
import sys
import time
import uuid
from datetime import datetime, timezone
from .routers.pos_sync import router as pos_sync_router
from .config import settings
from .db import get_conn, close_pools

app = FastAPI(title="POS Ledger API", version=settings.api_version)
STARTED_AT_UTC = datetime.now(timezone.utc)


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def _json_log(level: str, event: str, **fields):
    rec = {"ts": datetime.now(timezone.utc).isoformat(), "level": level, "event": event, **fields}
    print(json.dumps(rec, default=str), file=sys.stderr)


# Map common DB cast/constraint errors to 4xx so clients get actionable responses
# instead of generic 500s.
@app.exception_handler(pg_errors.InvalidTextRepresentation)
def _invalid_text_representation(_req: Request, exc: Exception):
    # e.g. malformed uuid in a restaurant or category id
    content = {"detail": "invalid value"}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return JSONResponse(status_code=400, content=content)


@app.exception_handler(pg_errors.ForeignKeyViolation)
def _foreign_key_violation(_req: Request, exc: Exception):
    content = {"detail": "invalid reference"}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return JSONResponse(status_code=400, content=content)


@app.exception_handler(pg_errors.UniqueViolation)
def _unique_violation(_req: Request, exc: Exception):
    content = {"detail": "conflict"}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return JSONResponse(status_code=409, content=content)


@app.exception_handler(RequestValidationError)
def _request_validation_error(_req: Request, exc: Exception):
    content = {"detail": "validation failed"}
    if settings.env in {"local", "dev"} and hasattr(exc, "errors"):
        content["errors"] = exc.errors()
    return JSONResponse(status_code=422, content=content)


@app.exception_handler(Exception)
def _unhandled_exception(req: Request, exc: Exception):
    rid = _current_request_id(req)
    _json_log(
        "error",
        "http.request.unhandled",
        request_id=rid,
        method=req.method,
        path=req.url.path,
        error=str(exc),
    )
    content = {"detail": "internal error", "request_id": rid}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return JSONResponse(status_code=500, content=content)


# Correlation id + basic structured request logging.
@app.middleware("http")
async def _request_logging(request: Request, call_next):
    rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    request.state.request_id = rid
    started = time.time()
    path = request.url.path
    method = request.method
    client_ip = (request.client.host if request.client else None)

    try:
        response = await call_next(request)
    except Exception as exc:
        dur_ms = int((time.time() - started) * 1000)
        _json_log(
            "error",
            "http.request.error",
            request_id=rid,
            method=method,
            path=path,
            client_ip=client_ip,
            duration_ms=dur_ms,
            error=str(exc),
        )
        raise

    response.headers["X-Request-Id"] = rid
    response.headers["X-Content-Type-Options"] = "nosniff"
    if path != "/health":
        dur_ms = int((time.time() - started) * 1000)
        _json_log(
            "info",
            "http.request",
            request_id=rid,
            method=method,
            path=path,
            status_code=response.status_code,
            client_ip=client_ip,
            duration_ms=dur_ms,
        )
    return response

# The restaurant dashboard runs on a different origin during development.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(pos_sync_router)


@app.on_event("startup")
def _startup():
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 AS ok")
                cur.fetchone()
        _json_log("info", "startup.db_connected", env=settings.env, version=settings.api_version)
    except Exception as exc:
        _json_log("warning", "startup.db_probe_failed", env=settings.env, error=str(exc))


@app.on_event("shutdown")
def _shutdown():
    close_pools()


@app.get("/health")
def health():
    return {
        "status": "ok",
        "env": settings.env,
        "version": settings.api_version,
        "started_at": STARTED_AT_UTC.isoformat(),
    }
