from __future__ import annotations

import asyncio
import contextlib
from collections import Counter
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, List

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from gatehouse.api.error_handling import register_exception_handlers
from gatehouse.api.schemas import HealthResponse
from gatehouse.logging import get_logger, set_correlation_id
from gatehouse.service.runtime import get_runtime, prune_rate_limits
from gatehouse.service.sessions import clear_session_cookie
from gatehouse.web.auth_routes import router as auth_router
from gatehouse.web.rendering import redirect
from gatehouse.web.settings_routes import router as settings_router

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_sweep_task: asyncio.Task | None = None


async def sweep_expired(runtime) -> Dict[str, int]:
    """One sweep: expired sessions and email tokens, then refilled rate buckets."""
    removed = await asyncio.to_thread(runtime.users.delete_expired)
    removed["rate_buckets"] = await prune_rate_limits(runtime)
    return removed


async def _run_expiry_sweep(interval_seconds: int) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = await sweep_expired(get_runtime())
        except Exception as exc:
            logger.error(
                "expiry_sweep_failed", error_type=type(exc).__name__, error=str(exc)
            )
            continue
        logger.info("expiry_sweep_complete", **removed)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _sweep_task
    runtime = get_runtime()
    _sweep_task = asyncio.create_task(
        _run_expiry_sweep(runtime.settings.sweep_interval_seconds)
    )
    logger.info("app_started", version=__version__)

    yield

    try:
        if _sweep_task:
            _sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _sweep_task
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Gatehouse", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def clear_stale_session_cookie(request: Request, call_next):
    """Expire a session cookie that no longer maps to a live session."""
    response = await call_next(request)
    if getattr(request.state, "clear_session_cookie", False):
        policy = get_runtime().policy
        prefix = f"{policy.session_name}=".encode("latin-1")
        already_set = any(
            name == b"set-cookie" and value.startswith(prefix)
            for name, value in response.raw_headers
        )
        if not already_set:
            clear_session_cookie(response, policy)
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Cache-Control", "no-store")
    if request.url.scheme == "https" and get_runtime().policy.secure:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    response.headers.setdefault(
        "Content-Security-Policy",
        "default-src 'self'; script-src 'self' https://unpkg.com; style-src 'self' 'unsafe-inline'; "
        "img-src 'self' data:; frame-ancestors 'none'; base-uri 'self'; form-action 'self'",
    )
    return response


# (method, route template, status) -> count since process start
_request_counts: Counter = Counter()


@app.middleware("http")
async def count_requests(request: Request, call_next):
    response = await call_next(request)
    route = request.scope.get("route")
    _request_counts[
        (request.method, getattr(route, "path", "unmatched"), response.status_code)
    ] += 1
    return response


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Tag the request with ``X-Request-ID`` (client supplied or generated)."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(auth_router)
app.include_router(settings_router)


@app.get("/")
async def index(request: Request):
    return redirect(request, get_runtime().settings.default_landing_path)


@app.get("/healthz")
async def health():
    """Report store and Redis reachability; 503 when a configured backend is down."""
    runtime = get_runtime()

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    store_type = type(runtime.store).__name__
    store_ok = True
    if hasattr(runtime.store, "verify_connection"):
        store_ok = await _run_bounded("database", runtime.store.verify_connection)
    redis_ok = False
    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
    healthy = store_ok and (runtime.cache is None or redis_ok)
    body = HealthResponse(
        status="healthy" if healthy else "unhealthy", store=store_type, redis=redis_ok
    ).model_dump()
    body["version"] = __version__
    body["timestamp"] = datetime.now(timezone.utc).isoformat()
    return JSONResponse(status_code=200 if healthy else 503, content=body)


METRICS_USER_SCAN_LIMIT = 10000


def _gauge(lines: List[str], name: str, help_text: str, value) -> None:
    lines.append(f"# HELP {name} {help_text}")
    lines.append(f"# TYPE {name} gauge")
    lines.append(f"{name} {value}")


@app.get("/metrics", response_class=PlainTextResponse)
async def metrics() -> PlainTextResponse:
    """Prometheus text exposition: build info, users, backends and request counts."""
    runtime = get_runtime()
    lines: List[str] = [
        "# HELP gatehouse_info Application version info",
        "# TYPE gatehouse_info gauge",
        f'gatehouse_info{{version="{__version__}"}} 1',
    ]

    try:
        users = await asyncio.to_thread(runtime.store.list_users, METRICS_USER_SCAN_LIMIT)
        _gauge(lines, "gatehouse_users_total", "Registered users", len(users))
    except Exception as exc:
        logger.warning("metrics_user_count_failed", error=str(exc))

    _gauge(
        lines,
        "gatehouse_cache_available",
        "Redis cache availability",
        1 if runtime.cache is not None else 0,
    )

    db_healthy = 1
    if hasattr(runtime.store, "verify_connection"):
        try:
            await asyncio.wait_for(
                asyncio.to_thread(runtime.store.verify_connection),
                HEALTH_CHECK_TIMEOUT_SECONDS,
            )
        except Exception as exc:
            logger.warning("metrics_database_health_failed", error=str(exc))
            db_healthy = 0
    _gauge(lines, "gatehouse_database_healthy", "Database connection health", db_healthy)

    lines.append("# HELP gatehouse_http_requests_total HTTP requests by route and status")
    lines.append("# TYPE gatehouse_http_requests_total counter")
    for (method, route, status), count in sorted(_request_counts.items()):
        lines.append(
            f'gatehouse_http_requests_total{{method="{method}",route="{route}",status="{status}"}} {count}'
        )
    return PlainTextResponse("\n".join(lines) + "\n", media_type="text/plain; version=0.0.4")
