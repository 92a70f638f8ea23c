from __future__ import annotations

import asyncio
import time
from collections import Counter
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Header, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from authcore.api.error_handling import register_exception_handlers
from authcore.api.routes import router
from authcore.config import Settings, get_settings
from authcore.logging import get_logger, set_correlation_id
from authcore.service.errors import ServiceError
from authcore.service.guards import check_basic_auth
from authcore.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime if none was injected and run the token retention sweep."""
    if getattr(app.state, "runtime", None) is None:
        app.state.runtime = Runtime(app.state.settings)
    runtime = app.state.runtime
    if runtime.settings.enable_token_sweep:
        runtime.sweeper.start()
        logger.info(
            "token_retention_sweep_started",
            interval_seconds=runtime.sweeper.interval_seconds,
        )

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error_type=type(exc).__name__, error=str(exc))


def create_app(settings: Optional[Settings] = None, runtime: Optional[Runtime] = None) -> FastAPI:
    """Application factory.

    ``runtime`` is normally built lazily during startup; tests pass their own.
    """
    if settings is None:
        settings = runtime.settings if runtime is not None else get_settings()

    app = FastAPI(title="authcore", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.runtime = runtime
    app.state.request_counts = Counter()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "Authorization",
            settings.csrf_header_name,
            "X-Request-ID",
        ],
        expose_headers=["X-Request-ID", "Retry-After"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("Cache-Control", "no-store")
        return response

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        app.state.request_counts[response.status_code] += 1
        logger.info(
            "http_request",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=duration_ms,
        )
        return response

    # Registered last so it wraps the others and the id is bound for their logs
    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health(request: Request) -> Dict[str, Any]:
        runtime = request.app.state.runtime
        checks: Dict[str, Dict[str, Any]] = {}

        async def _run_bounded(label: str, func) -> bool:
            try:
                await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
                return True
            except asyncio.TimeoutError:
                logger.error("health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
            except Exception as exc:
                logger.error("health_check_failed", component=label, error=str(exc))
            return False

        db_ok = await _run_bounded("database", runtime.store.check_health)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
        healthy = db_ok
        if runtime.cache is not None:
            redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
            checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
            healthy = healthy and redis_ok
        else:
            checks["redis"] = {"status": "not_configured"}
        return {
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/metrics", response_class=Response)
    async def metrics(request: Request, authorization: Optional[str] = Header(None)) -> Response:
        """Prometheus text metrics, guarded by the operator basic credentials."""
        runtime = request.app.state.runtime
        outcome = check_basic_auth(
            authorization,
            username=runtime.settings.ops_basic_auth_username,
            password=runtime.settings.ops_basic_auth_password,
        )
        if not outcome.ok:
            error = ServiceError.from_failure(outcome.failure)
            error.headers["WWW-Authenticate"] = 'Basic realm="authcore"'
            raise error

        lines = [
            "# HELP authcore_info Application version info",
            "# TYPE authcore_info gauge",
            f'authcore_info{{version="{__version__}"}} 1',
            "# HELP authcore_cache_available Redis cache availability",
            "# TYPE authcore_cache_available gauge",
            f"authcore_cache_available {1 if runtime.cache is not None else 0}",
            "# HELP authcore_token_sweep_running Token retention sweep task state",
            "# TYPE authcore_token_sweep_running gauge",
            f"authcore_token_sweep_running {1 if runtime.sweeper.running else 0}",
            "# HELP authcore_http_responses_total HTTP responses by status code",
            "# TYPE authcore_http_responses_total counter",
        ]
        for status_code, count in sorted(request.app.state.request_counts.items()):
            lines.append(f'authcore_http_responses_total{{status="{status_code}"}} {count}')
        return Response(content="\n".join(lines) + "\n", media_type="text/plain; version=0.0.4")

    return app
