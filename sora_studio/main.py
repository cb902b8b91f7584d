import asyncio
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from slowapi.errors import RateLimitExceeded

from sora_studio.config import Settings, get_settings
from sora_studio.container import build_services, close_services
from sora_studio.errors import AppError
from sora_studio.middleware.correlation import CorrelationMiddleware
from sora_studio.middleware.rate_limit import RedisRateLimitMiddleware, limiter
from sora_studio.routes import health, quota, videos
from sora_studio.services.sora_client import SoraClient
from sora_studio.utils.logger import logger
from sora_studio.worker import reconciler_loop


def _error_body(code: str, message: str, details=None) -> dict:
    error = {"code": code, "message": message}
    if details:
        error["details"] = details
    return {"success": False, "error": error}


async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code}: {exc.message}", extra={"path": request.url.path, "error_type": type(exc).__name__})
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.to_dict()})


async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content=_error_body("VALIDATION_ERROR", "Invalid request", errors))


async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content=_error_body("RATE_LIMITED", f"Rate limit exceeded: {exc.detail}"),
        headers={"Retry-After": "60"},
    )


def create_app(
    settings: Optional[Settings] = None,
    *,
    sora_client: Optional[SoraClient] = None,
    redis: Optional[Redis] = None,
) -> FastAPI:
    """
    Build the API app. Services are created on startup and closed on shutdown;
    ``sora_client`` and ``redis`` are passed through to build_services.
    """
    settings = settings or get_settings()

    app = FastAPI(title=settings.app_name, version=settings.app_version)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    # Redis rate limit sits inside correlation so limited requests are still logged
    app.add_middleware(RedisRateLimitMiddleware)
    app.add_middleware(CorrelationMiddleware)

    # CORS - Explicit origins from config
    allowed_origins = [origin.strip() for origin in settings.allowed_origins.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-User-ID", "X-Correlation-ID"],
        expose_headers=["X-Correlation-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining"],
    )

    @app.on_event("startup")
    async def startup_event():
        logger.info(f"Starting {settings.app_name}...")
        services = await build_services(settings, client=sora_client, redis=redis)
        app.state.services = services

        app.state.reconciler_stop = asyncio.Event()
        app.state.reconciler_task = None
        if settings.reconciler_enabled:
            app.state.reconciler_task = asyncio.create_task(
                reconciler_loop(
                    services.reconciler,
                    settings.reconciler_interval_seconds,
                    app.state.reconciler_stop,
                )
            )
        logger.info(f"Backend ready at http://{settings.backend_host}:{settings.backend_port}")

    @app.on_event("shutdown")
    async def shutdown_event():
        app.state.reconciler_stop.set()
        if app.state.reconciler_task is not None:
            await app.state.reconciler_task
        await close_services(app.state.services)

    app.include_router(health.router, tags=["Health"])
    app.include_router(videos.router, prefix="/api/videos", tags=["Videos"])
    app.include_router(videos.events_router, prefix="/api/events", tags=["Events"])
    app.include_router(quota.router, prefix="/api/quota", tags=["Quota"])

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(
        "sora_studio.main:app",
        host=settings.backend_host,
        port=settings.backend_port,
        reload=settings.debug
    )
