import os
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .config import settings
from .db import Base, engine
from .logging import setup_logging, RequestIdMiddleware, structlog
from .auth.router import router as auth_router
from .routes.attendance import router as attendance_router
from .routes.checkpoints import router as checkpoints_router
from .routes.patrol_logs import router as patrol_logs_router
from .routes.reports import router as reports_router
from .routes.shifts import router as shifts_router
from .routes.users import router as users_router
from .services.cache import CheckpointCache
from .services.errors import PatrolError


def create_app() -> FastAPI:
    setup_logging()
    logger = structlog.get_logger("patrolhub")
    app = FastAPI(title=settings.app_name)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    app.state.checkpoint_cache = CheckpointCache(ttl_seconds=settings.checkpoint_cache_ttl_seconds)

    @app.exception_handler(PatrolError)
    async def _patrol_error(request: Request, exc: PatrolError):
        if exc.status_code >= 500:
            logger.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
        else:
            logger.info("request_rejected", path=request.url.path, code=exc.code, kind=exc.kind)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # Routers
    app.include_router(auth_router)
    app.include_router(users_router)
    app.include_router(shifts_router)
    app.include_router(checkpoints_router)
    app.include_router(attendance_router)
    app.include_router(patrol_logs_router)
    app.include_router(reports_router)

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.get("/healthz")
    def healthz():
        return {"status": "ok"}

    @app.on_event("startup")
    def _startup():
        # Ensure local SQLite directory exists
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            Base.metadata.create_all(bind=engine)
            logger.info("tables_created_or_verified")

    return app


app = create_app()
