"""Builds the FastAPI apps: CORS, rate limiting, audit log, metrics, error mapping."""
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from .config import get_settings
from .database import Base, engine
from .errors import register_error_handlers
from .logging_middleware import add_audit_middleware

settings = get_settings()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[settings.default_rate_limit],
    enabled=settings.rate_limiting_enabled,
)


def rate_limit_handler(_: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(status_code=429, content={"detail": f"Rate limit exceeded: {exc.detail}"})


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_service_app(title: str, service_name: str, description: str = "") -> FastAPI:
    fastapi_app = FastAPI(title=title, description=description, version="1.0.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    fastapi_app.state.limiter = limiter
    fastapi_app.add_middleware(SlowAPIMiddleware)
    fastapi_app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    register_error_handlers(fastapi_app)
    add_audit_middleware(fastapi_app, service_name)
    Instrumentator().instrument(fastapi_app).expose(fastapi_app, include_in_schema=False)

    @fastapi_app.get("/health", tags=["health"])
    def health() -> dict[str, str]:
        return {"status": "ok", "service": service_name}

    return fastapi_app
