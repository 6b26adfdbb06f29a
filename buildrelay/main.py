from contextlib import asynccontextmanager

from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from buildrelay.core.config import get_relay_config, get_settings
from buildrelay.core.limiter import limiter
from buildrelay.core.middleware import RequestIdMiddleware
from buildrelay.github.router import router as github_router
from buildrelay.publishing.aggregator import SuiteAggregator
from buildrelay.publishing.logs import GitHubJobLogSource, SerializedLogSource
from buildrelay.uploads.router import router as uploads_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Load the relay config at startup so a broken config.yml stops the
    # service here rather than on the first upload.
    load_config = app.dependency_overrides.get(get_relay_config, get_relay_config)
    load_config()
    yield


def create_app() -> FastAPI:
    settings = get_settings()

    _app = FastAPI(
        title="Build Relay",
        description="Publishes CI build artifacts and links them on pull requests",
        version="0.1.0",
        lifespan=lifespan,
    )

    # ---------------------------------------------------------------------------
    # Process-wide publishing state
    # ---------------------------------------------------------------------------
    _app.state.aggregator = SuiteAggregator()
    log_source = GitHubJobLogSource()
    _app.state.log_source = SerializedLogSource(log_source) if settings.serialize_log_retrieval else log_source

    # ---------------------------------------------------------------------------
    # Rate limiter state: SlowAPI reads limiter from app.state
    # ---------------------------------------------------------------------------
    _app.state.limiter = limiter
    _app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # ---------------------------------------------------------------------------
    # Middleware (registered outermost → innermost; executed innermost → outermost)
    # ---------------------------------------------------------------------------
    _app.add_middleware(SlowAPIMiddleware)
    _app.add_middleware(RequestIdMiddleware)

    # ---------------------------------------------------------------------------
    # Sentry: initialised here so it captures startup errors too
    # ---------------------------------------------------------------------------
    from buildrelay.core.sentry import init_sentry

    init_sentry(
        dsn=settings.sentry_dsn,
        environment="development" if settings.debug else "production",
    )

    # ---------------------------------------------------------------------------
    # Logging: configure structlog before any routers log anything
    # ---------------------------------------------------------------------------
    from buildrelay.core.logging import configure_structlog

    configure_structlog(debug=settings.debug)

    # ---------------------------------------------------------------------------
    # Routes
    # ---------------------------------------------------------------------------

    @_app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "ok"}

    _app.include_router(uploads_router)
    _app.include_router(github_router)

    return _app


app = create_app()
