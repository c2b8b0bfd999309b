import logging
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from mgnrega.api.routes import router as api_router
from mgnrega.core.config import get_settings
from mgnrega.core.logging import configure_logging
from mgnrega.db.database import Base, create_db_engine, create_session_factory
from mgnrega.models import district  # noqa: F401  registers tables on Base
from mgnrega.services.redis_client import create_cache

logger = logging.getLogger("mgnrega.api")


def create_app(settings=None, engine=None, cache=None) -> FastAPI:
    """Build the API with its store and cache handles on ``app.state``.

    Anything not passed in is built from ``settings`` (environment by
    default), so tests can hand over an in-memory engine and cache.
    """
    settings = settings or get_settings()
    configure_logging(settings)
    owns_engine = engine is None
    if owns_engine:
        engine = create_db_engine(settings.DATABASE_URL)
    if cache is None:
        cache = create_cache(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Try to create tables (safe)
        if settings.AUTO_CREATE_TABLES:
            try:
                Base.metadata.create_all(bind=engine)
            except OperationalError as e:
                logger.error("Database connection failed: %s", e)
        yield
        if owns_engine:
            engine.dispose()

    app = FastAPI(title="MGNREGA District Tracker API", version="1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = create_session_factory(engine)
    app.state.cache = cache
    app.state.started_at = time.monotonic()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    @app.exception_handler(SQLAlchemyError)
    async def database_error(request: Request, exc: SQLAlchemyError):
        logger.error("Database error on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": "Database unavailable"})

    app.include_router(api_router, prefix=settings.API_PREFIX)

    @app.get("/")
    def root():
        return {"message": "MGNREGA District Tracker backend is running successfully!"}

    return app


def main():
    import uvicorn

    uvicorn.run(
        "mgnrega.main:create_app",
        factory=True,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_level="info",
    )


if __name__ == "__main__":
    main()
