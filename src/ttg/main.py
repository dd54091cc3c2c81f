"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.exc import SQLAlchemyError

from ttg.challenges.router import router as challenges_router
from ttg.competition.router import router as competition_router
from ttg.config import get_settings
from ttg.database import close_db, get_session, init_db
from ttg.gamification.router import router as gamification_router
from ttg.gamification.seed import seed_all
from ttg.health.router import router as health_router
from ttg.middleware import setup_middleware
from ttg.peers.router import router as peers_router
from ttg.redis_client import close_redis, init_redis

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    await init_redis(settings.redis_url)

    if settings.seed_on_startup:
        # Catalog seeding is idempotent; a missing schema only means migrations have not run yet.
        try:
            async for db in get_session():
                counts = await seed_all(db)
                logger.info("Seeded catalogs: %s", counts)
                break
        except SQLAlchemyError:
            logger.warning("Catalog seeding failed (tables may not exist yet)", exc_info=True)

    yield

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="TradeTally Gamification API",
        description="Achievements, XP, challenges, leaderboards and peer groups for the trading journal",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(gamification_router)
    app.include_router(challenges_router)
    app.include_router(competition_router)
    app.include_router(peers_router)

    return app


app = create_app()
