"""ghactivity FastAPI backend: main application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ghactivity import config
from ghactivity.business_days import seed_holiday_calendars
from ghactivity.routers.activity import activity_router
from ghactivity.routers.attention import attention_router
from ghactivity.routers.cache import cache_router

from ghactivity.db import connection, migrations
from ghactivity.db.job_runner import ActivityJobRunner
from ghactivity.observability import initialize as initialize_observability, shutdown as shutdown_observability

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("ghactivity")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("ghactivity backend starting up")
    initialize_observability(app)

    # 1. Initialize DB connection
    db = await connection.get_connection()

    # 2. Run migrations
    await migrations.run_migrations(db)

    # 3. Optional holiday calendar seed
    if config.HOLIDAYS_FILE:
        await seed_holiday_calendars(db, config.HOLIDAYS_FILE)

    # 4. Job runner for background refreshes
    app.state.db = db
    app.state.job_runner = ActivityJobRunner(db)

    yield

    logger.info("ghactivity backend shutting down")
    shutdown_observability(app)
    await connection.close_connection()


app = FastAPI(
    title="ghactivity API",
    description="Activity feed over a synchronized GitHub organisation",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(activity_router)
app.include_router(attention_router)
app.include_router(cache_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "db": "connected" if connection._connection else "disconnected",
        "backend": config.DB_BACKEND,
    }
