import asyncio
import logging
from contextlib import asynccontextmanager

import redis.asyncio as redis
from fastapi import FastAPI
from fastapi_limiter import FastAPILimiter

from . import crud, models
from .config import settings
from .database import SessionLocal, engine
from .expiry_scheduler import run_expiry_scheduler
from .kafka_producer import close_kafka_connection, connect_to_kafka
from .routers import application_router, chat_router, commission_router, notification_router

logger = logging.getLogger("adbooking")

# Create the partition tables and the rest of the schema if they don't exist
models.Base.metadata.create_all(bind=engine)


def migrate_legacy_rows() -> int:
    """Moves rows left in the legacy 'applications' table into their status partitions."""
    db = SessionLocal()
    try:
        moved = crud.migrate_legacy_applications(db)
        if moved:
            logger.info(f"Migrated {moved} legacy applications into status partitions.")
        return moved
    except Exception as e:
        logger.error(f"Legacy application migration failed: {e}")
        db.rollback()
        return 0
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manages application startup and shutdown events.
    """
    logger.info("Starting background tasks...")

    redis_client = None
    try:
        redis_client = redis.from_url(settings.REDIS_URL, encoding="utf-8")
        await FastAPILimiter.init(redis_client)
        logger.info("FastAPILimiter initialized with Redis.")
    except Exception as e:
        logger.error(f"Failed to initialize FastAPILimiter: {e}")

    # Realtime delivery is best-effort, the API starts without Kafka too
    await connect_to_kafka()

    if settings.MIGRATE_LEGACY_ON_STARTUP:
        migrate_legacy_rows()

    scheduler_task = asyncio.create_task(run_expiry_scheduler())

    yield

    logger.info("Shutting down background tasks...")

    if redis_client is not None:
        await redis_client.aclose()

    await close_kafka_connection()

    scheduler_task.cancel()
    try:
        await scheduler_task
    except asyncio.CancelledError:
        logger.info("Expiry scheduler task successfully cancelled.")
    except Exception as e:
        logger.error(f"Error during expiry scheduler shutdown: {e}")


app = FastAPI(
    title="Ad Booking Service API",
    description="Handles TV ad placement applications, their workflow, chat and commissions.",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(application_router.router)
app.include_router(notification_router.router)
app.include_router(chat_router.router)
app.include_router(commission_router.router)


@app.get("/")
def read_root():
    return {"message": "Welcome to the Ad Booking Service"}
