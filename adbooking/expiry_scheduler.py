import asyncio
import datetime
import logging

from sqlalchemy.orm import Session

from . import workflow
from .config import settings
from .database import SessionLocal

logger = logging.getLogger("adbooking")


async def check_and_expire_applications(db: Session, now: datetime.datetime | None = None) -> int:
    """
    Rejects pending and in-progress applications whose air time has already passed.
    """
    now = now or datetime.datetime.utcnow()
    logger.info(f"Checking for applications scheduled before {now}...")

    expired = await workflow.sweep_expired_applications(db, now)

    if expired:
        logger.info(f"Rejected {expired} expired applications.")
    else:
        logger.info("No expired applications found.")
    return expired


async def run_expiry_scheduler():
    """
    Main background loop for the expiry sweep.
    """
    while True:
        logger.info("Scheduler waking up to check for expired applications...")
        db: Session = SessionLocal()
        try:
            await check_and_expire_applications(db)
        except Exception as e:
            logger.error(f"Error in expiry scheduler loop: {e}")
            db.rollback()
        finally:
            db.close()

        await asyncio.sleep(settings.EXPIRY_SWEEP_INTERVAL_SECONDS)
