import datetime
import logging

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from . import models
from .errors import CapacityError, NotFoundError
from .pricing import billable_minutes

logger = logging.getLogger("adbooking")


def minutes_needed(duration_seconds: int) -> int:
    """Ad inventory is sold in whole minutes."""
    return billable_minutes(duration_seconds)


def get_slot_for_update(db: Session, show_id: int, scheduled_date: datetime.date) -> models.ShowSchedule | None:
    """
    Locks the (show, date) schedule row for the rest of the caller's transaction.
    """
    stmt = select(models.ShowSchedule).where(
        models.ShowSchedule.show_id == show_id,
        models.ShowSchedule.scheduled_date == scheduled_date,
    ).with_for_update()
    return db.execute(stmt).scalars().first()


def reserve_minutes(
        db: Session,
        show_id: int,
        scheduled_at: datetime.datetime,
        duration_seconds: int,
) -> models.ShowSchedule:
    """
    Deducts the ad minutes an application needs from its schedule slot.
    Note: Does NOT commit. Any error raised here must abort the caller's transaction.
    """
    minutes = minutes_needed(duration_seconds)
    slot = get_slot_for_update(db, show_id, scheduled_at.date())
    if slot is None:
        raise NotFoundError(f"No schedule for selected date {scheduled_at.date()} (show {show_id})")

    if slot.available_slots < minutes:
        raise CapacityError(
            f"Not enough ad slots: {minutes} minutes needed, {slot.available_slots} available"
        )

    # Guarded decrement; the WHERE clause keeps available_slots >= 0 even if the lock is not honoured
    result = db.execute(
        update(models.ShowSchedule)
        .where(
            models.ShowSchedule.id == slot.id,
            models.ShowSchedule.available_slots >= minutes,
        )
        .values(
            available_slots=models.ShowSchedule.available_slots - minutes,
            updated_at=datetime.datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise CapacityError(f"Not enough ad slots: {minutes} minutes needed")

    db.refresh(slot)
    logger.info(f"Reserved {minutes} ad minutes on show {show_id} for {scheduled_at.date()}, "
                f"{slot.available_slots} left.")
    return slot
