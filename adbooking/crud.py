import datetime
import logging
from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy import literal, or_, select, union_all, update
from sqlalchemy.orm import Session

from . import models, schemas
from .config import settings
from .errors import NotFoundError, ValidationError
from .models import APPLICATION_FIELDS, PARTITIONS, ApplicationStatus
from .pricing import PricingFunction, calculate_cost

logger = logging.getLogger("adbooking")

Application = models.ApplicationColumns

# Statuses in which a customer may still withdraw the request
CANCELABLE_STATUSES = frozenset({
    ApplicationStatus.PENDING,
    ApplicationStatus.IN_PROGRESS,
    ApplicationStatus.SENT_TO_COMMERCIAL,
})

_STATUS_PARTITIONS = {
    ApplicationStatus.PENDING: models.PendingApplication,
    ApplicationStatus.IN_PROGRESS: models.PendingApplication,
    ApplicationStatus.SENT_TO_COMMERCIAL: models.PendingApplication,
    ApplicationStatus.APPROVED: models.ApprovedApplication,
    ApplicationStatus.PAID: models.ApprovedApplication,
    ApplicationStatus.REJECTED: models.RejectedApplication,
    ApplicationStatus.OVERDUE: models.RejectedApplication,
}


def partition_for_status(status: ApplicationStatus | str) -> type:
    """Returns the table class that stores applications in the given status."""
    try:
        return _STATUS_PARTITIONS[ApplicationStatus(status)]
    except ValueError:
        raise ValidationError(f"Unknown application status '{status}'")


def get_user(db: Session, user_id: int) -> models.User | None:
    return db.get(models.User, user_id)


def _row_values(row: Application) -> dict[str, Any]:
    return {field: getattr(row, field) for field in APPLICATION_FIELDS}


def snapshot(row: Application) -> dict[str, Any]:
    """Plain copy of an application row, safe to use after its session commits."""
    values = _row_values(row)
    values["source_table"] = row.source_table
    return values


def create_application(
        db: Session,
        application: schemas.ApplicationCreate,
        customer_id: int,
        pricing: Optional[PricingFunction] = None,
) -> models.PendingApplication:
    """
    Inserts a new customer request into the pending partition.
    The customer must have bank details on file.
    """
    customer = get_user(db, customer_id)
    if customer is None:
        raise ValidationError("Referenced customer does not exist")
    if not customer.has_bank_details:
        raise ValidationError(
            "Customer bank details are missing. Add bank details to the profile before submitting an application."
        )

    cost = calculate_cost(db, application.duration_seconds, application.show_id, pricing=pricing)
    now = datetime.datetime.utcnow()

    db_application = models.PendingApplication(
        customer_id=customer_id,
        show_id=application.show_id,
        scheduled_at=application.scheduled_at,
        duration_seconds=application.duration_seconds,
        status=ApplicationStatus.PENDING,
        cost=cost,
        description=application.description,
        contact_phone=application.contact_phone,
        due_date=application.scheduled_at + datetime.timedelta(days=settings.DUE_DATE_DAYS),
        created_at=now,
        updated_at=now,
    )
    db.add(db_application)
    db.commit()
    db.refresh(db_application)
    logger.info(f"Created application {db_application.id} for customer {customer_id} (cost {cost}).")
    return db_application


def find_application(db: Session, application_id: str, for_update: bool = False) -> Application:
    """
    Looks the id up in every partition and returns the row from whichever one holds it.
    With for_update=True the row stays locked until the caller's transaction ends.
    """
    for model in PARTITIONS:
        stmt = select(model).where(model.id == application_id)
        if for_update:
            stmt = stmt.with_for_update()
        row = db.execute(stmt).scalars().first()
        if row is not None:
            return row
    raise NotFoundError(f"Application {application_id} not found")


def list_applications(
        db: Session,
        customer_id: Optional[int] = None,
        agent_id: Optional[int] = None,
        include_unassigned: bool = False,
        status: Optional[ApplicationStatus] = None,
) -> list[dict[str, Any]]:
    """
    UNION ALL over the partitions, each row tagged with the table it came from,
    newest first.
    """
    branches = []
    for model in PARTITIONS:
        stmt = select(
            *(getattr(model, field) for field in APPLICATION_FIELDS),
            literal(model.__tablename__).label("source_table"),
        )
        if customer_id is not None:
            stmt = stmt.where(model.customer_id == customer_id)
        if agent_id is not None:
            if include_unassigned:
                stmt = stmt.where(or_(model.agent_id == agent_id, model.agent_id.is_(None)))
            else:
                stmt = stmt.where(model.agent_id == agent_id)
        if status is not None:
            stmt = stmt.where(model.status == ApplicationStatus(status))
        branches.append(stmt)

    combined = union_all(*branches).subquery()
    rows = db.execute(select(combined).order_by(combined.c.created_at.desc())).all()
    return [dict(row._mapping) for row in rows]


def migrate_application(
        db: Session,
        application_id: str,
        target_status: ApplicationStatus | str,
        changes: Optional[dict[str, Any]] = None,
        expected_status: Optional[Iterable[ApplicationStatus]] = None,
) -> Application:
    """
    Moves an application to target_status, relocating the row to the partition
    that stores that status.

    The row is locked first; expected_status turns the move into a
    compare-and-swap on the current status.
    Note: Does NOT commit. The caller owns the transaction.
    """
    target = ApplicationStatus(target_status)
    row = find_application(db, application_id, for_update=True)

    if expected_status is not None and row.status not in set(expected_status):
        raise ValidationError(
            f"Application {application_id} is '{row.status.value}', cannot move it to '{target.value}'"
        )

    destination = partition_for_status(target)
    values = _row_values(row)
    values.update(changes or {})
    values["status"] = target
    values["updated_at"] = datetime.datetime.utcnow()

    if type(row) is destination:
        for field, value in values.items():
            setattr(row, field, value)
        db.flush()
        return row

    # Upsert into the destination, then remove the source row in the same transaction
    moved = db.merge(destination(**values))
    db.delete(row)
    db.flush()
    logger.info(f"Moved application {application_id} from {row.source_table} to "
                f"{destination.__tablename__} as '{target.value}'.")
    return moved


def assign_agent(db: Session, application_id: str, agent_id: int) -> Application:
    """
    Sets the agent and forces 'in_progress'.
    Note: Does NOT commit.
    """
    return migrate_application(
        db, application_id, ApplicationStatus.IN_PROGRESS, changes={"agent_id": agent_id}
    )


def set_commercial(db: Session, application_id: str, commercial_id: int) -> Application:
    """Note: Does NOT commit."""
    row = find_application(db, application_id, for_update=True)
    row.commercial_id = commercial_id
    row.updated_at = datetime.datetime.utcnow()
    db.flush()
    return row


def update_application_details(db: Session, application_id: str, patch: schemas.ApplicationPatch) -> Application:
    """
    Writes only the fields present in the patch, in whichever partition holds the row.
    """
    fields = patch.model_dump(exclude_unset=True)
    if not fields:
        raise ValidationError("No fields to update")
    if fields.get("show_id") is not None and db.get(models.Show, fields["show_id"]) is None:
        raise NotFoundError(f"Show {fields['show_id']} not found")
    if "cost" in fields and fields["cost"] is not None:
        fields["cost"] = Decimal(str(fields["cost"]))

    row = find_application(db, application_id, for_update=True)
    model = type(row)
    fields["updated_at"] = datetime.datetime.utcnow()

    db.execute(
        update(model)
        .where(model.id == application_id)
        .values(**fields)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(row)
    return row


def delete_application(db: Session, application_id: str) -> dict[str, Any]:
    """
    Removes a cancelable application and returns a snapshot of what was deleted.
    """
    row = find_application(db, application_id, for_update=True)
    if row.status not in CANCELABLE_STATUSES:
        db.rollback()
        raise ValidationError(
            f"Cannot cancel application with status '{row.status.value}'. "
            "Only pending, in_progress or sent_to_commercial applications can be cancelled."
        )
    deleted = snapshot(row)
    db.delete(row)
    db.commit()
    logger.info(f"Deleted application {application_id} from {deleted['source_table']}.")
    return deleted


def upsert_services_feed(db: Session, application: Application) -> models.ServicesFeed:
    """Note: Does NOT commit."""
    feed = db.execute(
        select(models.ServicesFeed).where(models.ServicesFeed.application_id == application.id)
    ).scalars().first()
    if feed is None:
        feed = models.ServicesFeed(application_id=application.id)
        db.add(feed)
    feed.show_id = application.show_id
    feed.scheduled_at = application.scheduled_at
    feed.status = "scheduled"
    db.flush()
    return feed


def find_expired_applications(db: Session, now: datetime.datetime) -> list[str]:
    """Ids of pending/in_progress applications whose air time has already passed."""
    model = models.PendingApplication
    stmt = select(model.id).where(
        model.status.in_([ApplicationStatus.PENDING, ApplicationStatus.IN_PROGRESS]),
        model.scheduled_at < now,
    ).order_by(model.scheduled_at)
    return list(db.execute(stmt).scalars().all())


def migrate_legacy_applications(db: Session) -> int:
    """
    Folds rows left in the legacy 'applications' table into the partition
    matching their status. Each row is moved, never copied.
    """
    legacy_rows = db.execute(
        select(models.LegacyApplication).with_for_update()
    ).scalars().all()

    for row in legacy_rows:
        destination = partition_for_status(row.status)
        db.merge(destination(**_row_values(row)))
        db.delete(row)

    db.commit()
    if legacy_rows:
        logger.info(f"Moved {len(legacy_rows)} legacy applications into workflow partitions.")
    return len(legacy_rows)
