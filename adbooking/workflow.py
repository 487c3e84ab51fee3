"""
Application workflow state machine.

Every transition runs inside one database transaction that holds the
application row lock from lookup to commit, including the slot decrement on
approval. Anything after the commit (chat messages, notifications, realtime
broadcasts) is best-effort: failures are logged and never undo the transition.
"""
import datetime
import logging
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.orm import Session

from . import chat, commissions, crud, kafka_producer, models, notifications, rooms
from .errors import PermissionDeniedError, ValidationError
from .models import ApplicationStatus as S
from .models import UserRole
from .schedule import reserve_minutes
from .schemas import CurrentUser

logger = logging.getLogger("adbooking")

ALLOWED_TRANSITIONS: dict[S, frozenset[S]] = {
    S.PENDING: frozenset({S.IN_PROGRESS, S.SENT_TO_COMMERCIAL, S.REJECTED, S.OVERDUE}),
    S.IN_PROGRESS: frozenset({S.SENT_TO_COMMERCIAL, S.REJECTED}),
    S.SENT_TO_COMMERCIAL: frozenset({S.APPROVED, S.REJECTED}),
    S.APPROVED: frozenset({S.PAID, S.OVERDUE}),
    S.OVERDUE: frozenset({S.PAID}),
    S.PAID: frozenset(),
    S.REJECTED: frozenset(),
}

ACCOUNTING_ROLES = frozenset({UserRole.ACCOUNTANT, UserRole.ADMIN, UserRole.DIRECTOR})
REVIEW_ROLES = frozenset({UserRole.COMMERCIAL, UserRole.ADMIN})

STATUS_TEXT = {
    S.PENDING: "Waiting for an agent",
    S.IN_PROGRESS: "In progress",
    S.SENT_TO_COMMERCIAL: "Sent to the commercial department",
    S.APPROVED: "Approved",
    S.REJECTED: "Rejected",
    S.PAID: "Paid",
    S.OVERDUE: "Overdue",
}


def check_transition(current: S, target: S) -> None:
    if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise ValidationError(f"Invalid status transition: '{current.value}' -> '{target.value}'")


def short_id(application_id: str) -> str:
    return application_id[-8:]


def _require_role(actor: CurrentUser, allowed) -> None:
    if actor.role not in allowed:
        raise PermissionDeniedError(f"Role '{actor.role.value}' cannot perform this action")


def _display_name(db: Session, actor: CurrentUser, default: str) -> str:
    if actor.name:
        return actor.name
    user = crud.get_user(db, actor.id)
    return (user.name if user is not None else None) or default


async def _side_effect(db: Session, description: str, action: Callable[[], Awaitable[Any]]) -> Any:
    try:
        return await action()
    except Exception as e:
        logger.error(f"Side effect '{description}' failed: {e}")
        db.rollback()
        return None


async def _post_chat_message(
        db: Session,
        room_id: str,
        actor: CurrentUser,
        sender_name: str,
        content: str,
        chat_type: str,
        application_id: str,
) -> models.ChatMessage:
    message = chat.create_chat_message(
        db, room_id, actor.id, sender_name, content,
        chat_type=chat_type, application_id=application_id,
    )
    await kafka_producer.send_room_message(room_id, chat.serialize_message(message))
    return message


async def _announce(
        db: Session,
        application,
        actor: Optional[CurrentUser],
        customer_title: Optional[str] = None,
        customer_message: Optional[str] = None,
) -> None:
    """Tells the customer (when a title is given) and every open client about a new status."""
    application_id = application.id
    status = application.status
    customer_id = application.customer_id

    if customer_title:
        status_text = STATUS_TEXT.get(status, status.value)
        await _side_effect(db, "customer notification", lambda: notifications.notify_user(
            db,
            customer_id,
            notifications.STATUS_CHANGED,
            customer_title,
            customer_message or f"Your application #{short_id(application_id)} is now: {status_text}",
            data={"applicationId": application_id, "newStatus": status.value, "statusText": status_text},
        ))

    await kafka_producer.broadcast_status_changed(
        application_id, status.value, actor.id if actor is not None else None
    )


def _lock_for_transition(db: Session, application_id: str, target: S):
    row = crud.find_application(db, application_id, for_update=True)
    check_transition(row.status, target)
    return row


async def take_application(db: Session, application_id: str, agent: CurrentUser):
    """An agent takes ownership of a pending application."""
    _require_role(agent, {UserRole.AGENT})
    try:
        row = _lock_for_transition(db, application_id, S.IN_PROGRESS)
        if row.agent_id is not None and row.agent_id != agent.id:
            raise ValidationError(f"Application {application_id} is already assigned to another agent")
        application = crud.assign_agent(db, application_id, agent.id)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(application)
    logger.info(f"Agent {agent.id} took application {application_id}.")

    sender_name = _display_name(db, agent, "Agent")
    await _side_effect(db, "customer-agent chat message", lambda: _post_chat_message(
        db,
        rooms.application_room(application_id),
        agent,
        sender_name,
        "Hello! I have taken your application and started reviewing it.",
        rooms.CUSTOMER_AGENT,
        application_id,
    ))
    await _announce(
        db, application, agent,
        customer_title="Application status changed",
        customer_message="An agent has taken your application",
    )
    return application


async def forward_to_commercial(
        db: Session,
        application_id: str,
        agent: CurrentUser,
        create_chat: bool = True,
):
    """
    Sends an application to commercial review. An unassigned application is
    assigned to the acting agent first.
    """
    _require_role(agent, {UserRole.AGENT})
    try:
        row = _lock_for_transition(db, application_id, S.SENT_TO_COMMERCIAL)
        changes = {}
        if row.agent_id is None:
            logger.info(f"Auto-assigning agent {agent.id} before sending {application_id} to commercial.")
            changes["agent_id"] = agent.id
        elif row.agent_id != agent.id:
            raise PermissionDeniedError(f"Application {application_id} is assigned to another agent")
        application = crud.migrate_application(
            db, application_id, S.SENT_TO_COMMERCIAL, changes=changes, expected_status={row.status}
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(application)
    logger.info(f"Application {application_id} sent to commercial by agent {agent.id}.")

    if create_chat:
        room_id = rooms.commercial_room(application.agent_id, application_id)
        # One agent/commercial room per application: only open it once
        if not chat.room_has_messages(db, room_id):
            sender_name = _display_name(db, agent, "Agent")
            await _side_effect(db, "agent-commercial chat room", lambda: _post_chat_message(
                db,
                room_id,
                agent,
                sender_name,
                f"Hello! Sending application #{short_id(application_id)} for review. Waiting for your feedback.",
                rooms.AGENT_COMMERCIAL,
                application_id,
            ))

    # Commercial reviewers pick it up themselves, nobody is notified yet
    await _announce(db, application, agent)
    return application


async def take_commercial(db: Session, application_id: str, commercial: CurrentUser):
    """A commercial reviewer takes an application that is waiting for review."""
    _require_role(commercial, {UserRole.COMMERCIAL})
    try:
        row = crud.find_application(db, application_id, for_update=True)
        if row.status != S.SENT_TO_COMMERCIAL:
            raise ValidationError(
                f"Only applications sent to commercial can be taken (current: '{row.status.value}')"
            )
        if row.agent_id is None:
            raise ValidationError("No agent assigned to this application")
        if row.commercial_id is not None and row.commercial_id != commercial.id:
            raise ValidationError(f"Application {application_id} is already taken by another reviewer")
        application = crud.set_commercial(db, application_id, commercial.id)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(application)
    agent_id = application.agent_id
    room_id = rooms.commercial_room(agent_id, application_id)
    if not chat.room_has_messages(db, room_id):
        logger.info(f"Commercial chat {room_id} not found, opening it.")

    sender_name = _display_name(db, commercial, "Commercial department")
    await _side_effect(db, "commercial chat message", lambda: _post_chat_message(
        db,
        room_id,
        commercial,
        sender_name,
        f"Hello! I have taken application #{short_id(application_id)} for review. Let's discuss the details.",
        rooms.AGENT_COMMERCIAL,
        application_id,
    ))
    await _side_effect(db, "agent notification", lambda: notifications.notify_user(
        db,
        agent_id,
        notifications.COMMERCIAL_ASSIGNED,
        "Commercial review started",
        f"{sender_name} took application #{short_id(application_id)} for review",
        data={"applicationId": application_id, "commercialId": commercial.id, "roomId": room_id},
    ))
    await kafka_producer.broadcast_application_updated(
        application_id,
        commercial_id=commercial.id,
        status=application.status.value,
        updatedField="commercial_id",
    )
    return application


async def approve_application(db: Session, application_id: str, reviewer: CurrentUser):
    """
    Approves an application. Slot reservation, partition move, services feed
    and commission commit together or not at all.
    """
    _require_role(reviewer, REVIEW_ROLES)
    try:
        row = _lock_for_transition(db, application_id, S.APPROVED)
        reserve_minutes(db, row.show_id, row.scheduled_at, row.duration_seconds)

        changes = {}
        if row.commercial_id is None and reviewer.role == UserRole.COMMERCIAL:
            changes["commercial_id"] = reviewer.id
        application = crud.migrate_application(
            db, application_id, S.APPROVED, changes=changes, expected_status={row.status}
        )
        crud.upsert_services_feed(db, application)
        commissions.upsert_commission(db, application)
        db.commit()
    except Exception as e:
        db.rollback()
        logger.warning(f"Approval of application {application_id} rolled back: {e}")
        raise

    db.refresh(application)
    logger.info(f"Application {application_id} approved by {reviewer.id}.")
    await _announce(
        db, application, reviewer,
        customer_title="Your application was approved",
        customer_message=f"Your application #{short_id(application_id)} was approved and scheduled",
    )
    return application


async def reject_application(db: Session, application_id: str, reviewer: CurrentUser):
    _require_role(reviewer, REVIEW_ROLES)
    try:
        row = _lock_for_transition(db, application_id, S.REJECTED)
        if row.status != S.SENT_TO_COMMERCIAL:
            raise ValidationError(
                f"Only applications under commercial review can be rejected (current: '{row.status.value}')"
            )
        application = crud.migrate_application(db, application_id, S.REJECTED, expected_status={row.status})
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(application)
    logger.info(f"Application {application_id} rejected by {reviewer.id}.")
    await _announce(
        db, application, reviewer,
        customer_title="Your application was rejected",
        customer_message=f"Your application #{short_id(application_id)} was rejected",
    )
    return application


async def settle_application(db: Session, application_id: str, target: S, accountant: CurrentUser):
    """Accounting moves: approved -> paid/overdue, overdue -> paid."""
    _require_role(accountant, ACCOUNTING_ROLES)
    if target not in (S.PAID, S.OVERDUE):
        raise ValidationError(f"Accounting cannot set status '{target.value}'")
    try:
        row = _lock_for_transition(db, application_id, target)
        changes = {}
        if target == S.PAID and row.payment_date is None:
            changes["payment_date"] = datetime.datetime.utcnow()
        application = crud.migrate_application(
            db, application_id, target, changes=changes, expected_status={row.status}
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(application)
    await _announce(db, application, accountant, customer_title="Application status changed")
    return application


async def expire_application(
        db: Session,
        application_id: str,
        now: Optional[datetime.datetime] = None,
):
    """
    Rejects a pending/in_progress application whose air time has passed.
    Returns None when there was nothing to do, so repeated checks are harmless.
    """
    now = now or datetime.datetime.utcnow()
    try:
        row = crud.find_application(db, application_id, for_update=True)
        if row.status not in (S.PENDING, S.IN_PROGRESS) or row.scheduled_at >= now:
            db.rollback()
            return None
        application = crud.migrate_application(db, application_id, S.REJECTED, expected_status={row.status})
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(application)
    logger.info(f"Application {application_id} expired (air time {application.scheduled_at}) and was rejected.")
    await _announce(
        db, application, None,
        customer_title="Application status changed",
        customer_message=f"Your application #{short_id(application_id)} was rejected: the air date has passed",
    )
    return application


async def sweep_expired_applications(db: Session, now: Optional[datetime.datetime] = None) -> int:
    now = now or datetime.datetime.utcnow()
    expired = 0
    for application_id in crud.find_expired_applications(db, now):
        try:
            if await expire_application(db, application_id, now) is not None:
                expired += 1
        except Exception as e:
            # Cancelled or moved by someone else in the meantime
            logger.error(f"Failed to expire application {application_id}: {e}")
            continue
    return expired


async def cancel_application(db: Session, application_id: str, customer: CurrentUser) -> dict[str, Any]:
    """The owning customer withdraws an application that is still in the early workflow."""
    row = crud.find_application(db, application_id)
    if customer.role != UserRole.CUSTOMER or row.customer_id != customer.id:
        raise PermissionDeniedError("Access denied")

    deleted = crud.delete_application(db, application_id)
    agent_id = deleted["agent_id"]
    if agent_id is not None:
        show = db.get(models.Show, deleted["show_id"])
        show_name = show.name if show is not None else "unknown show"
        await _side_effect(db, "cancellation notification", lambda: notifications.notify_user(
            db,
            agent_id,
            notifications.APPLICATION_CANCELLED,
            "Application cancelled by customer",
            f"Application #{short_id(application_id)} ({show_name}) was cancelled by the customer",
            data={"applicationId": application_id, "showName": show_name},
        ))

    await kafka_producer.broadcast_application_updated(
        application_id, deleted=True, status=deleted["status"].value
    )
    return deleted


async def change_status(
        db: Session,
        application_id: str,
        target: S,
        actor: CurrentUser,
        create_commercial_chat: bool = True,
):
    """Routes a requested target status to the operation that owns it."""
    target = S(target)
    if target == S.IN_PROGRESS:
        return await take_application(db, application_id, actor)
    if target == S.SENT_TO_COMMERCIAL:
        return await forward_to_commercial(db, application_id, actor, create_chat=create_commercial_chat)
    if target == S.APPROVED:
        return await approve_application(db, application_id, actor)
    if target == S.REJECTED:
        return await reject_application(db, application_id, actor)
    if target in (S.PAID, S.OVERDUE):
        return await settle_application(db, application_id, target, actor)
    raise ValidationError(f"Applications cannot be moved back to '{target.value}'")
