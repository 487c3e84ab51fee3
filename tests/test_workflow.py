import asyncio
import datetime
import random
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from adbooking import chat, commissions, crud, models, notifications, rooms, workflow
from adbooking.errors import (
    CapacityError, NotFoundError, PermissionDeniedError, ValidationError, WorkflowError,
)
from adbooking.models import ApplicationStatus as S
from adbooking.models import UserRole
from adbooking.schemas import CurrentUser

from .conftest import (
    AGENT_ID, ACCOUNTANT_ID, COMMERCIAL_ID, CUSTOMER_ID, OTHER_AGENT_ID, SHOW_ID, published_events, tomorrow,
)
from .test_crud import partitions_holding

CUSTOMER = CurrentUser(id=CUSTOMER_ID, role=UserRole.CUSTOMER, name="Carol Customer")
AGENT = CurrentUser(id=AGENT_ID, role=UserRole.AGENT, name="Alex Agent")
OTHER_AGENT = CurrentUser(id=OTHER_AGENT_ID, role=UserRole.AGENT, name="Otto Agent")
COMMERCIAL = CurrentUser(id=COMMERCIAL_ID, role=UserRole.COMMERCIAL, name="Cora Commercial")
ACCOUNTANT = CurrentUser(id=ACCOUNTANT_ID, role=UserRole.ACCOUNTANT, name="Ann Accountant")


def run(coro):
    return asyncio.run(coro)


def slot(db) -> models.ShowSchedule:
    db.expire_all()
    return db.execute(
        select(models.ShowSchedule).where(models.ShowSchedule.show_id == SHOW_ID)
    ).scalars().one()


def commission_count(db, application_id: str) -> int:
    return db.execute(
        select(func.count()).select_from(models.Commission).where(models.Commission.application_id == application_id)
    ).scalar_one()


# --- transition table ---

def test_check_transition_allows_table_moves():
    workflow.check_transition(S.PENDING, S.IN_PROGRESS)
    workflow.check_transition(S.SENT_TO_COMMERCIAL, S.APPROVED)
    workflow.check_transition(S.OVERDUE, S.PAID)


@pytest.mark.parametrize("current, target", [
    (S.PAID, S.APPROVED),
    (S.REJECTED, S.PENDING),
    (S.APPROVED, S.SENT_TO_COMMERCIAL),
    (S.IN_PROGRESS, S.PENDING),
])
def test_check_transition_rejects_other_moves(current, target):
    with pytest.raises(ValidationError, match="Invalid status transition"):
        workflow.check_transition(current, target)


# --- take ---

def test_agent_takes_pending_application(seed, make_application, published):
    """Taking moves the application to in_progress, greets the customer and notifies them."""
    application = make_application()
    application_id = application.id

    taken = run(workflow.take_application(seed, application_id, AGENT))

    assert taken.status == S.IN_PROGRESS
    assert taken.agent_id == AGENT_ID
    assert partitions_holding(seed, application_id) == ["pending_applications"]

    messages = chat.get_room_messages(seed, rooms.application_room(application_id))
    assert len(messages) == 1
    assert messages[0].sender_id == AGENT_ID
    assert messages[0].chat_type == rooms.CUSTOMER_AGENT

    customer_notifications = notifications.list_notifications(seed, CUSTOMER_ID)
    assert len(customer_notifications) == 1
    assert customer_notifications[0].type == notifications.STATUS_CHANGED
    assert customer_notifications[0].data["newStatus"] == "in_progress"

    events = published_events(published)
    assert ("application:statusChanged",
            {"applicationId": application_id, "status": "in_progress", "updatedBy": AGENT_ID},
            None) in events
    assert any(event == "message" and room == f"application-{application_id}" for event, _, room in events)
    assert any(event == "notification" and room == f"user-{CUSTOMER_ID}" for event, _, room in events)


def test_take_requires_agent_role(seed, make_application):
    application = make_application()
    with pytest.raises(PermissionDeniedError):
        run(workflow.take_application(seed, application.id, CUSTOMER))


def test_take_application_already_assigned_elsewhere(seed, make_application):
    application = make_application(agent_id=OTHER_AGENT_ID)
    with pytest.raises(ValidationError, match="another agent"):
        run(workflow.take_application(seed, application.id, AGENT))
    assert crud.find_application(seed, application.id).status == S.PENDING


def test_take_twice_is_rejected(seed, make_application):
    application = make_application()
    run(workflow.take_application(seed, application.id, AGENT))
    with pytest.raises(ValidationError):
        run(workflow.take_application(seed, application.id, AGENT))


def test_side_effect_failure_keeps_transition(seed, make_application, mocker):
    """A broken notification path is logged, the status change stands."""
    mocker.patch("adbooking.workflow.notifications.notify_user", side_effect=RuntimeError("smtp down"))
    mocker.patch("adbooking.workflow.chat.create_chat_message", side_effect=RuntimeError("db hiccup"))
    application = make_application()

    taken = run(workflow.take_application(seed, application.id, AGENT))

    assert taken.status == S.IN_PROGRESS
    assert crud.find_application(seed, application.id).status == S.IN_PROGRESS


# --- forward to commercial ---

def test_forward_auto_assigns_unassigned_application(seed, make_application):
    application = make_application()
    application_id = application.id

    forwarded = run(workflow.forward_to_commercial(seed, application_id, AGENT))

    assert forwarded.status == S.SENT_TO_COMMERCIAL
    assert forwarded.agent_id == AGENT_ID
    messages = chat.get_room_messages(seed, rooms.commercial_room(AGENT_ID, application_id))
    assert len(messages) == 1
    assert messages[0].chat_type == rooms.AGENT_COMMERCIAL
    # Commercial is not notified until someone takes it
    assert notifications.list_notifications(seed, CUSTOMER_ID) == []


def test_forward_reuses_existing_commercial_room(seed, make_application):
    application = make_application(status=S.IN_PROGRESS, agent_id=AGENT_ID)
    room_id = rooms.commercial_room(AGENT_ID, application.id)
    chat.create_chat_message(seed, room_id, AGENT_ID, "Alex Agent", "earlier thread", chat_type=rooms.AGENT_COMMERCIAL)

    run(workflow.forward_to_commercial(seed, application.id, AGENT))

    assert len(chat.get_room_messages(seed, room_id)) == 1


def test_forward_without_chat(seed, make_application):
    application = make_application(status=S.IN_PROGRESS, agent_id=AGENT_ID)
    run(workflow.forward_to_commercial(seed, application.id, AGENT, create_chat=False))
    assert not chat.room_has_messages(seed, rooms.commercial_room(AGENT_ID, application.id))


def test_forward_by_other_agent_is_denied(seed, make_application):
    application = make_application(status=S.IN_PROGRESS, agent_id=AGENT_ID)
    with pytest.raises(PermissionDeniedError):
        run(workflow.forward_to_commercial(seed, application.id, OTHER_AGENT))


# --- take commercial ---

def test_commercial_takes_application(seed, make_application, published):
    application = make_application(status=S.SENT_TO_COMMERCIAL, agent_id=AGENT_ID)
    application_id = application.id

    taken = run(workflow.take_commercial(seed, application_id, COMMERCIAL))

    assert taken.commercial_id == COMMERCIAL_ID
    assert taken.status == S.SENT_TO_COMMERCIAL
    agent_notifications = notifications.list_notifications(seed, AGENT_ID)
    assert [n.type for n in agent_notifications] == [notifications.COMMERCIAL_ASSIGNED]
    assert chat.room_has_messages(seed, rooms.commercial_room(AGENT_ID, application_id))
    assert ("application:updated",
            {"applicationId": application_id, "commercial_id": COMMERCIAL_ID,
             "status": "sent_to_commercial", "updatedField": "commercial_id"},
            None) in published_events(published)


def test_take_commercial_requires_review_status(seed, make_application):
    application = make_application(status=S.IN_PROGRESS, agent_id=AGENT_ID)
    with pytest.raises(ValidationError):
        run(workflow.take_commercial(seed, application.id, COMMERCIAL))


# --- approve ---

def test_approve_fails_when_slot_is_too_small(seed, make_application):
    """650 seconds needs 11 minutes, the slot has 10."""
    application = make_application(status=S.SENT_TO_COMMERCIAL, agent_id=AGENT_ID, duration_seconds=650)

    with pytest.raises(CapacityError):
        run(workflow.approve_application(seed, application.id, COMMERCIAL))

    assert slot(seed).available_slots == 10
    assert crud.find_application(seed, application.id).status == S.SENT_TO_COMMERCIAL
    assert partitions_holding(seed, application.id) == ["pending_applications"]
    assert commission_count(seed, application.id) == 0


def test_approve_reserves_slot_and_records_commission(seed, make_application):
    application = make_application(
        status=S.SENT_TO_COMMERCIAL, agent_id=AGENT_ID, duration_seconds=300, cost=Decimal("25000"),
    )
    application_id = application.id

    approved = run(workflow.approve_application(seed, application_id, COMMERCIAL))

    assert approved.status == S.APPROVED
    assert approved.commercial_id == COMMERCIAL_ID
    assert slot(seed).available_slots == 5
    assert partitions_holding(seed, application_id) == ["approved_applications"]

    commission = seed.execute(select(models.Commission)).scalars().one()
    assert commission.agent_id == AGENT_ID
    assert commission.amount == Decimal("2500.00")
    feed = seed.execute(select(models.ServicesFeed)).scalars().one()
    assert feed.application_id == application_id
    assert feed.status == "scheduled"


def test_approve_without_schedule_rolls_back(seed, make_application):
    later = tomorrow() + datetime.timedelta(days=7)
    application = make_application(status=S.SENT_TO_COMMERCIAL, agent_id=AGENT_ID, scheduled_at=later)

    with pytest.raises(NotFoundError, match="No schedule"):
        run(workflow.approve_application(seed, application.id, COMMERCIAL))
    assert partitions_holding(seed, application.id) == ["pending_applications"]


def test_approve_requires_review_role(seed, make_application):
    application = make_application(status=S.SENT_TO_COMMERCIAL, agent_id=AGENT_ID)
    with pytest.raises(PermissionDeniedError):
        run(workflow.approve_application(seed, application.id, AGENT))


def test_slot_conservation(seed, make_application):
    """Approvals drain exactly ceil(d/60) each and never take the slot below zero."""
    durations = [60, 61, 120, 300]
    for duration in durations:
        application = make_application(status=S.SENT_TO_COMMERCIAL, agent_id=AGENT_ID, duration_seconds=duration)
        run(workflow.approve_application(seed, application.id, COMMERCIAL))

    assert slot(seed).available_slots == 10 - (1 + 2 + 2 + 5)

    extra = make_application(status=S.SENT_TO_COMMERCIAL, agent_id=AGENT_ID, duration_seconds=30)
    with pytest.raises(CapacityError):
        run(workflow.approve_application(seed, extra.id, COMMERCIAL))
    assert slot(seed).available_slots == 0


def test_commission_upsert_is_at_most_one(seed, make_application):
    application = make_application(status=S.APPROVED, agent_id=AGENT_ID, cost=Decimal("1000"))

    commissions.upsert_commission(seed, application)
    commissions.upsert_commission(seed, application)
    seed.commit()

    assert commission_count(seed, application.id) == 1


# --- reject / settle ---

def test_reject_from_commercial_review(seed, make_application):
    application = make_application(status=S.SENT_TO_COMMERCIAL, agent_id=AGENT_ID)
    rejected = run(workflow.reject_application(seed, application.id, COMMERCIAL))
    assert rejected.status == S.REJECTED
    assert partitions_holding(seed, application.id) == ["rejected_applications"]


def test_manual_reject_only_from_commercial_review(seed, make_application):
    application = make_application()
    with pytest.raises(ValidationError):
        run(workflow.reject_application(seed, application.id, COMMERCIAL))


def test_accountant_marks_paid(seed, make_application):
    application = make_application(status=S.APPROVED, agent_id=AGENT_ID)
    paid = run(workflow.settle_application(seed, application.id, S.PAID, ACCOUNTANT))
    assert paid.status == S.PAID
    assert paid.payment_date is not None
    assert partitions_holding(seed, application.id) == ["approved_applications"]


def test_overdue_then_paid(seed, make_application):
    application = make_application(status=S.APPROVED, agent_id=AGENT_ID)
    overdue = run(workflow.settle_application(seed, application.id, S.OVERDUE, ACCOUNTANT))
    assert partitions_holding(seed, application.id) == ["rejected_applications"]
    assert overdue.status == S.OVERDUE

    paid = run(workflow.settle_application(seed, application.id, S.PAID, ACCOUNTANT))
    assert paid.status == S.PAID
    assert partitions_holding(seed, application.id) == ["approved_applications"]


def test_settle_requires_accounting_role(seed, make_application):
    application = make_application(status=S.APPROVED, agent_id=AGENT_ID)
    with pytest.raises(PermissionDeniedError):
        run(workflow.settle_application(seed, application.id, S.PAID, COMMERCIAL))


def test_paid_is_final(seed, make_application):
    application = make_application(status=S.PAID, agent_id=AGENT_ID)
    with pytest.raises(ValidationError):
        run(workflow.settle_application(seed, application.id, S.OVERDUE, ACCOUNTANT))


# --- expiry ---

def test_expire_rejects_past_application(seed, make_application):
    past = datetime.datetime.utcnow() - datetime.timedelta(hours=1)
    application = make_application(scheduled_at=past)

    expired = run(workflow.expire_application(seed, application.id))

    assert expired.status == S.REJECTED
    assert partitions_holding(seed, application.id) == ["rejected_applications"]


def test_expire_is_idempotent(seed, make_application):
    past = datetime.datetime.utcnow() - datetime.timedelta(hours=1)
    application = make_application(scheduled_at=past)
    run(workflow.expire_application(seed, application.id))

    assert run(workflow.expire_application(seed, application.id)) is None
    row = crud.find_application(seed, application.id)
    assert row.status == S.REJECTED
    assert partitions_holding(seed, application.id) == ["rejected_applications"]


def test_expire_leaves_future_and_reviewed_applications(seed, make_application):
    future = make_application()
    past = datetime.datetime.utcnow() - datetime.timedelta(hours=1)
    in_review = make_application(status=S.SENT_TO_COMMERCIAL, agent_id=AGENT_ID, scheduled_at=past)

    assert run(workflow.expire_application(seed, future.id)) is None
    assert run(workflow.expire_application(seed, in_review.id)) is None
    assert crud.find_application(seed, in_review.id).status == S.SENT_TO_COMMERCIAL


def test_sweep_expired_applications(seed, make_application):
    past = datetime.datetime.utcnow() - datetime.timedelta(hours=1)
    make_application(scheduled_at=past)
    make_application(status=S.IN_PROGRESS, agent_id=AGENT_ID, scheduled_at=past)
    make_application()

    assert run(workflow.sweep_expired_applications(seed)) == 2
    assert run(workflow.sweep_expired_applications(seed)) == 0


# --- cancel ---

def test_customer_cancels_application(seed, make_application, published):
    application = make_application(status=S.IN_PROGRESS, agent_id=AGENT_ID)
    application_id = application.id

    deleted = run(workflow.cancel_application(seed, application_id, CUSTOMER))

    assert deleted["id"] == application_id
    assert partitions_holding(seed, application_id) == []
    agent_notifications = notifications.list_notifications(seed, AGENT_ID)
    assert [n.type for n in agent_notifications] == [notifications.APPLICATION_CANCELLED]
    assert ("application:updated",
            {"applicationId": application_id, "deleted": True, "status": "in_progress"},
            None) in published_events(published)


def test_cancel_approved_application_is_rejected(seed, make_application):
    application = make_application(status=S.APPROVED, agent_id=AGENT_ID)
    with pytest.raises(ValidationError, match="Cannot cancel"):
        run(workflow.cancel_application(seed, application.id, CUSTOMER))
    assert partitions_holding(seed, application.id) == ["approved_applications"]


def test_cancel_by_other_customer_is_denied(seed, make_application):
    application = make_application()
    stranger = CurrentUser(id=99, role=UserRole.CUSTOMER)
    with pytest.raises(PermissionDeniedError):
        run(workflow.cancel_application(seed, application.id, stranger))


# --- change_status dispatch ---

def test_change_status_back_to_pending_is_rejected(seed, make_application):
    application = make_application(status=S.IN_PROGRESS, agent_id=AGENT_ID)
    with pytest.raises(ValidationError):
        run(workflow.change_status(seed, application.id, S.PENDING, AGENT))


def test_change_status_routes_to_approval(seed, make_application):
    application = make_application(status=S.SENT_TO_COMMERCIAL, agent_id=AGENT_ID, duration_seconds=60)
    approved = run(workflow.change_status(seed, application.id, "approved", COMMERCIAL))
    assert approved.status == S.APPROVED


# --- partition exclusivity ---

def test_partition_exclusivity_under_random_transitions(seed, make_application):
    """Whatever order transitions arrive in, every live id sits in exactly one partition."""
    slot(seed).available_slots = 10_000
    seed.commit()

    rng = random.Random(20240601)
    ids = [make_application().id for _ in range(6)]
    cancelled = set()
    far_future = datetime.datetime.utcnow() + datetime.timedelta(days=365)

    actions = [
        lambda i: workflow.take_application(seed, i, rng.choice([AGENT, OTHER_AGENT])),
        lambda i: workflow.forward_to_commercial(seed, i, rng.choice([AGENT, OTHER_AGENT])),
        lambda i: workflow.take_commercial(seed, i, COMMERCIAL),
        lambda i: workflow.approve_application(seed, i, COMMERCIAL),
        lambda i: workflow.reject_application(seed, i, COMMERCIAL),
        lambda i: workflow.settle_application(seed, i, S.PAID, ACCOUNTANT),
        lambda i: workflow.settle_application(seed, i, S.OVERDUE, ACCOUNTANT),
        lambda i: workflow.expire_application(seed, i, now=far_future),
        lambda i: workflow.cancel_application(seed, i, CUSTOMER),
    ]

    for _ in range(150):
        application_id = rng.choice(ids)
        action = rng.choice(actions)
        try:
            result = run(action(application_id))
            if isinstance(result, dict) and result.get("id") == application_id:
                cancelled.add(application_id)
        except WorkflowError:
            pass

        for checked_id in ids:
            expected = 0 if checked_id in cancelled else 1
            assert len(partitions_holding(seed, checked_id)) == expected
