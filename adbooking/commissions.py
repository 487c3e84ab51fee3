import datetime
import logging
from collections import OrderedDict
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import models
from .config import settings
from .errors import NotFoundError, ValidationError
from .models import CommissionStatus

logger = logging.getLogger("adbooking")

CENTS = Decimal("0.01")


def commission_amount(cost) -> Decimal:
    return (Decimal(cost or 0) * settings.COMMISSION_RATE).quantize(CENTS, rounding=ROUND_HALF_UP)


def upsert_commission(db: Session, application) -> Optional[models.Commission]:
    """
    Creates or refreshes the single commission row for an approved application.
    Note: Does NOT commit. Failures must abort the approval transaction.
    """
    if application.agent_id is None:
        logger.warning(f"Application {application.id} approved without an agent, no commission recorded.")
        return None

    commission = db.execute(
        select(models.Commission).where(models.Commission.application_id == application.id)
    ).scalars().first()

    amount = commission_amount(application.cost)
    if commission is None:
        commission = models.Commission(
            application_id=application.id,
            agent_id=application.agent_id,
            amount=amount,
            status=CommissionStatus.PENDING,
        )
        db.add(commission)
    else:
        # Payment state belongs to accounting, only the payable figures are refreshed
        commission.agent_id = application.agent_id
        commission.amount = amount
    db.flush()
    return commission


def list_commissions(db: Session, agent_id: Optional[int] = None) -> list[models.Commission]:
    stmt = select(models.Commission)
    if agent_id is not None:
        stmt = stmt.where(models.Commission.agent_id == agent_id)
    stmt = stmt.order_by(models.Commission.created_at.desc(), models.Commission.id.desc())
    return list(db.execute(stmt).scalars().all())


def summarize_commissions(commissions: list[models.Commission]) -> dict:
    """Total payable plus a per-month breakdown keyed as YYYY-MM."""
    monthly: "OrderedDict[str, dict]" = OrderedDict()
    total = Decimal(0)
    for commission in commissions:
        amount = Decimal(commission.amount or 0)
        total += amount
        month = commission.created_at.strftime("%Y-%m")
        bucket = monthly.setdefault(month, {"month": month, "amount": Decimal(0), "applications": 0})
        bucket["amount"] += amount
        bucket["applications"] += 1

    return {
        "commissions": commissions,
        "monthly": [
            {"month": m["month"], "amount": float(m["amount"]), "applications": m["applications"]}
            for m in monthly.values()
        ],
        "total": float(total),
    }


def update_commission_status(
        db: Session,
        commission_id: int,
        status: str,
        payment_date: Optional[datetime.datetime] = None,
) -> models.Commission:
    try:
        new_status = CommissionStatus(status)
    except ValueError:
        raise ValidationError(f"Unknown commission status '{status}'")

    commission = db.get(models.Commission, commission_id)
    if commission is None:
        raise NotFoundError(f"Commission {commission_id} not found")

    commission.status = new_status
    if new_status == CommissionStatus.PAID:
        commission.payment_date = payment_date or datetime.datetime.utcnow()
    else:
        commission.payment_date = payment_date
    db.commit()
    db.refresh(commission)
    return commission
