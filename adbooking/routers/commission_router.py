import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .. import commissions, notifications, schemas
from ..auth import get_current_user, require_roles
from ..database import get_db
from ..errors import workflow_error_to_http
from ..models import CommissionStatus, UserRole

logger = logging.getLogger("adbooking")

router = APIRouter(prefix="/commissions", tags=["Commissions"])

LEDGER_ROLES = (UserRole.ACCOUNTANT, UserRole.ADMIN, UserRole.DIRECTOR)


@router.get("/", response_model=schemas.CommissionSummary)
def read_commissions(
        user: Annotated[schemas.CurrentUser, Depends(get_current_user)],
        db: Session = Depends(get_db),
        agent_id: Optional[int] = None,
):
    """
    Agents see their own commissions; accounting sees everyone's, optionally by agent.
    """
    if user.role == UserRole.AGENT:
        agent_id = user.id
    elif user.role not in LEDGER_ROLES:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
    return commissions.summarize_commissions(commissions.list_commissions(db, agent_id=agent_id))


@router.put("/{commission_id}", response_model=schemas.CommissionRead)
async def update_commission(
        commission_id: int,
        update: schemas.CommissionUpdate,
        user: Annotated[schemas.CurrentUser, Depends(require_roles(*LEDGER_ROLES))],
        db: Session = Depends(get_db),
):
    try:
        commission = commissions.update_commission_status(
            db, commission_id, update.status, payment_date=update.payment_date
        )
    except Exception as e:
        db.rollback()
        raise workflow_error_to_http(e)

    if commission.status == CommissionStatus.PAID:
        try:
            await notifications.notify_user(
                db,
                commission.agent_id,
                notifications.COMMISSION_PAID,
                "Commission paid",
                f"You have been paid a commission of {commission.amount} for an application",
                data={
                    "commissionId": commission.id,
                    "applicationId": commission.application_id,
                    "amount": float(commission.amount),
                    "paymentDate": commission.payment_date.isoformat() if commission.payment_date else None,
                },
            )
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to create commission notification: {e}")
        db.refresh(commission)

    return commission
