import logging
from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi_limiter.depends import RateLimiter
from sqlalchemy.orm import Session

from .. import crud, models, pricing, schemas, workflow
from ..auth import get_current_user, get_key_by_user_id_or_ip
from ..database import get_db
from ..errors import NotFoundError, workflow_error_to_http
from ..models import ApplicationStatus, UserRole

logger = logging.getLogger("adbooking")

router = APIRouter(prefix="/applications", tags=["Applications"])

# Shared instances so tests can override them through app.dependency_overrides
write_limiter = RateLimiter(times=30, minutes=1, identifier=get_key_by_user_id_or_ip)
read_limiter = RateLimiter(times=120, minutes=1, identifier=get_key_by_user_id_or_ip)

STAFF_ROLES = {UserRole.AGENT, UserRole.COMMERCIAL, UserRole.ACCOUNTANT, UserRole.ADMIN, UserRole.DIRECTOR}


def _check_can_view(user: schemas.CurrentUser, application) -> None:
    if user.role == UserRole.CUSTOMER and application.customer_id != user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    # Agents see their own applications and the unassigned pool
    if user.role == UserRole.AGENT and application.agent_id is not None and application.agent_id != user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")


@router.post("/", response_model=schemas.ApplicationRead, status_code=status.HTTP_201_CREATED)
async def create_application(
        application: schemas.ApplicationCreate,
        user: Annotated[schemas.CurrentUser, Depends(get_current_user)],
        db: Session = Depends(get_db),
        limit: None = Depends(write_limiter),
):
    """
    Submit a new ad placement request.
    """
    if user.role == UserRole.CUSTOMER:
        customer_id = user.id
    elif user.role in STAFF_ROLES:
        if application.customer_id is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="customer_id is required for this user",
            )
        customer_id = application.customer_id
    else:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")

    try:
        return crud.create_application(db=db, application=application, customer_id=customer_id)
    except Exception as e:
        db.rollback()
        raise workflow_error_to_http(e)


@router.get("/", response_model=List[schemas.ApplicationRead])
def read_applications(
        user: Annotated[schemas.CurrentUser, Depends(get_current_user)],
        db: Session = Depends(get_db),
        customer_id: Optional[int] = None,
        agent_id: Optional[int] = None,
        status_: Optional[ApplicationStatus] = Query(None, alias="status"),
        limit: None = Depends(read_limiter),
):
    """
    List applications across all partitions, newest first.
    """
    include_unassigned = False
    if user.role == UserRole.CUSTOMER:
        customer_id = user.id
    elif user.role == UserRole.AGENT:
        agent_id = user.id
        include_unassigned = True
    return crud.list_applications(
        db,
        customer_id=customer_id,
        agent_id=agent_id,
        include_unassigned=include_unassigned,
        status=status_,
    )


@router.post("/calculate-cost", response_model=schemas.CostQuote)
def calculate_cost(
        quote: schemas.CostQuoteRequest,
        user: Annotated[schemas.CurrentUser, Depends(get_current_user)],
        db: Session = Depends(get_db),
):
    try:
        cost = pricing.calculate_cost(db, quote.duration_seconds, quote.show_id)
    except Exception as e:
        raise workflow_error_to_http(e)
    show = db.get(models.Show, quote.show_id)
    return schemas.CostQuote(
        cost=float(cost),
        duration_seconds=quote.duration_seconds,
        minutes=pricing.billable_minutes(quote.duration_seconds),
        show_id=quote.show_id,
        base_price_per_min=float(show.base_price_per_min or 0),
    )


@router.get("/{application_id}", response_model=schemas.ApplicationRead)
def read_application(
        application_id: str,
        user: Annotated[schemas.CurrentUser, Depends(get_current_user)],
        db: Session = Depends(get_db),
        limit: None = Depends(read_limiter),
):
    try:
        application = crud.find_application(db, application_id)
    except NotFoundError as e:
        raise workflow_error_to_http(e)
    _check_can_view(user, application)
    return application


@router.put("/{application_id}", response_model=schemas.ApplicationRead)
async def update_application(
        application_id: str,
        action: schemas.ApplicationAction,
        user: Annotated[schemas.CurrentUser, Depends(get_current_user)],
        db: Session = Depends(get_db),
        limit: None = Depends(write_limiter),
):
    """
    Workflow endpoint: take, takeCommercial, a target status, or a detail edit.
    """
    try:
        if action.take and user.role == UserRole.AGENT:
            return await workflow.take_application(db, application_id, user)

        if action.takeCommercial and user.role == UserRole.COMMERCIAL:
            return await workflow.take_commercial(db, application_id, user)

        if action.status is not None:
            return await workflow.change_status(
                db, application_id, action.status, user,
                create_commercial_chat=action.createCommercialChat,
            )

        patch = action.patch()
        if patch.model_dump(exclude_unset=True):
            if user.role not in (UserRole.AGENT, UserRole.COMMERCIAL):
                raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
            return crud.update_application_details(db, application_id, patch)
    except HTTPException:
        raise
    except Exception as e:
        db.rollback()
        raise workflow_error_to_http(e)

    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No valid action specified")


@router.delete("/{application_id}")
async def cancel_application(
        application_id: str,
        user: Annotated[schemas.CurrentUser, Depends(get_current_user)],
        db: Session = Depends(get_db),
        limit: None = Depends(write_limiter),
):
    """
    Customer cancellation while the application is still in the early workflow.
    """
    try:
        await workflow.cancel_application(db, application_id, user)
    except Exception as e:
        db.rollback()
        raise workflow_error_to_http(e)
    return {"success": True, "message": "Application cancelled"}
