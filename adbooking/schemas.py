from pydantic import BaseModel, Field, field_validator
from typing import Any, Optional
import datetime

from .models import ApplicationStatus, CommissionStatus, UserRole


def to_naive_utc(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """Air times are stored and compared as naive UTC."""
    if value is not None and value.tzinfo is not None:
        return value.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return value


class CurrentUser(BaseModel):
    """The verified caller, as handed over by the auth layer."""

    id: int
    role: UserRole
    name: Optional[str] = None


class ApplicationBase(BaseModel):
    show_id: int
    scheduled_at: datetime.datetime
    duration_seconds: int = Field(gt=0)
    description: Optional[str] = None
    contact_phone: Optional[str] = None

    normalize_scheduled_at = field_validator("scheduled_at")(to_naive_utc)


class ApplicationCreate(ApplicationBase):
    # Ignored for customers (taken from the JWT); required when staff submit on a customer's behalf
    customer_id: Optional[int] = None


class ApplicationPatch(BaseModel):
    """Only the fields actually present in the request are written."""

    description: Optional[str] = None
    contact_phone: Optional[str] = None
    duration_seconds: Optional[int] = Field(default=None, gt=0)
    show_id: Optional[int] = None
    scheduled_at: Optional[datetime.datetime] = None
    cost: Optional[float] = Field(default=None, ge=0)

    normalize_scheduled_at = field_validator("scheduled_at")(to_naive_utc)


class ApplicationAction(ApplicationPatch):
    status: Optional[ApplicationStatus] = None
    take: bool = False
    takeCommercial: bool = False
    createCommercialChat: bool = True

    def patch(self) -> ApplicationPatch:
        fields = self.model_dump(include=set(ApplicationPatch.model_fields), exclude_unset=True)
        return ApplicationPatch(**fields)


class ApplicationRead(ApplicationBase):
    id: str
    customer_id: int
    agent_id: Optional[int] = None
    commercial_id: Optional[int] = None
    status: ApplicationStatus
    cost: float
    payment_method: Optional[str] = None
    payment_date: Optional[datetime.datetime] = None
    due_date: Optional[datetime.datetime] = None
    created_at: datetime.datetime
    updated_at: datetime.datetime
    source_table: str

    class Config:
        from_attributes = True


class CostQuoteRequest(BaseModel):
    show_id: int
    duration_seconds: int = Field(gt=0)


class CostQuote(BaseModel):
    cost: float
    duration_seconds: int
    minutes: int
    show_id: int
    base_price_per_min: float


class ChatMessageCreate(BaseModel):
    content: str = Field(min_length=1)
    sender_id: Optional[int] = Field(default=None, alias="senderId")
    sender_name: Optional[str] = Field(default=None, alias="senderName")
    file_url: Optional[str] = Field(default=None, alias="fileUrl")
    file_name: Optional[str] = Field(default=None, alias="fileName")
    file_size: Optional[int] = Field(default=None, alias="fileSize")
    chat_type: str = Field(default="customer-agent", alias="chatType")
    application_id: Optional[str] = Field(default=None, alias="applicationId")

    class Config:
        populate_by_name = True


class NotificationRead(BaseModel):
    id: int
    user_id: int
    type: str
    title: str
    message: str
    data: Optional[dict[str, Any]] = None
    read: bool
    read_at: Optional[datetime.datetime] = None
    created_at: datetime.datetime

    class Config:
        from_attributes = True


class UnreadCount(BaseModel):
    count: int


class CommissionRead(BaseModel):
    id: int
    application_id: str
    agent_id: int
    amount: float
    status: CommissionStatus
    payment_date: Optional[datetime.datetime] = None
    created_at: datetime.datetime

    class Config:
        from_attributes = True


class CommissionMonth(BaseModel):
    month: str
    amount: float
    applications: int


class CommissionSummary(BaseModel):
    commissions: list[CommissionRead]
    monthly: list[CommissionMonth]
    total: float


class CommissionUpdate(BaseModel):
    status: str
    payment_date: Optional[datetime.datetime] = None
