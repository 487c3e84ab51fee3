import datetime
import uuid
from enum import Enum as PyEnum

from sqlalchemy import (
    JSON, TIMESTAMP, Boolean, CheckConstraint, Column, Date, DateTime, Index, Integer,
    Numeric, String, Text, UniqueConstraint,
)
from sqlalchemy import Enum as SQLEnum

from .database import Base


# --- ENUMs ---
class UserRole(str, PyEnum):
    CUSTOMER = "customer"
    AGENT = "agent"
    COMMERCIAL = "commercial"
    ACCOUNTANT = "accountant"
    ADMIN = "admin"
    DIRECTOR = "director"


class ApplicationStatus(str, PyEnum):
    # These tokens are persisted as-is and sent over the wire.
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SENT_TO_COMMERCIAL = "sent_to_commercial"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"
    OVERDUE = "overdue"


class CommissionStatus(str, PyEnum):
    PENDING = "pending"
    PAID = "paid"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


def _new_application_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    role = Column(SQLEnum(UserRole, values_callable=_enum_values, native_enum=False, length=32),
                  default=UserRole.CUSTOMER, nullable=False)
    bank_details = Column(JSON, nullable=True)
    phone = Column(String(50), nullable=True)
    created_at = Column(TIMESTAMP, default=datetime.datetime.utcnow)

    @property
    def has_bank_details(self) -> bool:
        # An empty object counts as "nothing on file"
        if self.bank_details is None:
            return False
        if isinstance(self.bank_details, dict):
            return len(self.bank_details) > 0
        return bool(self.bank_details)


class Show(Base):
    __tablename__ = "shows"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    time_slot = Column(String(50), nullable=True)
    base_price_per_min = Column(Numeric(12, 2), nullable=False, default=0)
    show_type = Column(String(50), nullable=True)
    # daily / weekdays / weekends
    recurrence = Column(String(20), nullable=False, default="daily")
    created_at = Column(TIMESTAMP, default=datetime.datetime.utcnow)


class ShowSchedule(Base):
    __tablename__ = "show_schedule"

    id = Column(Integer, primary_key=True, index=True)
    show_id = Column(Integer, index=True, nullable=False)
    scheduled_date = Column(Date, nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=60)
    ad_minutes = Column(Integer, nullable=False, default=10)
    available_slots = Column(Integer, nullable=False, default=10)
    updated_at = Column(TIMESTAMP, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("show_id", "scheduled_date", name="uq_show_schedule_show_date"),
        CheckConstraint("available_slots >= 0", name="ck_show_schedule_available_slots"),
    )


class ApplicationColumns:
    """
    Columns shared by every application partition.

    References to users and shows are plain ids; rows move between tables,
    so nothing here is enforced as a foreign key.
    """

    id = Column(String(36), primary_key=True, default=_new_application_id)
    customer_id = Column(Integer, index=True, nullable=False)
    agent_id = Column(Integer, index=True, nullable=True)
    commercial_id = Column(Integer, nullable=True)
    show_id = Column(Integer, nullable=False)

    scheduled_at = Column(DateTime, nullable=False)
    duration_seconds = Column(Integer, nullable=False)
    status = Column(SQLEnum(ApplicationStatus, values_callable=_enum_values, native_enum=False, length=32),
                    default=ApplicationStatus.PENDING, nullable=False)
    cost = Column(Numeric(12, 2), nullable=False, default=0)

    description = Column(Text, nullable=True)
    contact_phone = Column(String(50), nullable=True)
    payment_method = Column(String(50), nullable=True)
    payment_date = Column(DateTime, nullable=True)
    due_date = Column(DateTime, nullable=True)

    created_at = Column(TIMESTAMP, default=datetime.datetime.utcnow, nullable=False)
    updated_at = Column(TIMESTAMP, default=datetime.datetime.utcnow, nullable=False)

    @property
    def source_table(self) -> str:
        return self.__tablename__


class LegacyApplication(ApplicationColumns, Base):
    __tablename__ = "applications"


class PendingApplication(ApplicationColumns, Base):
    __tablename__ = "pending_applications"


class ApprovedApplication(ApplicationColumns, Base):
    __tablename__ = "approved_applications"


class RejectedApplication(ApplicationColumns, Base):
    __tablename__ = "rejected_applications"


# Search order for lookups across partitions
PARTITIONS = (PendingApplication, ApprovedApplication, RejectedApplication, LegacyApplication)

# Columns copied verbatim when a row changes partition
APPLICATION_FIELDS = (
    "id", "customer_id", "agent_id", "commercial_id", "show_id", "scheduled_at",
    "duration_seconds", "status", "cost", "description", "contact_phone",
    "payment_method", "payment_date", "due_date", "created_at", "updated_at",
)


class Commission(Base):
    __tablename__ = "commissions"

    id = Column(Integer, primary_key=True, index=True)
    application_id = Column(String(36), unique=True, nullable=False)
    agent_id = Column(Integer, index=True, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(SQLEnum(CommissionStatus, values_callable=_enum_values, native_enum=False, length=20),
                    default=CommissionStatus.PENDING, nullable=False)
    payment_date = Column(DateTime, nullable=True)
    created_at = Column(TIMESTAMP, default=datetime.datetime.utcnow)
    updated_at = Column(TIMESTAMP, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)


class ServicesFeed(Base):
    __tablename__ = "services_feed"

    id = Column(Integer, primary_key=True, index=True)
    application_id = Column(String(36), unique=True, nullable=False)
    show_id = Column(Integer, nullable=False)
    scheduled_at = Column(DateTime, nullable=False)
    # scheduled / completed
    status = Column(String(20), default="scheduled", nullable=False)
    created_at = Column(TIMESTAMP, default=datetime.datetime.utcnow)
    updated_at = Column(TIMESTAMP, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False)
    type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSON, nullable=True)
    read = Column(Boolean, default=False, nullable=False)
    read_at = Column(TIMESTAMP, nullable=True)
    created_at = Column(TIMESTAMP, default=datetime.datetime.utcnow)

    __table_args__ = (
        Index("ix_notifications_user_read", "user_id", "read"),
    )


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id = Column(Integer, primary_key=True, index=True)
    room_id = Column(String(255), index=True, nullable=False)
    # NULL sender means a system message
    sender_id = Column(Integer, nullable=True)
    sender_name = Column(String(255), nullable=True)
    content = Column(Text, nullable=False)
    chat_type = Column(String(30), default="customer-agent", nullable=False)
    application_id = Column(String(36), nullable=True)

    file_url = Column(Text, nullable=True)
    file_name = Column(String(255), nullable=True)
    file_size = Column(Integer, nullable=True)

    created_at = Column(TIMESTAMP, default=datetime.datetime.utcnow, nullable=False)
