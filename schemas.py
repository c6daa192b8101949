"""
Record schemas for library circulation

Each Pydantic model represents a Catalog Store collection.
Collection name is the lowercase of the class name:
- Book -> "book"
- Member -> "member"
- Transaction -> "transaction"
- Reservation -> "reservation"
- Fine -> "fine"
- Review -> "review"
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional, Set, Union

from pydantic import BaseModel, Field, StrictBool, StrictFloat, StrictInt, StrictStr

# School-specific extensions stored next to a record. Values stay primitive.
Metadata = Dict[str, Union[StrictBool, StrictInt, StrictFloat, StrictStr, None]]

DEFAULT_SCHOOL = "default"


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def money(value) -> Decimal:
    return Decimal(value).quantize(Decimal("0.01"))


class BookStatus(str, Enum):
    AVAILABLE = "available"
    CHECKED_OUT = "checked_out"
    RESERVED = "reserved"
    MAINTENANCE = "maintenance"
    LOST = "lost"
    DAMAGED = "damaged"
    WITHDRAWN = "withdrawn"


class MemberStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    EXPIRED = "expired"
    BLOCKED = "blocked"


class TransactionType(str, Enum):
    CHECKOUT = "checkout"
    RETURN = "return"
    RENEWAL = "renewal"
    RESERVATION = "reservation"
    CANCELLATION = "cancellation"


class TransactionStatus(str, Enum):
    ACTIVE = "active"
    RETURNED = "returned"
    OVERDUE = "overdue"
    LOST = "lost"
    DAMAGED = "damaged"


OPEN_TRANSACTION_STATUSES = (TransactionStatus.ACTIVE, TransactionStatus.OVERDUE)


class ReturnCondition(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    DAMAGED = "damaged"
    LOST = "lost"


class ReservationStatus(str, Enum):
    ACTIVE = "active"
    NOTIFIED = "notified"
    EXPIRED = "expired"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"


QUEUED_RESERVATION_STATUSES = (ReservationStatus.ACTIVE, ReservationStatus.NOTIFIED)


class FineType(str, Enum):
    LATE_RETURN = "late_return"
    DAMAGE = "damage"
    LOST = "lost"


class FineStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    WAIVED = "waived"


class Record(BaseModel):
    """Fields shared by every stored document."""

    id: str = Field(..., description="Document identifier")
    school_id: str = Field(DEFAULT_SCHOOL, description="Owning school")
    version: int = Field(0, ge=0, description="Compare-and-set counter maintained by the store")
    metadata: Metadata = Field(default_factory=dict, description="School-specific extension fields")


class Book(Record):
    title: str = Field(..., description="Book title")
    author: str = Field(..., description="Author name")
    isbn: Optional[str] = Field(None, description="ISBN identifier")
    category: str = Field("general", description="Catalog category")
    status: BookStatus = Field(BookStatus.AVAILABLE, description="Availability status")
    is_reference_only: bool = Field(False, description="Reference books never circulate")
    restricted_to_classes: Set[str] = Field(default_factory=set, description="Class ids allowed to borrow; empty means everyone")
    is_digital: bool = Field(False, description="Digital items have no copy exclusivity")
    loan_period_days: int = Field(14, ge=1, description="Default loan period")
    late_fee_per_day: Decimal = Field(Decimal("5.00"), ge=0, description="Late fee charged per overdue day")
    replacement_cost: Decimal = Field(Decimal("0.00"), ge=0, description="Charged when the copy is lost")
    max_renewals: int = Field(2, ge=0, description="Maximum renewals per loan")
    total_checkouts: int = Field(0, ge=0)
    last_checked_out: Optional[datetime] = None
    current_popularity_score: int = Field(0, ge=0)
    average_rating: Decimal = Field(Decimal("0.00"), ge=0, le=5)
    rating_count: int = Field(0, ge=0)


class MemberPrivileges(BaseModel):
    max_books_allowed: int = Field(3, ge=0, description="Physical books borrowable at once")
    max_digital_books_allowed: int = Field(2, ge=0, description="Digital books borrowable at once")
    loan_period_days: Optional[int] = Field(None, ge=1, description="Overrides the book's loan period")
    max_renewals_allowed: int = Field(2, ge=0)
    can_reserve_books: bool = True


class Member(Record):
    user_id: Optional[str] = Field(None, description="Platform user behind this membership")
    class_id: Optional[str] = Field(None, description="Class the member belongs to")
    status: MemberStatus = Field(MemberStatus.ACTIVE, description="Membership status")
    membership_end_date: Optional[datetime] = Field(None, description="Membership lapses after this instant")
    privileges: MemberPrivileges = Field(default_factory=MemberPrivileges)

    books_currently_borrowed: int = Field(0, ge=0)
    digital_books_currently_borrowed: int = Field(0, ge=0)
    books_reserved: int = Field(0, ge=0)
    outstanding_fines: Decimal = Field(Decimal("0.00"), ge=0)
    has_overdue_books: bool = False

    total_books_borrowed: int = Field(0, ge=0)
    total_renewals_made: int = Field(0, ge=0)
    total_reservations_made: int = Field(0, ge=0)
    total_fines_paid: Decimal = Field(Decimal("0.00"), ge=0)
    last_active_date: Optional[datetime] = None

    def effective_loan_days(self, book: Book) -> int:
        return self.privileges.loan_period_days or book.loan_period_days


class Transaction(Record):
    book_id: str
    member_id: str
    transaction_type: TransactionType = TransactionType.CHECKOUT
    is_digital: bool = False
    issued_by: Optional[str] = None
    issued_at: datetime
    due_date: datetime
    returned_at: Optional[datetime] = None
    returned_by: Optional[str] = None
    renewal_count: int = Field(0, ge=0)
    status: TransactionStatus = TransactionStatus.ACTIVE
    days_overdue: int = Field(0, ge=0)
    late_fee_charged: Decimal = Field(Decimal("0.00"), ge=0)
    damage_fee_charged: Decimal = Field(Decimal("0.00"), ge=0)
    replacement_fee_charged: Decimal = Field(Decimal("0.00"), ge=0)
    total_fees: Decimal = Field(Decimal("0.00"), ge=0)
    return_condition: Optional[ReturnCondition] = None
    return_notes: Optional[str] = Field(None, max_length=500)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_TRANSACTION_STATUSES


class Reservation(Record):
    book_id: str
    member_id: str
    queue_position: int = Field(..., ge=1, description="1-based rank among queued reservations for the book")
    reserved_at: datetime
    expires_at: datetime
    estimated_wait_days: int = Field(0, ge=0)
    status: ReservationStatus = ReservationStatus.ACTIVE
    notified_at: Optional[datetime] = None
    notification_count: int = Field(0, ge=0)

    @property
    def is_queued(self) -> bool:
        return self.status in QUEUED_RESERVATION_STATUSES


class Fine(Record):
    member_id: str
    transaction_id: str
    book_id: str
    fine_type: FineType
    amount: Decimal = Field(..., gt=0)
    amount_paid: Decimal = Field(Decimal("0.00"), ge=0)
    balance: Decimal = Field(..., ge=0)
    status: FineStatus = FineStatus.PENDING
    description: str
    fine_date: datetime
    due_date: datetime
    paid_at: Optional[datetime] = None
    waived_at: Optional[datetime] = None
    waiver_reason: Optional[str] = None


class Review(Record):
    book_id: str
    member_id: str
    rating: int = Field(..., ge=1, le=5)
    approved: bool = True
    created_at: datetime = Field(default_factory=utcnow)


class NotificationType(str, Enum):
    RESERVATION_READY = "reservation_ready"
    OVERDUE = "overdue"


class NotificationEvent(BaseModel):
    type: NotificationType
    member_id: str
    book_id: str
    reservation_id: Optional[str] = None
    transaction_id: Optional[str] = None
    details: Metadata = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
