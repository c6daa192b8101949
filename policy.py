"""
Availability policy: may this member check out (or reserve) this book right now?

Checks run in a fixed order and stop at the first failure, so callers always
get the most fundamental reason. Nothing here touches the store.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel

from config import Settings
from errors import PolicyDeniedError
from schemas import Book, BookStatus, Member, MemberStatus


class DenialReason(str, Enum):
    MEMBER_INACTIVE = "member_inactive"
    LIMIT_REACHED = "limit_reached"
    FINES_OUTSTANDING = "fines_outstanding"
    NOT_AVAILABLE = "not_available"
    REFERENCE_ONLY = "reference_only"
    RESTRICTED = "restricted"
    RESERVATIONS_NOT_ALLOWED = "reservations_not_allowed"


class Decision(BaseModel):
    allowed: bool
    reason: Optional[DenialReason] = None
    message: str = ""

    @classmethod
    def allow(cls) -> "Decision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: DenialReason, message: str) -> "Decision":
        return cls(allowed=False, reason=reason, message=message)

    def enforce(self) -> None:
        if not self.allowed:
            raise PolicyDeniedError(self.reason.value, self.message)


def can_checkout(member: Member, book: Book, is_digital: bool, settings: Settings) -> Decision:
    if member.status != MemberStatus.ACTIVE:
        return Decision.deny(DenialReason.MEMBER_INACTIVE, "Member account is not active")

    if is_digital:
        current, maximum = member.digital_books_currently_borrowed, member.privileges.max_digital_books_allowed
    else:
        current, maximum = member.books_currently_borrowed, member.privileges.max_books_allowed
    if current >= maximum:
        return Decision.deny(DenialReason.LIMIT_REACHED, f"Maximum book limit reached ({maximum})")

    if member.outstanding_fines > settings.fine_grace_threshold:
        return Decision.deny(
            DenialReason.FINES_OUTSTANDING, "Outstanding fines must be cleared before borrowing"
        )

    if not is_digital and book.status != BookStatus.AVAILABLE:
        return Decision.deny(DenialReason.NOT_AVAILABLE, "Book is not available for checkout")

    if book.is_reference_only:
        return Decision.deny(DenialReason.REFERENCE_ONLY, "Reference books cannot be checked out")

    if book.restricted_to_classes and member.class_id not in book.restricted_to_classes:
        return Decision.deny(DenialReason.RESTRICTED, "Book is restricted to specific classes")

    return Decision.allow()


def can_reserve(member: Member) -> Decision:
    if member.status != MemberStatus.ACTIVE:
        return Decision.deny(DenialReason.MEMBER_INACTIVE, "Member account is not active")
    if not member.privileges.can_reserve_books:
        return Decision.deny(DenialReason.RESERVATIONS_NOT_ALLOWED, "Member may not reserve books")
    return Decision.allow()
