from decimal import Decimal

import pytest

from config import Settings
from errors import PolicyDeniedError
from policy import DenialReason, can_checkout, can_reserve
from schemas import Book, BookStatus, Member, MemberPrivileges, MemberStatus

SETTINGS = Settings()


def member(**fields):
    fields.setdefault("id", "mem_1")
    return Member(**fields)


def book(**fields):
    fields.setdefault("id", "bk_1")
    fields.setdefault("title", "Things Fall Apart")
    fields.setdefault("author", "Chinua Achebe")
    return Book(**fields)


class TestCanCheckout:
    def test_allows_eligible_member(self):
        decision = can_checkout(member(), book(), False, SETTINGS)
        assert decision.allowed
        assert decision.reason is None

    @pytest.mark.parametrize(
        "status", [MemberStatus.SUSPENDED, MemberStatus.EXPIRED, MemberStatus.BLOCKED]
    )
    def test_inactive_member(self, status):
        decision = can_checkout(member(status=status), book(), False, SETTINGS)
        assert decision.reason == DenialReason.MEMBER_INACTIVE

    def test_physical_limit(self):
        m = member(privileges=MemberPrivileges(max_books_allowed=2), books_currently_borrowed=2)
        assert can_checkout(m, book(), False, SETTINGS).reason == DenialReason.LIMIT_REACHED

    def test_digital_bucket_is_separate(self):
        m = member(
            privileges=MemberPrivileges(max_books_allowed=2, max_digital_books_allowed=1),
            books_currently_borrowed=2,
        )
        assert can_checkout(m, book(is_digital=True), True, SETTINGS).allowed

        m.digital_books_currently_borrowed = 1
        assert can_checkout(m, book(is_digital=True), True, SETTINGS).reason == DenialReason.LIMIT_REACHED

    def test_fines_within_grace_are_tolerated(self):
        assert can_checkout(member(outstanding_fines=Decimal("100.00")), book(), False, SETTINGS).allowed

    def test_fines_over_grace(self):
        decision = can_checkout(member(outstanding_fines=Decimal("100.01")), book(), False, SETTINGS)
        assert decision.reason == DenialReason.FINES_OUTSTANDING

    def test_physical_book_must_be_available(self):
        decision = can_checkout(member(), book(status=BookStatus.CHECKED_OUT), False, SETTINGS)
        assert decision.reason == DenialReason.NOT_AVAILABLE

    def test_digital_checkout_ignores_status(self):
        assert can_checkout(member(), book(status=BookStatus.CHECKED_OUT, is_digital=True), True, SETTINGS).allowed

    def test_reference_only(self):
        decision = can_checkout(member(), book(is_reference_only=True), False, SETTINGS)
        assert decision.reason == DenialReason.REFERENCE_ONLY

    def test_restricted_classes(self):
        restricted = book(restricted_to_classes={"grade-10"})
        assert can_checkout(member(class_id="grade-9"), restricted, False, SETTINGS).reason == DenialReason.RESTRICTED
        assert can_checkout(member(), restricted, False, SETTINGS).reason == DenialReason.RESTRICTED
        assert can_checkout(member(class_id="grade-10"), restricted, False, SETTINGS).allowed

    def test_checks_run_in_order(self):
        m = member(
            status=MemberStatus.SUSPENDED,
            books_currently_borrowed=5,
            outstanding_fines=Decimal("900"),
        )
        b = book(status=BookStatus.LOST, is_reference_only=True)
        assert can_checkout(m, b, False, SETTINGS).reason == DenialReason.MEMBER_INACTIVE

        m.status = MemberStatus.ACTIVE
        assert can_checkout(m, b, False, SETTINGS).reason == DenialReason.LIMIT_REACHED

        m.books_currently_borrowed = 0
        assert can_checkout(m, b, False, SETTINGS).reason == DenialReason.FINES_OUTSTANDING

        m.outstanding_fines = Decimal("0")
        assert can_checkout(m, b, False, SETTINGS).reason == DenialReason.NOT_AVAILABLE

        b.status = BookStatus.AVAILABLE
        assert can_checkout(m, b, False, SETTINGS).reason == DenialReason.REFERENCE_ONLY

    def test_is_pure(self):
        m, b = member(), book()
        before = (m.model_dump(), b.model_dump())
        for _ in range(3):
            can_checkout(m, b, False, SETTINGS)
        assert (m.model_dump(), b.model_dump()) == before

    def test_enforce_raises_with_reason(self):
        decision = can_checkout(member(status=MemberStatus.BLOCKED), book(), False, SETTINGS)
        with pytest.raises(PolicyDeniedError) as excinfo:
            decision.enforce()
        assert excinfo.value.reason == "member_inactive"
        assert excinfo.value.kind == "policy_denied"


class TestCanReserve:
    def test_allowed(self):
        assert can_reserve(member()).allowed

    def test_privilege_off(self):
        m = member(privileges=MemberPrivileges(can_reserve_books=False))
        assert can_reserve(m).reason == DenialReason.RESERVATIONS_NOT_ALLOWED

    def test_inactive(self):
        assert can_reserve(member(status=MemberStatus.EXPIRED)).reason == DenialReason.MEMBER_INACTIVE
