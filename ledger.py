"""
Circulation ledger: checkout, return, renewal, overdue sweep and fine settlement.

Every mutating operation follows the same shape:

1. take the per-book / per-member locks from the catalog store,
2. read fresh copies and run every precondition,
3. stage all changes on those copies,
4. commit them in a single compare-and-set.

A failed precondition therefore leaves nothing behind, and a Fine is always
committed together with the return that produced it. Notifications and the
reservation queue are only touched after the commit.
"""

import logging
import math
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from config import Settings
from database import CatalogStore, columns
from directory import MemberDirectory, degraded_status
from errors import InvalidStateError, NotFoundError
from notifications import NotificationSink, deliver
from policy import can_checkout
from reservations import ReservationQueue
from schemas import (
    OPEN_TRANSACTION_STATUSES,
    QUEUED_RESERVATION_STATUSES,
    Book,
    BookStatus,
    Fine,
    FineStatus,
    FineType,
    NotificationEvent,
    NotificationType,
    Reservation,
    ReservationStatus,
    ReturnCondition,
    Transaction,
    TransactionStatus,
    TransactionType,
    money,
    new_id,
    utcnow,
)

logger = logging.getLogger("library.ledger")

ZERO = Decimal("0.00")

TRANSACTIONS = columns(Transaction)
RESERVATIONS = columns(Reservation)


def parse_condition(condition) -> ReturnCondition:
    try:
        return ReturnCondition(condition)
    except ValueError:
        raise InvalidStateError("invalid_condition", f"Unknown return condition: {condition!r}") from None


def parse_amount(value) -> Decimal:
    try:
        amount = money(value)
    except (ArithmeticError, TypeError, ValueError):
        raise InvalidStateError("invalid_amount", f"Not a valid amount: {value!r}") from None
    if not amount.is_finite():
        raise InvalidStateError("invalid_amount", f"Not a valid amount: {value!r}")
    return amount


def days_overdue(due_date: datetime, now: datetime) -> int:
    if now <= due_date:
        return 0
    return math.ceil((now - due_date).total_seconds() / 86400)


class CirculationLedger:
    def __init__(
        self,
        store: CatalogStore,
        directory: MemberDirectory,
        reservations: ReservationQueue,
        notifier: NotificationSink,
        settings: Settings,
        popularity=None,
    ) -> None:
        self.store = store
        self.directory = directory
        self.reservations = reservations
        self.notifier = notifier
        self.settings = settings
        self.popularity = popularity

    def _book(self, book_id: str, for_update: bool = False) -> Book:
        book = self.store.get_document(Book, book_id, for_update=for_update)
        if book is None:
            raise NotFoundError("book_not_found", f"Book {book_id} not found")
        return book

    def _open_transaction(self, book_id: str, member_id: str) -> Transaction:
        open_txns = self.store.get_documents(
            Transaction,
            TRANSACTIONS.book_id == book_id,
            TRANSACTIONS.member_id == member_id,
            TRANSACTIONS.status.in_(OPEN_TRANSACTION_STATUSES),
            order_by=(TRANSACTIONS.issued_at,),
            limit=1,
            for_update=True,
        )
        if not open_txns:
            raise InvalidStateError("no_active_transaction", "Active transaction not found")
        return open_txns[0]

    def _has_other_overdue(self, member_id: str, exclude_id: str) -> bool:
        return self.store.count_documents(
            Transaction,
            TRANSACTIONS.member_id == member_id,
            TRANSACTIONS.status == TransactionStatus.OVERDUE,
            TRANSACTIONS.id != exclude_id,
        ) > 0

    # ----------------------
    # Checkout
    # ----------------------

    def checkout(
        self,
        book_id: str,
        member_id: str,
        issued_by: Optional[str] = None,
        is_digital: bool = False,
        now: Optional[datetime] = None,
    ) -> Transaction:
        with self.store.session_scope():
            book = self._book(book_id, for_update=True)
            now = now or utcnow()
            member = self.directory.resolve(member_id, now, for_update=True)

            decision = can_checkout(member, book, is_digital, self.settings)
            if not decision.allowed:
                logger.warning(
                    "Checkout of %s denied for member %s: %s", book_id, member_id, decision.reason.value
                )
                decision.enforce()

            transaction = Transaction(
                id=new_id("txn"),
                school_id=book.school_id,
                book_id=book_id,
                member_id=member_id,
                is_digital=is_digital,
                issued_by=issued_by,
                issued_at=now,
                due_date=now + timedelta(days=member.effective_loan_days(book)),
            )
            staged = [transaction]

            if is_digital:
                member.digital_books_currently_borrowed += 1
            else:
                book.status = BookStatus.CHECKED_OUT
                book.total_checkouts += 1
                book.last_checked_out = now
                member.books_currently_borrowed += 1
                staged.append(book)
            member.total_books_borrowed += 1
            member.last_active_date = now

            # a member claiming a book they queued for fulfils that reservation
            held = self.store.get_documents(
                Reservation,
                RESERVATIONS.book_id == book_id,
                RESERVATIONS.member_id == member_id,
                RESERVATIONS.status.in_(QUEUED_RESERVATION_STATUSES),
                for_update=True,
            )
            for reservation in held:
                staged.extend(self.reservations.leave_queue(reservation, ReservationStatus.FULFILLED))
                member.books_reserved = max(0, member.books_reserved - 1)

            staged.append(member)
            transaction = self.store.commit(*staged)[0]

        logger.info(
            "Book checked out: %s to member: %s (transaction %s, issued by %s)",
            book_id, member_id, transaction.id, issued_by,
        )
        return transaction

    # ----------------------
    # Return
    # ----------------------

    def return_book(
        self,
        book_id: str,
        member_id: str,
        returned_by: Optional[str] = None,
        condition: ReturnCondition = ReturnCondition.GOOD,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Transaction:
        condition = parse_condition(condition)
        with self.store.session_scope():
            book = self._book(book_id, for_update=True)
            now = now or utcnow()
            member = self.directory.get(member_id, for_update=True)
            transaction = self._open_transaction(book_id, member_id)

            overdue_days = days_overdue(transaction.due_date, now)
            late_fee = money(overdue_days * book.late_fee_per_day)
            damage_fee = ZERO
            replacement_fee = ZERO
            if condition == ReturnCondition.DAMAGED:
                damage_fee = money(book.replacement_cost * self.settings.damage_fee_ratio)
            elif condition == ReturnCondition.LOST:
                replacement_fee = money(book.replacement_cost)
            total_fees = late_fee + damage_fee + replacement_fee

            transaction.returned_at = now
            transaction.returned_by = returned_by
            transaction.transaction_type = TransactionType.RETURN
            transaction.status = (
                TransactionStatus.LOST if condition == ReturnCondition.LOST else TransactionStatus.RETURNED
            )
            transaction.days_overdue = overdue_days
            transaction.late_fee_charged = late_fee
            transaction.damage_fee_charged = damage_fee
            transaction.replacement_fee_charged = replacement_fee
            transaction.total_fees = total_fees
            transaction.return_condition = condition
            transaction.return_notes = notes
            staged = [transaction]

            if transaction.is_digital:
                member.digital_books_currently_borrowed = max(0, member.digital_books_currently_borrowed - 1)
            else:
                if condition == ReturnCondition.LOST:
                    book.status = BookStatus.LOST
                elif condition == ReturnCondition.DAMAGED:
                    book.status = BookStatus.DAMAGED
                else:
                    book.status = BookStatus.AVAILABLE
                member.books_currently_borrowed = max(0, member.books_currently_borrowed - 1)
                staged.append(book)

            member.outstanding_fines = money(member.outstanding_fines + total_fees)
            member.has_overdue_books = self._has_other_overdue(member_id, transaction.id)
            member.last_active_date = now
            member.status = degraded_status(member, self.settings, now)
            staged.append(member)

            for fine_type, amount, description in (
                (FineType.LATE_RETURN, late_fee, f"Late return: {overdue_days} days overdue"),
                (FineType.DAMAGE, damage_fee, "Returned damaged"),
                (FineType.LOST, replacement_fee, "Lost item replacement"),
            ):
                if amount > 0:
                    staged.append(self._new_fine(transaction, fine_type, amount, description, now))

            transaction = self.store.commit(*staged)[0]
            freed = not transaction.is_digital and book.status == BookStatus.AVAILABLE

        logger.info(
            "Book returned: %s by member: %s (transaction %s, condition %s, fees %s)",
            book_id, member_id, transaction.id, condition.value, total_fees,
        )
        if freed:
            self.reservations.process_queue(book_id, now)
        if self.popularity is not None:
            try:
                self.popularity.recompute(book_id, now)
            except Exception:
                logger.exception("Popularity recompute failed for book %s", book_id)
        return transaction

    def _new_fine(
        self, transaction: Transaction, fine_type: FineType, amount: Decimal, description: str, now: datetime
    ) -> Fine:
        return Fine(
            id=new_id("fine"),
            school_id=transaction.school_id,
            member_id=transaction.member_id,
            transaction_id=transaction.id,
            book_id=transaction.book_id,
            fine_type=fine_type,
            amount=amount,
            balance=amount,
            description=description,
            fine_date=now,
            due_date=now + timedelta(days=self.settings.fine_due_days),
        )

    # ----------------------
    # Renewal
    # ----------------------

    def renew(self, book_id: str, member_id: str, now: Optional[datetime] = None) -> Transaction:
        with self.store.session_scope():
            book = self._book(book_id, for_update=True)
            now = now or utcnow()
            member = self.directory.get(member_id, for_update=True)
            transaction = self._open_transaction(book_id, member_id)

            if transaction.status == TransactionStatus.OVERDUE:
                raise InvalidStateError("loan_overdue", "Overdue loans cannot be renewed")
            limit = min(book.max_renewals, member.privileges.max_renewals_allowed)
            if transaction.renewal_count >= limit:
                raise InvalidStateError("max_renewals_exceeded", f"Maximum renewals exceeded ({limit})")
            if self.reservations.has_reservations(book_id):
                raise InvalidStateError("has_reservations", "Book has pending reservations")

            transaction.due_date = transaction.due_date + timedelta(days=member.effective_loan_days(book))
            transaction.renewal_count += 1
            transaction.transaction_type = TransactionType.RENEWAL
            member.total_renewals_made += 1
            member.last_active_date = now
            transaction, _ = self.store.commit(transaction, member)

        logger.info(
            "Book renewed: %s by member: %s (transaction %s, renewal %s)",
            book_id, member_id, transaction.id, transaction.renewal_count,
        )
        return transaction

    # ----------------------
    # Overdue sweep
    # ----------------------

    def overdue_transactions(self, school_id: Optional[str] = None, now: Optional[datetime] = None) -> List[Transaction]:
        now = now or utcnow()
        criteria = [TRANSACTIONS.status.in_(OPEN_TRANSACTION_STATUSES), TRANSACTIONS.due_date < now]
        if school_id is not None:
            criteria.append(TRANSACTIONS.school_id == school_id)
        return self.store.get_documents(Transaction, *criteria, order_by=(TRANSACTIONS.due_date,))

    def process_overdue(self, school_id: Optional[str] = None, now: Optional[datetime] = None) -> List[Transaction]:
        """Flag loans past their due date and notify the borrowers."""
        now = now or utcnow()
        flagged = []
        for candidate in self.overdue_transactions(school_id, now):
            with self.store.session_scope():
                book = self._book(candidate.book_id, for_update=True)
                transaction = self.store.get_document(Transaction, candidate.id, for_update=True)
                if not transaction.is_open:
                    continue
                member = self.directory.get(transaction.member_id, for_update=True)
                transaction.status = TransactionStatus.OVERDUE
                transaction.days_overdue = days_overdue(transaction.due_date, now)
                member.has_overdue_books = True
                transaction, _ = self.store.commit(transaction, member)

            flagged.append(transaction)
            deliver(
                self.notifier,
                NotificationEvent(
                    type=NotificationType.OVERDUE,
                    member_id=transaction.member_id,
                    book_id=transaction.book_id,
                    transaction_id=transaction.id,
                    details={
                        "title": book.title,
                        "days_overdue": transaction.days_overdue,
                        "fine_amount": str(money(transaction.days_overdue * book.late_fee_per_day)),
                    },
                    created_at=now,
                ),
            )
        logger.info("Processed %d overdue notifications", len(flagged))
        return flagged

    # ----------------------
    # Fine settlement
    # ----------------------

    def _fine(self, fine_id: str, for_update: bool = False) -> Fine:
        fine = self.store.get_document(Fine, fine_id, for_update=for_update)
        if fine is None:
            raise NotFoundError("fine_not_found", f"Fine {fine_id} not found")
        return fine

    def pay_fine(self, fine_id: str, amount, now: Optional[datetime] = None) -> Fine:
        amount = parse_amount(amount)
        member_id = self._fine(fine_id).member_id
        with self.store.session_scope():
            member = self.directory.get(member_id, for_update=True)
            now = now or utcnow()
            fine = self._fine(fine_id, for_update=True)
            if fine.status != FineStatus.PENDING:
                raise InvalidStateError("fine_closed", f"Fine is already {fine.status.value}")
            if amount <= 0 or amount > fine.balance:
                raise InvalidStateError("invalid_amount", f"Payment must be between 0.01 and {fine.balance}")

            fine.amount_paid = money(fine.amount_paid + amount)
            fine.balance = money(fine.balance - amount)
            if fine.balance == 0:
                fine.status = FineStatus.PAID
                fine.paid_at = now
            member.outstanding_fines = money(max(ZERO, member.outstanding_fines - amount))
            member.total_fines_paid = money(member.total_fines_paid + amount)
            member.status = degraded_status(member, self.settings, now)
            fine, _ = self.store.commit(fine, member)

        logger.info("Fine %s paid %s by member %s (balance %s)", fine_id, amount, member_id, fine.balance)
        return fine

    def waive_fine(
        self, fine_id: str, reason: str, waived_by: Optional[str] = None, now: Optional[datetime] = None
    ) -> Fine:
        member_id = self._fine(fine_id).member_id
        with self.store.session_scope():
            member = self.directory.get(member_id, for_update=True)
            now = now or utcnow()
            fine = self._fine(fine_id, for_update=True)
            if fine.status != FineStatus.PENDING:
                raise InvalidStateError("fine_closed", f"Fine is already {fine.status.value}")

            member.outstanding_fines = money(max(ZERO, member.outstanding_fines - fine.balance))
            member.status = degraded_status(member, self.settings, now)
            fine.balance = ZERO
            fine.status = FineStatus.WAIVED
            fine.waived_at = now
            fine.waiver_reason = reason
            if waived_by:
                fine.metadata["waived_by"] = waived_by
            fine, _ = self.store.commit(fine, member)

        logger.info("Fine %s waived for member %s: %s", fine_id, member_id, reason)
        return fine
