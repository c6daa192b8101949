"""
Reservation queue for books that are currently out.

Queued reservations (``active`` or ``notified``) of one book always hold the
positions 1..N in ``reserved_at`` order. A new reservation is slotted in by
its ``reserved_at`` and later ones move down a place; whenever a reservation
leaves the queue (fulfilled, cancelled, expired) every later one moves up by
one. Both happen in the same transaction as the change that causes them.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import List, Optional

from config import Settings
from database import CatalogStore, columns
from directory import MemberDirectory
from errors import CirculationError, InvalidStateError, NotFoundError
from notifications import NotificationSink, deliver
from policy import can_reserve
from schemas import (
    OPEN_TRANSACTION_STATUSES,
    QUEUED_RESERVATION_STATUSES,
    Book,
    BookStatus,
    Member,
    NotificationEvent,
    NotificationType,
    Record,
    Reservation,
    ReservationStatus,
    Transaction,
    new_id,
    utcnow,
)

logger = logging.getLogger("library.reservations")

RESERVATIONS = columns(Reservation)
TRANSACTIONS = columns(Transaction)
QUEUE_ORDER = (RESERVATIONS.queue_position, RESERVATIONS.reserved_at)


def renumber(queue: List[Reservation], leaving: Reservation) -> List[Reservation]:
    """Close the gap ``leaving`` leaves behind; returns only reservations whose position changed."""
    changed = []
    remaining = [r for r in queue if r.id != leaving.id]
    for position, reservation in enumerate(remaining, start=1):
        if reservation.queue_position != position:
            reservation.queue_position = position
            changed.append(reservation)
    return changed


def slot_for(queue: List[Reservation], reserved_at: datetime) -> int:
    """Position a reservation stamped ``reserved_at`` takes; an offered head keeps its place."""
    ahead = sum(1 for r in queue if r.reserved_at <= reserved_at or r.status == ReservationStatus.NOTIFIED)
    return ahead + 1


class ReservationQueue:
    def __init__(
        self,
        store: CatalogStore,
        directory: MemberDirectory,
        notifier: NotificationSink,
        settings: Settings,
    ) -> None:
        self.store = store
        self.directory = directory
        self.notifier = notifier
        self.settings = settings

    # ----------------------
    # Queries
    # ----------------------

    def queue(self, book_id: str, for_update: bool = False) -> List[Reservation]:
        return self.store.get_documents(
            Reservation,
            RESERVATIONS.book_id == book_id,
            RESERVATIONS.status.in_(QUEUED_RESERVATION_STATUSES),
            order_by=QUEUE_ORDER,
            for_update=for_update,
        )

    def has_reservations(self, book_id: str) -> bool:
        return self.store.count_documents(
            Reservation,
            RESERVATIONS.book_id == book_id,
            RESERVATIONS.status.in_(QUEUED_RESERVATION_STATUSES),
        ) > 0

    def average_loan_days(self, book_id: str) -> float:
        returned = self.store.get_documents(
            Transaction, TRANSACTIONS.book_id == book_id, TRANSACTIONS.returned_at.isnot(None)
        )
        if not returned:
            return float(self.settings.default_wait_days)
        total = sum((t.returned_at - t.issued_at).total_seconds() for t in returned)
        return total / len(returned) / 86400

    def estimate_wait_days(self, book_id: str, queue_position: int) -> int:
        return math.ceil(queue_position * self.average_loan_days(book_id))

    # ----------------------
    # Operations
    # ----------------------

    def reserve(self, book_id: str, member_id: str, now: Optional[datetime] = None) -> Reservation:
        with self.store.session_scope():
            book = self.store.get_document(Book, book_id, for_update=True)
            if book is None:
                raise NotFoundError("book_not_found", f"Book {book_id} not found")
            now = now or utcnow()
            member = self.directory.resolve(member_id, now, for_update=True)

            can_reserve(member).enforce()
            if book.status == BookStatus.AVAILABLE:
                raise InvalidStateError(
                    "book_currently_available", "Book is currently available for immediate checkout"
                )

            queue = self.queue(book_id, for_update=True)
            if any(r.member_id == member_id for r in queue):
                raise InvalidStateError("already_reserved", "Member already has a reservation for this book")
            holding = self.store.count_documents(
                Transaction,
                TRANSACTIONS.book_id == book_id,
                TRANSACTIONS.member_id == member_id,
                TRANSACTIONS.status.in_(OPEN_TRANSACTION_STATUSES),
            )
            if holding:
                raise InvalidStateError("already_borrowed", "Member is currently borrowing this book")

            position = slot_for(queue, now)
            shifted = [r for r in queue if r.queue_position >= position]
            for later in shifted:
                later.queue_position += 1

            reservation = Reservation(
                id=new_id("res"),
                school_id=book.school_id,
                book_id=book_id,
                member_id=member_id,
                queue_position=position,
                reserved_at=now,
                expires_at=now + timedelta(days=self.settings.reservation_claim_days),
                estimated_wait_days=self.estimate_wait_days(book_id, position),
            )
            member.books_reserved += 1
            member.total_reservations_made += 1
            member.last_active_date = now

            reservation = self.store.commit(reservation, member, *shifted)[0]

        logger.info(
            "Book reserved: %s by member: %s (reservation %s, position %s)",
            book_id, member_id, reservation.id, reservation.queue_position,
        )
        return reservation

    def process_queue(self, book_id: str, now: Optional[datetime] = None) -> Optional[Reservation]:
        """Offer the book to the member at the head of its queue, if it is on the shelf."""
        with self.store.session_scope():
            book = self.store.get_document(Book, book_id, for_update=True)
            if book is None or book.status != BookStatus.AVAILABLE:
                return None
            now = now or utcnow()
            queue = self.queue(book_id, for_update=True)
            if not queue:
                return None
            head = queue[0]
            head.status = ReservationStatus.NOTIFIED
            head.notified_at = now
            head.notification_count += 1
            head.expires_at = now + timedelta(days=self.settings.reservation_claim_days)
            (head,) = self.store.commit(head)

        logger.info("Reservation %s notified: book %s ready for member %s", head.id, book_id, head.member_id)
        deliver(
            self.notifier,
            NotificationEvent(
                type=NotificationType.RESERVATION_READY,
                member_id=head.member_id,
                book_id=book_id,
                reservation_id=head.id,
                details={
                    "queue_position": head.queue_position,
                    "expires_at": head.expires_at.isoformat(),
                    "notification_count": head.notification_count,
                },
                created_at=now,
            ),
        )
        return head

    def leave_queue(self, reservation: Reservation, status: ReservationStatus) -> List[Record]:
        """Stage ``reservation`` leaving its queue with ``status``.

        Callers run inside a session scope and commit the returned documents
        together with their own changes, so renumbering is atomic with the exit.
        """
        queue = self.queue(reservation.book_id, for_update=True)
        reservation.status = status
        return [reservation, *renumber(queue, reservation)]

    def cancel(self, reservation_id: str, now: Optional[datetime] = None) -> Reservation:
        return self._close(reservation_id, ReservationStatus.CANCELLED, now)

    def expire(self, reservation_id: str, now: Optional[datetime] = None) -> Reservation:
        return self._close(reservation_id, ReservationStatus.EXPIRED, now)

    def _close(self, reservation_id: str, status: ReservationStatus, now: Optional[datetime]) -> Reservation:
        found = self.store.get_document(Reservation, reservation_id)
        if found is None:
            raise NotFoundError("reservation_not_found", f"Reservation {reservation_id} not found")

        with self.store.session_scope():
            self.store.get_document(Book, found.book_id, for_update=True)
            now = now or utcnow()
            reservation = self.store.get_document(Reservation, reservation_id, for_update=True)
            if not reservation.is_queued:
                raise InvalidStateError(
                    "reservation_closed", f"Reservation is already {reservation.status.value}"
                )
            was_notified = reservation.status == ReservationStatus.NOTIFIED
            staged = self.leave_queue(reservation, status)
            member = self.store.get_document(Member, reservation.member_id, for_update=True)
            if member is not None:
                member.books_reserved = max(0, member.books_reserved - 1)
                staged.append(member)
            committed = self.store.commit(*staged)

        logger.info("Reservation %s for book %s %s", reservation_id, reservation.book_id, status.value)
        if was_notified:
            # the copy that was on offer goes to the next member
            self.process_queue(reservation.book_id, now)
        return committed[0]

    def expire_unclaimed(self, now: Optional[datetime] = None) -> List[Reservation]:
        """Sweep notified reservations whose claim window has elapsed."""
        now = now or utcnow()
        due = self.store.get_documents(
            Reservation,
            RESERVATIONS.status == ReservationStatus.NOTIFIED,
            RESERVATIONS.expires_at < now,
            order_by=(RESERVATIONS.expires_at,),
        )
        expired = []
        for reservation in due:
            try:
                expired.append(self.expire(reservation.id, now))
            except InvalidStateError:
                # claimed or cancelled since the sweep read it
                continue
            except CirculationError:
                logger.error("Failed to expire reservation %s", reservation.id, exc_info=True)
                raise
        if expired:
            logger.info("Expired %d unclaimed reservations", len(expired))
        return expired
