"""
LibraryService wires the store, directory, policy, ledger, reservation queue
and popularity engine together and offers the compact API used by the HTTP
layer and by scheduled jobs.
"""

import copy
import logging
import time
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple

from config import Settings, configure_logging
from sqlalchemy import or_

from database import CatalogStore, columns
from directory import MemberDirectory
from errors import CirculationError, InvalidStateError, NotFoundError
from ledger import CirculationLedger
from notifications import LoggingNotificationSink, NotificationSink
from popularity import PopularityEngine
from reservations import ReservationQueue
from schemas import (
    DEFAULT_SCHOOL,
    OPEN_TRANSACTION_STATUSES,
    Book,
    BookStatus,
    Fine,
    FineStatus,
    Member,
    MemberPrivileges,
    MemberStatus,
    Reservation,
    ReturnCondition,
    Review,
    Transaction,
    TransactionStatus,
    money,
    new_id,
)

logger = logging.getLogger("library.service")

BOOKS = columns(Book)
MEMBERS = columns(Member)
TRANSACTIONS = columns(Transaction)
FINES = columns(Fine)


def parse_book_status(status) -> BookStatus:
    try:
        return BookStatus(status)
    except ValueError:
        raise InvalidStateError("invalid_status", f"Unknown book status {status!r}") from None


@contextmanager
def _logged_failure(action: str):
    try:
        yield
    except CirculationError as exc:
        logger.error("%s failed: [%s/%s] %s", action, exc.kind, exc.reason, exc.message)
        raise


class LibraryService:
    def __init__(
        self,
        store: Optional[CatalogStore] = None,
        settings: Optional[Settings] = None,
        notifier: Optional[NotificationSink] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or Settings()
        self.store = store or CatalogStore(self.settings.database_url)
        self.notifier = notifier or LoggingNotificationSink()
        self.directory = MemberDirectory(self.store, self.settings)
        self.reservations = ReservationQueue(self.store, self.directory, self.notifier, self.settings)
        self.popularity = PopularityEngine(self.store, self.settings)
        self.ledger = CirculationLedger(
            self.store,
            self.directory,
            self.reservations,
            self.notifier,
            self.settings,
            popularity=self.popularity,
        )
        self._clock = clock
        self._stats_cache: Dict[str, Tuple[float, dict]] = {}

    @classmethod
    def from_env(cls, env_file=None) -> "LibraryService":
        settings = Settings.from_env(env_file)
        configure_logging(settings.log_level)
        return cls(settings=settings)

    # ---- catalog records

    def add_book(self, title: str, author: str, **fields) -> Book:
        fields.setdefault("loan_period_days", self.settings.default_loan_days)
        fields.setdefault("late_fee_per_day", self.settings.default_late_fee_per_day)
        book = Book(id=fields.pop("id", None) or new_id("bk"), title=title, author=author, **fields)
        self.store.create_document(book)
        logger.info("Book added: %s (%s)", book.id, title)
        return self.get_book(book.id)

    def add_member(self, **fields) -> Member:
        member = Member(id=fields.pop("id", None) or new_id("mem"), **fields)
        self.store.create_document(member)
        logger.info("Library member added: %s", member.id)
        return self.get_member(member.id)

    def get_book(self, book_id: str) -> Book:
        book = self.store.get_document(Book, book_id)
        if book is None:
            raise NotFoundError("book_not_found", f"Book {book_id} not found")
        return book

    def get_member(self, member_id: str) -> Member:
        return self.directory.get(member_id)

    def get_transaction(self, transaction_id: str) -> Transaction:
        transaction = self.store.get_document(Transaction, transaction_id)
        if transaction is None:
            raise NotFoundError("transaction_not_found", f"Transaction {transaction_id} not found")
        return transaction

    def list_books(
        self,
        school_id: Optional[str] = None,
        status: Optional[BookStatus] = None,
        query: Optional[str] = None,
        category: Optional[str] = None,
    ) -> List[Book]:
        """Catalog listing; ``query`` matches title, author, category or ISBN case-insensitively."""
        criteria = []
        if school_id is not None:
            criteria.append(BOOKS.school_id == school_id)
        if status is not None:
            criteria.append(BOOKS.status == parse_book_status(status))
        if category is not None:
            criteria.append(BOOKS.category == category)
        if query:
            pattern = f"%{query}%"
            criteria.append(
                or_(
                    BOOKS.title.ilike(pattern),
                    BOOKS.author.ilike(pattern),
                    BOOKS.category.ilike(pattern),
                    BOOKS.isbn.ilike(pattern),
                )
            )
        return self.store.get_documents(Book, *criteria, order_by=(BOOKS.title, BOOKS.id))

    def list_members(self, school_id: Optional[str] = None, status: Optional[MemberStatus] = None) -> List[Member]:
        criteria = []
        if school_id is not None:
            criteria.append(MEMBERS.school_id == school_id)
        if status is not None:
            criteria.append(MEMBERS.status == MemberStatus(status))
        return self.store.get_documents(Member, *criteria, order_by=(MEMBERS.id,))

    def member_transactions(self, member_id: str, open_only: bool = False) -> List[Transaction]:
        criteria = [TRANSACTIONS.member_id == member_id]
        if open_only:
            criteria.append(TRANSACTIONS.status.in_(OPEN_TRANSACTION_STATUSES))
        return self.store.get_documents(Transaction, *criteria, order_by=(TRANSACTIONS.issued_at.desc(),))

    def member_fines(self, member_id: str, pending_only: bool = False) -> List[Fine]:
        criteria = [FINES.member_id == member_id]
        if pending_only:
            criteria.append(FINES.status == FineStatus.PENDING)
        return self.store.get_documents(Fine, *criteria, order_by=(FINES.fine_date,))

    def reservation_queue(self, book_id: str) -> List[Reservation]:
        self.get_book(book_id)
        return self.reservations.queue(book_id)

    def set_book_status(self, book_id: str, status: BookStatus) -> Book:
        """Administrative override, e.g. maintenance or withdrawal."""
        with _logged_failure("Book status update"):
            status = parse_book_status(status)
            with self.store.session_scope():
                book = self.store.get_document(Book, book_id, for_update=True)
                if book is None:
                    raise NotFoundError("book_not_found", f"Book {book_id} not found")
                on_loan = self.store.count_documents(
                    Transaction,
                    TRANSACTIONS.book_id == book_id,
                    TRANSACTIONS.is_digital.is_(False),
                    TRANSACTIONS.status.in_(OPEN_TRANSACTION_STATUSES),
                )
                if on_loan:
                    raise InvalidStateError("book_on_loan", "Book is checked out; return it first")
                book.status = status
                (book,) = self.store.commit(book)
        logger.info("Book %s status set to %s", book_id, status.value)
        if status == BookStatus.AVAILABLE:
            self.reservations.process_queue(book_id)
        return book

    def update_privileges(self, member_id: str, privileges) -> Member:
        privileges = MemberPrivileges.model_validate(privileges)
        with self.store.session_scope():
            member = self.directory.get(member_id, for_update=True)
            member.privileges = privileges
            (member,) = self.store.commit(member)
        logger.info("Privileges of member %s updated", member_id)
        return member

    # ---- circulation

    def checkout(
        self,
        book_id: str,
        member_id: str,
        issued_by: Optional[str] = None,
        is_digital: bool = False,
        now: Optional[datetime] = None,
    ) -> Transaction:
        with _logged_failure("Book checkout"):
            return self.ledger.checkout(book_id, member_id, issued_by, is_digital, now)

    def return_book(
        self,
        book_id: str,
        member_id: str,
        returned_by: Optional[str] = None,
        condition: ReturnCondition = ReturnCondition.GOOD,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Transaction:
        with _logged_failure("Book return"):
            return self.ledger.return_book(book_id, member_id, returned_by, condition, notes, now)

    def renew(self, book_id: str, member_id: str, now: Optional[datetime] = None) -> Transaction:
        with _logged_failure("Book renewal"):
            return self.ledger.renew(book_id, member_id, now)

    def reserve(self, book_id: str, member_id: str, now: Optional[datetime] = None) -> Reservation:
        with _logged_failure("Book reservation"):
            return self.reservations.reserve(book_id, member_id, now)

    def cancel_reservation(self, reservation_id: str, now: Optional[datetime] = None) -> Reservation:
        with _logged_failure("Reservation cancellation"):
            return self.reservations.cancel(reservation_id, now)

    # ---- fines

    def pay_fine(self, fine_id: str, amount, now: Optional[datetime] = None) -> Fine:
        with _logged_failure("Fine payment"):
            return self.ledger.pay_fine(fine_id, amount, now)

    def waive_fine(
        self, fine_id: str, reason: str, waived_by: Optional[str] = None, now: Optional[datetime] = None
    ) -> Fine:
        with _logged_failure("Fine waiver"):
            return self.ledger.waive_fine(fine_id, reason, waived_by, now)

    # ---- popularity & recommendations

    def recommend(self, member_id: str, limit: int = 10) -> List[Book]:
        with _logged_failure("Recommendations"):
            return self.popularity.recommend(member_id, limit)

    def rate_book(self, book_id: str, member_id: str, rating: int, now: Optional[datetime] = None) -> Review:
        with _logged_failure("Book rating"):
            return self.popularity.rate_book(book_id, member_id, rating, now)

    # ---- scheduled jobs

    def process_overdue(self, school_id: Optional[str] = None, now: Optional[datetime] = None) -> List[Transaction]:
        return self.ledger.process_overdue(school_id, now)

    def expire_reservations(self, now: Optional[datetime] = None) -> List[Reservation]:
        return self.reservations.expire_unclaimed(now)

    def recompute_popularity(self, now: Optional[datetime] = None) -> int:
        return self.popularity.recompute_all(now)

    # ---- reporting

    def invalidate_statistics(self, school_id: Optional[str] = None) -> None:
        if school_id is None:
            self._stats_cache.clear()
        else:
            self._stats_cache.pop(school_id, None)

    def statistics(self, school_id: str = DEFAULT_SCHOOL) -> dict:
        cached = self._stats_cache.get(school_id)
        if cached is not None and self._clock() - cached[0] < self.settings.stats_cache_ttl_seconds:
            return copy.deepcopy(cached[1])

        books = self.store.get_documents(Book, BOOKS.school_id == school_id)
        members = self.store.get_documents(Member, MEMBERS.school_id == school_id)
        transactions = self.store.get_documents(Transaction, TRANSACTIONS.school_id == school_id)
        fines = self.store.get_documents(Fine, FINES.school_id == school_id)

        stats = {
            "books": {
                "total": len(books),
                "available": sum(1 for b in books if b.status == BookStatus.AVAILABLE),
                "checked_out": sum(1 for b in books if b.status == BookStatus.CHECKED_OUT),
                "digital": sum(1 for b in books if b.is_digital),
            },
            "members": {
                "total": len(members),
                "active": sum(1 for m in members if m.status == MemberStatus.ACTIVE),
                "with_overdue": sum(1 for m in members if m.has_overdue_books),
            },
            "transactions": {
                "total": len(transactions),
                "active_loans": sum(1 for t in transactions if t.status == TransactionStatus.ACTIVE),
                "overdue_loans": sum(1 for t in transactions if t.status == TransactionStatus.OVERDUE),
            },
            "finances": {
                "outstanding_fines": money(
                    sum((f.balance for f in fines if f.status == FineStatus.PENDING), Decimal(0))
                ),
                "total_collected": money(sum((f.amount_paid for f in fines), Decimal(0))),
            },
        }
        self._stats_cache[school_id] = (self._clock(), stats)
        return copy.deepcopy(stats)
