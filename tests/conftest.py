import itertools
from collections import defaultdict
from datetime import datetime

import pytest

from config import Settings
from database import CatalogStore
from notifications import InMemoryNotificationSink
from schemas import Book, Member, Reservation, Transaction
from service import LibraryService


@pytest.fixture
def now():
    return datetime(2024, 1, 1, 9, 0)


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def store(tmp_path):
    store = CatalogStore(f"sqlite:///{tmp_path / 'library.db'}")
    yield store
    store.close()


@pytest.fixture
def notifier():
    return InMemoryNotificationSink()


@pytest.fixture
def service(store, settings, notifier):
    return LibraryService(store=store, settings=settings, notifier=notifier)


@pytest.fixture
def make_book(service):
    counter = itertools.count(1)

    def _make(**fields):
        n = next(counter)
        title = fields.pop("title", f"Book {n}")
        author = fields.pop("author", "Anonymous")
        return service.add_book(title, author, **fields)

    return _make


@pytest.fixture
def make_member(service):
    def _make(**fields):
        return service.add_member(**fields)

    return _make


@pytest.fixture
def check_invariants(store):
    """Assert the circulation invariants over everything in the store."""

    def _check():
        transactions = store.get_documents(Transaction)

        for book in store.get_documents(Book):
            open_physical = [
                t for t in transactions if t.book_id == book.id and t.is_open and not t.is_digital
            ]
            assert len(open_physical) <= 1, f"book {book.id} has {len(open_physical)} open loans"

        for member in store.get_documents(Member):
            mine = [t for t in transactions if t.member_id == member.id and t.is_open]
            assert member.books_currently_borrowed == sum(1 for t in mine if not t.is_digital)
            assert member.digital_books_currently_borrowed == sum(1 for t in mine if t.is_digital)

        queues = defaultdict(list)
        for reservation in store.get_documents(Reservation):
            if reservation.is_queued:
                queues[reservation.book_id].append(reservation)
        for book_id, queue in queues.items():
            queue.sort(key=lambda r: r.queue_position)
            assert [r.queue_position for r in queue] == list(range(1, len(queue) + 1)), book_id
            reserved = [r.reserved_at for r in queue]
            assert reserved == sorted(reserved), book_id

    return _check
