import threading
from decimal import Decimal

import pytest

from database import CatalogStore, collection_name, columns
from errors import ConflictError, UpstreamUnavailableError
from schemas import Book, BookStatus, Member, MemberPrivileges

BOOKS = columns(Book)


def make_book(book_id="bk_1", **fields):
    return Book(id=book_id, title=fields.pop("title", "Dune"), author="Frank Herbert", **fields)


class TestDocuments:
    def test_collection_name(self):
        assert collection_name(Book) == "book"
        assert collection_name(make_book()) == "book"

    def test_reads_are_copies(self, store):
        store.create_document(make_book())
        copy = store.get_document(Book, "bk_1")
        copy.status = BookStatus.LOST
        assert store.get_document(Book, "bk_1").status == BookStatus.AVAILABLE

    def test_missing_document(self, store):
        assert store.get_document(Book, "nope") is None

    def test_values_survive_the_round_trip(self, store):
        store.create_document(
            make_book(replacement_cost=Decimal("12.34"), restricted_to_classes={"7A", "7B"}, metadata={"shelf": "C4"})
        )
        store.create_document(Member(id="mem_1", privileges=MemberPrivileges(max_books_allowed=5)))

        book = store.get_document(Book, "bk_1")
        assert book.replacement_cost == Decimal("12.34")
        assert book.restricted_to_classes == {"7A", "7B"}
        assert book.metadata == {"shelf": "C4"}
        assert book.status == BookStatus.AVAILABLE
        assert store.get_document(Member, "mem_1").privileges.max_books_allowed == 5

    def test_criteria_and_order(self, store):
        store.create_document(make_book("bk_1", title="B", current_popularity_score=5))
        store.create_document(make_book("bk_2", title="A", current_popularity_score=5))
        store.create_document(make_book("bk_3", title="C", current_popularity_score=9, status=BookStatus.LOST))

        available = store.get_documents(Book, BOOKS.status == BookStatus.AVAILABLE)
        assert {b.id for b in available} == {"bk_1", "bk_2"}

        ranked = store.get_documents(Book, order_by=(BOOKS.current_popularity_score.desc(), BOOKS.title))
        assert [b.id for b in ranked] == ["bk_3", "bk_2", "bk_1"]

        assert store.count_documents(Book, BOOKS.id.in_(["bk_1", "bk_3"])) == 2
        assert store.count_documents(Book, BOOKS.id.notin_(["bk_1"])) == 2
        assert store.count_documents(Book, BOOKS.current_popularity_score > 5) == 1
        assert [b.id for b in store.get_documents(Book, order_by=(BOOKS.title,), limit=1)] == ["bk_2"]
        assert store.all_ids(Book) == ["bk_1", "bk_2", "bk_3"]


class TestCommit:
    def test_commit_bumps_version(self, store):
        store.create_document(make_book())
        book = store.get_document(Book, "bk_1")
        assert book.version == 1
        book.status = BookStatus.CHECKED_OUT
        (committed,) = store.commit(book)
        assert committed.version == 2
        assert store.get_document(Book, "bk_1").status == BookStatus.CHECKED_OUT

    def test_stale_write_is_rejected(self, store):
        store.create_document(make_book())
        first = store.get_document(Book, "bk_1")
        second = store.get_document(Book, "bk_1")

        first.status = BookStatus.CHECKED_OUT
        store.commit(first)

        second.status = BookStatus.MAINTENANCE
        with pytest.raises(ConflictError):
            store.commit(second)
        assert store.get_document(Book, "bk_1").status == BookStatus.CHECKED_OUT

    def test_commit_is_all_or_nothing(self, store):
        store.create_document(make_book())
        stale = store.get_document(Book, "bk_1")
        fresh = store.get_document(Book, "bk_1")
        fresh.title = "Dune Messiah"
        store.commit(fresh)

        member = Member(id="mem_1")
        stale.status = BookStatus.CHECKED_OUT
        with pytest.raises(ConflictError):
            store.commit(member, stale)
        assert store.get_document(Member, "mem_1") is None

    def test_duplicate_id_rejected(self, store):
        store.create_document(make_book())
        with pytest.raises(ConflictError) as excinfo:
            store.create_document(make_book())
        assert excinfo.value.reason == "duplicate_id"

    def test_same_document_twice_in_commit(self, store):
        book = make_book()
        with pytest.raises(ValueError):
            store.commit(book, book)

    def test_closed_store(self, store):
        store.close()
        with pytest.raises(UpstreamUnavailableError):
            store.get_document(Book, "bk_1")


class TestSessionScope:
    def test_error_rolls_back_every_write_in_scope(self, store):
        store.create_document(make_book())

        with pytest.raises(RuntimeError):
            with store.session_scope():
                book = store.get_document(Book, "bk_1", for_update=True)
                book.status = BookStatus.CHECKED_OUT
                store.commit(book)
                with store.session_scope():
                    store.commit(Member(id="mem_1"))
                raise RuntimeError("boom")

        assert store.get_document(Book, "bk_1").status == BookStatus.AVAILABLE
        assert store.get_document(Member, "mem_1") is None

    def test_nested_scopes_commit_once(self, store):
        with store.session_scope() as outer:
            with store.session_scope() as inner:
                assert inner is outer
                store.commit(make_book())
        assert store.get_document(Book, "bk_1").version == 1

    def test_locked_read_modify_write_serializes(self, store):
        store.create_document(make_book(total_checkouts=0))
        workers = 6
        barrier = threading.Barrier(workers)
        errors = []

        def bump():
            barrier.wait()
            try:
                with store.session_scope():
                    book = store.get_document(Book, "bk_1", for_update=True)
                    book.total_checkouts += 1
                    store.commit(book)
            except ConflictError as exc:
                errors.append(exc)

        threads = [threading.Thread(target=bump) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert store.get_document(Book, "bk_1").total_checkouts == workers

    def test_separate_stores_share_the_database(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'shared.db'}"
        writer, reader = CatalogStore(url), CatalogStore(url)
        try:
            writer.create_document(make_book())
            assert reader.get_document(Book, "bk_1").title == "Dune"
        finally:
            writer.close()
            reader.close()
