import logging
from collections import Counter
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from config import Settings
from database import CatalogStore, columns
from errors import InvalidStateError, NotFoundError
from schemas import (
    Book,
    BookStatus,
    Member,
    Review,
    Transaction,
    TransactionStatus,
    new_id,
    utcnow,
)

logger = logging.getLogger("library.popularity")

BOOKS = columns(Book)
TRANSACTIONS = columns(Transaction)
REVIEWS = columns(Review)
POPULARITY_ORDER = (BOOKS.current_popularity_score.desc(), BOOKS.title, BOOKS.id)


def parse_rating(rating) -> int:
    """Whole stars from 1 to 5; anything else is rejected rather than rounded."""
    try:
        value = Decimal(str(rating))
    except ArithmeticError:
        value = None
    if value is None or isinstance(rating, bool) or value != value.to_integral_value() or not 1 <= value <= 5:
        raise InvalidStateError("invalid_rating", f"Rating must be a whole number from 1 to 5, got {rating!r}")
    return int(value)


class PopularityEngine:
    def __init__(self, store: CatalogStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def score(self, recent_checkouts: int, average_rating) -> int:
        """Popularity grows with both recent checkouts and rating."""
        raw = (
            Decimal(recent_checkouts) * self.settings.popularity_checkout_weight
            + Decimal(average_rating) * self.settings.popularity_rating_weight
        )
        return int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    def recompute(self, book_id: str, now: Optional[datetime] = None) -> Book:
        with self.store.session_scope():
            book = self.store.get_document(Book, book_id, for_update=True)
            if book is None:
                raise NotFoundError("book_not_found", f"Book {book_id} not found")
            now = now or utcnow()
            since = now - timedelta(days=self.settings.popularity_window_days)

            recent = self.store.count_documents(
                Transaction, TRANSACTIONS.book_id == book_id, TRANSACTIONS.issued_at >= since
            )
            reviews = self.store.get_documents(Review, REVIEWS.book_id == book_id, REVIEWS.approved.is_(True))
            ratings = [r.rating for r in reviews]
            average = Decimal(sum(ratings)) / len(ratings) if ratings else Decimal(0)

            book.current_popularity_score = self.score(recent, average)
            book.average_rating = average.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
            book.rating_count = len(ratings)
            (book,) = self.store.commit(book)

        logger.debug("Popularity of %s is now %s", book_id, book.current_popularity_score)
        return book

    def recompute_all(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        book_ids = list(self.store.all_ids(Book))
        for book_id in book_ids:
            self.recompute(book_id, now)
        logger.info("Recomputed popularity for %d books", len(book_ids))
        return len(book_ids)

    def rate_book(self, book_id: str, member_id: str, rating: int, now: Optional[datetime] = None) -> Review:
        """Record (or replace) a member's rating of a book and refresh its score."""
        now = now or utcnow()
        rating = parse_rating(rating)
        book = self.store.get_document(Book, book_id)
        if book is None:
            raise NotFoundError("book_not_found", f"Book {book_id} not found")
        if self.store.get_document(Member, member_id) is None:
            raise NotFoundError("member_not_found", f"Library member {member_id} not found")

        with self.store.session_scope():
            self.store.get_document(Book, book_id, for_update=True)
            existing = self.store.get_documents(
                Review, REVIEWS.book_id == book_id, REVIEWS.member_id == member_id, limit=1, for_update=True
            )
            if existing:
                review = existing[0]
                review.rating = rating
                review.created_at = now
            else:
                review = Review(
                    id=new_id("rev"),
                    school_id=book.school_id,
                    book_id=book_id,
                    member_id=member_id,
                    rating=rating,
                    created_at=now,
                )
            (review,) = self.store.commit(review)
            self.recompute(book_id, now)
        return review

    def recommend(self, member_id: str, limit: int = 10) -> List[Book]:
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise InvalidStateError("invalid_limit", f"Limit must be a positive whole number, got {limit!r}")
        member = self.store.get_document(Member, member_id)
        if member is None:
            raise NotFoundError("member_not_found", f"Library member {member_id} not found")

        available = (BOOKS.school_id == member.school_id, BOOKS.status == BookStatus.AVAILABLE)
        returned = self.store.get_documents(
            Transaction, TRANSACTIONS.member_id == member_id, TRANSACTIONS.status == TransactionStatus.RETURNED
        )
        if not returned:
            return self.store.get_documents(Book, *available, order_by=POPULARITY_ORDER, limit=limit)

        categories = Counter()
        for transaction in returned:
            book = self.store.get_document(Book, transaction.book_id)
            if book is not None:
                categories[book.category] += 1
        preferred = [
            category
            for category, _ in sorted(categories.items(), key=lambda item: (-item[1], item[0]))
        ][: self.settings.recommendation_categories]

        seen = {t.book_id for t in self.store.get_documents(Transaction, TRANSACTIONS.member_id == member_id)}
        return self.store.get_documents(
            Book,
            *available,
            BOOKS.category.in_(preferred),
            BOOKS.id.notin_(sorted(seen)),
            order_by=POPULARITY_ORDER,
            limit=limit,
        )
