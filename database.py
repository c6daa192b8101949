"""
Catalog Store backed by SQLAlchemy.

Each Pydantic record type gets one table (table name is the lowercase model
name), with a column per model field. Nested values (privileges, class sets,
metadata) are stored as JSON and money as exact decimal text.

Every read and write runs inside ``session_scope``. Scopes opened while one
is already active on the same thread join it, so an operation that wraps its
reads, checks and writes in one scope commits or rolls back as a unit. Rows
read with ``for_update=True`` stay locked until the outermost scope ends
(``SELECT ... FOR UPDATE``). SQLite has no row locks, so there every
transaction starts with ``BEGIN IMMEDIATE`` and writers queue on the file.

``commit`` compare-and-sets each document's ``version``: a document read at
an older version than the stored one raises ``ConflictError`` and the whole
scope is rolled back.
"""

import logging
import typing
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Set, Type, TypeVar

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    event,
    func,
    insert,
    select,
    update,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, scoped_session, sessionmaker
from sqlalchemy.types import TypeDecorator

from errors import ConflictError, UpstreamUnavailableError
from schemas import Book, Fine, Member, Record, Reservation, Review, Transaction

logger = logging.getLogger("library.database")

R = TypeVar("R", bound=Record)

DEFAULT_DATABASE_URL = "sqlite:///library.db"
INDEXED_FIELDS = {"school_id", "book_id", "member_id", "status"}

metadata = MetaData()


class Money(TypeDecorator):
    """Decimal amounts kept as text so no backend rounds them through float."""

    impl = String(32)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(value)

    def process_result_value(self, value, dialect):
        return None if value is None else Decimal(value)


def collection_name(model) -> str:
    if not isinstance(model, type):
        model = type(model)
    return model.__name__.lower()


def _column_type(annotation):
    if typing.get_origin(annotation) is typing.Union:
        args = [a for a in typing.get_args(annotation) if a is not type(None)]
        if len(args) == 1:
            annotation = args[0]
    if annotation is bool:
        return Boolean()
    if annotation is int:
        return Integer()
    if annotation is Decimal:
        return Money()
    if annotation is datetime:
        return DateTime()
    if annotation is str:
        return String()
    if isinstance(annotation, type) and issubclass(annotation, Enum):
        return SAEnum(annotation, native_enum=False, values_callable=lambda members: [m.value for m in members])
    return JSON()


def _build_table(model: Type[Record]) -> Table:
    table_columns = [Column("id", String(64), primary_key=True)]
    for name, field in model.model_fields.items():
        if name == "id":
            continue
        table_columns.append(Column(name, _column_type(field.annotation), index=name in INDEXED_FIELDS))
    return Table(collection_name(model), metadata, *table_columns)


TABLES: Dict[type, Table] = {model: _build_table(model) for model in (Book, Member, Transaction, Reservation, Fine, Review)}


def table_of(model) -> Table:
    if not isinstance(model, type):
        model = type(model)
    return TABLES[model]


def columns(model):
    """Column collection of ``model``'s table, for building query criteria."""
    return table_of(model).c


def _json_fields(model) -> Set[str]:
    return {c.name for c in table_of(model).columns if isinstance(c.type, JSON)}


def to_row(doc: Record) -> Dict[str, Any]:
    json_fields = _json_fields(doc)
    row = doc.model_dump(exclude=json_fields)
    row.update(doc.model_dump(mode="json", include=json_fields))
    return row


def from_row(model: Type[R], row) -> R:
    return model.model_validate(dict(row._mapping))


def _begin_immediate(engine) -> None:
    # pysqlite's own BEGIN is deferred; take the write lock when the transaction starts
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class CatalogStore:
    def __init__(self, url: str = DEFAULT_DATABASE_URL, **engine_options) -> None:
        if url.startswith("sqlite"):
            engine_options.setdefault("connect_args", {"timeout": 30, "check_same_thread": False})
        self.engine = create_engine(url, **engine_options)
        if self.engine.dialect.name == "sqlite":
            _begin_immediate(self.engine)
        metadata.create_all(self.engine)
        self._sessions = scoped_session(sessionmaker(bind=self.engine, expire_on_commit=False))
        self._closed = False
        logger.info("Catalog store ready on %s", self.engine.url.render_as_string(hide_password=True))

    def close(self) -> None:
        self._closed = True
        self._sessions.remove()
        self.engine.dispose()

    def _ensure_open(self) -> None:
        if self._closed:
            raise UpstreamUnavailableError("catalog_store_unavailable", "Catalog store is not available")

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Run the block in this thread's transaction, opening one if needed."""
        self._ensure_open()
        session = self._sessions()
        depth = session.info.get("depth", 0)
        session.info["depth"] = depth + 1
        try:
            yield session
            if depth == 0:
                session.commit()
        except OperationalError as exc:
            if depth == 0:
                session.rollback()
            logger.error("Catalog store failure: %s", exc.orig)
            raise UpstreamUnavailableError("catalog_store_unavailable", "Catalog store failed") from exc
        except BaseException:
            if depth == 0:
                session.rollback()
            raise
        finally:
            session.info["depth"] = depth
            if depth == 0:
                self._sessions.remove()

    # ----------------------
    # Reads
    # ----------------------

    def get_document(self, model: Type[R], doc_id: str, for_update: bool = False) -> Optional[R]:
        table = table_of(model)
        stmt = select(table).where(table.c.id == doc_id)
        if for_update:
            stmt = stmt.with_for_update()
        with self.session_scope() as session:
            row = session.execute(stmt).first()
        return from_row(model, row) if row is not None else None

    def get_documents(
        self,
        model: Type[R],
        *criteria,
        order_by=(),
        limit: Optional[int] = None,
        for_update: bool = False,
    ) -> List[R]:
        table = table_of(model)
        stmt = select(table).where(*criteria).order_by(*order_by)
        if limit is not None:
            stmt = stmt.limit(limit)
        if for_update:
            stmt = stmt.with_for_update()
        with self.session_scope() as session:
            rows = session.execute(stmt).all()
        return [from_row(model, row) for row in rows]

    def count_documents(self, model: Type[R], *criteria) -> int:
        stmt = select(func.count()).select_from(table_of(model)).where(*criteria)
        with self.session_scope() as session:
            return session.execute(stmt).scalar_one()

    def all_ids(self, model: Type[R]) -> List[str]:
        table = table_of(model)
        with self.session_scope() as session:
            return list(session.execute(select(table.c.id).order_by(table.c.id)).scalars())

    # ----------------------
    # Writes
    # ----------------------

    def create_document(self, doc: R) -> str:
        self.commit(doc)
        return doc.id

    def commit(self, *docs: Record) -> List[Record]:
        """Write ``docs`` in one transaction, compare-and-setting each one's version."""
        keys = [(collection_name(d), d.id) for d in docs]
        if len(set(keys)) != len(keys):
            raise ValueError("A document may appear only once per commit")

        committed = []
        with self.session_scope() as session:
            for (name, doc_id), doc in zip(keys, docs):
                table = table_of(doc)
                row = to_row(doc)
                row["version"] = doc.version + 1
                if doc.version == 0:
                    try:
                        session.execute(insert(table).values(**row))
                    except IntegrityError as exc:
                        raise ConflictError("duplicate_id", f"{name} {doc_id} already exists") from exc
                else:
                    result = session.execute(
                        update(table).where(table.c.id == doc_id, table.c.version == doc.version).values(**row)
                    )
                    if result.rowcount != 1:
                        logger.warning("Stale write rejected for %s %s (read at v%s)", name, doc_id, doc.version)
                        raise ConflictError("stale_write", f"{name} {doc_id} was modified concurrently")
                committed.append(doc.model_copy(update={"version": doc.version + 1}, deep=True))
        return committed
