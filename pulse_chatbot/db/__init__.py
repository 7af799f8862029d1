from __future__ import annotations
from contextlib import contextmanager
import logging
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Generic,
    Iterator,
    Sequence,
    Type,
    TypeVar,
)
from sqlalchemy import (
    Engine,
    Select,
    create_engine,
    delete,
    event,
    select,
    func,
    asc,
    desc,
)
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import NullPool, StaticPool

if TYPE_CHECKING:
    from sqlalchemy import ColumnExpressionArgument

logger = logging.getLogger(__name__)

V = TypeVar("V", bound=Type)

SessionFactory = Callable[[], Session]


def _is_memory_url(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url


def create_db_engine(url: str, echo: bool = False) -> Engine:
    """
    Create the engine behind the local store.

    For SQLite the connection runs in WAL mode with foreign keys enforced, and
    transactions are started with an explicit BEGIN so that schema migrations
    are atomic along with the version row that records them.
    """
    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool if _is_memory_url(url) else NullPool,
        )

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_conn, connection_record):
            # hand transaction control to SQLAlchemy, see "begin" below
            dbapi_conn.isolation_level = None
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _do_begin(conn):
            conn.exec_driver_sql("BEGIN")

    else:
        engine = create_engine(url, echo=echo, poolclass=NullPool)

    logger.info(f"Database engine created for {engine.url.render_as_string(hide_password=True)}")
    return engine


def create_session_factory(engine: Engine) -> SessionFactory:
    return sessionmaker(engine, expire_on_commit=False)


class CRUDCapability(Generic[V]):
    resource_db: Type[V]

    def __init__(self, session_factory: SessionFactory) -> None:
        self.session_factory = session_factory

    def db_row_to_model(self, row: V) -> dict[str, Any]:
        return {field.name: getattr(row, field.name) for field in row.__table__.c}

    def db_rows_to_model_list(self, rows: Sequence[V]) -> list[dict[str, Any]]:
        return [self.db_row_to_model(r) for r in rows]

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """
        Yields a session that commits when the block exits cleanly and rolls
        back when it raises.
        """
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def use_session(self, session: Session | None) -> Iterator[Session]:
        # callers that pass a session own its transaction
        if session is not None:
            yield session
        else:
            with self.session_scope() as scoped:
                yield scoped

    def build_select(
        self,
        where: list["ColumnExpressionArgument[bool]"] | None = None,
        order_by: list[str] | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> Select:
        stmt = select(self.resource_db)
        if where is not None:
            stmt = stmt.where(*where)
        if order_by is not None:
            order_by_clauses = []
            for item in order_by:
                if item.startswith("-"):
                    column = getattr(self.resource_db, item[1:])
                    order_by_clauses.append(desc(column))
                else:
                    column = getattr(self.resource_db, item)
                    order_by_clauses.append(asc(column))
            stmt = stmt.order_by(*order_by_clauses)
        if limit is not None:
            stmt = stmt.limit(limit)
        if offset is not None:
            stmt = stmt.offset(offset)
        return stmt

    def list_resource(
        self,
        where: list["ColumnExpressionArgument[bool]"] | None = None,
        order_by: list[str] | None = None,
        limit: int | None = None,
        offset: int | None = None,
        session: Session | None = None,
    ) -> list[dict[str, Any]]:
        stmt = self.build_select(where, order_by, limit, offset)
        with self.use_session(session) as s:
            resources = s.scalars(stmt).all()
            return self.db_rows_to_model_list(resources)

    def get_resource(
        self,
        resource_id: Any | None,
        where: list["ColumnExpressionArgument[bool]"] | None = None,
        session: Session | None = None,
    ) -> dict[str, Any] | None:
        with self.use_session(session) as s:
            resource = self._find(s, resource_id, where)
            if resource is None:
                return None
            return self.db_row_to_model(resource)

    def create_resource(
        self,
        data: dict[str, Any],
        session: Session | None = None,
    ) -> dict[str, Any]:
        resource = self.resource_db(**data)  # type: ignore
        with self.use_session(session) as s:
            s.add(resource)
            s.flush()
            return self.db_row_to_model(resource)

    def update_resource(
        self,
        data: dict[str, Any] | None,
        resource_id: Any | None = None,
        where: list["ColumnExpressionArgument[bool]"] | None = None,
        session: Session | None = None,
    ) -> dict[str, Any] | None:
        with self.use_session(session) as s:
            resource = self._find(s, resource_id, where)
            if resource is None:
                return None
            if data is not None:
                for k in data:
                    setattr(resource, k, data[k])
            s.flush()
            return self.db_row_to_model(resource)

    def delete_where(
        self,
        where: list["ColumnExpressionArgument[bool]"],
        session: Session | None = None,
    ) -> int:
        """Bulk delete; returns the number of rows removed."""
        with self.use_session(session) as s:
            result = s.execute(delete(self.resource_db).where(*where))
            return result.rowcount or 0

    def count_resource(
        self,
        where: list["ColumnExpressionArgument[bool]"] | None = None,
        session: Session | None = None,
    ) -> int:
        stmt = select(func.count()).select_from(self.resource_db)
        if where is not None:
            stmt = stmt.where(*where)
        with self.use_session(session) as s:
            return s.execute(stmt).scalar_one()

    def _find(self, session: Session, resource_id: Any | None, where) -> V | None:
        stmt = select(self.resource_db)
        if resource_id is not None:
            pk = self.resource_db.__table__.primary_key.columns.values()[0]
            stmt = stmt.where(pk == resource_id)
        if where is not None:
            stmt = stmt.where(*where)
        return session.scalars(stmt).first()


def like_condition(column, search_value: str):
    """Case-insensitive substring match with LIKE wildcards escaped."""
    escaped = (
        search_value.replace("\\", "\\\\")
        .replace("%", "\\%")
        .replace("_", "\\_")
    )
    return column.ilike(f"%{escaped}%", escape="\\")
