import asyncio
import logging
import os
import uuid
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, TypeVar

from sqlalchemy import String, and_, cast, func, insert, or_, select, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from exceptions import InvalidRequestException, StoreUnavailableException
from metrics.schemas import LatestRow, SnapshotRow
from models.work_items import (
    LATEST_COLUMNS,
    SNAPSHOT_COLUMNS,
    Base,
    SyncRun,
    WorkItemLatest,
    WorkItemSnapshot,
)
from utils import (
    BATCH_SIZE,
    DEFAULT_SOURCE,
    _normalize_datetime,
    chunked,
    normalize_work_item_row,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_PAGE_LIMIT = 200
MAX_PAGE_LIMIT = 1000
DEFAULT_QUERY_TIMEOUT = 30.0


def detect_db_type(conn_string: str) -> str:
    """
    Detect database type from connection string.

    :param conn_string: Database connection string.
    :return: Database type ('postgres' or 'sqlite').
    :raises ValueError: If database type cannot be determined.
    """
    if not conn_string:
        raise ValueError("Connection string is required")

    conn_lower = conn_string.lower()

    # PostgreSQL connection strings
    if conn_lower.startswith("postgresql://") or conn_lower.startswith("postgres://"):
        return "postgres"
    if conn_lower.startswith("postgresql+asyncpg://"):
        return "postgres"

    # SQLite connection strings
    if conn_lower.startswith("sqlite://") or conn_lower.startswith(
        "sqlite+aiosqlite://"
    ):
        return "sqlite"

    # Extract scheme for better error reporting
    scheme = conn_string.split("://", 1)[0] if "://" in conn_string else "unknown"
    raise ValueError(
        f"Could not detect database type from connection string. "
        f"Supported: postgresql://, postgres://, sqlite://, "
        f"or variations with async drivers. Got scheme: '{scheme}'"
    )


def async_db_url(conn_string: str) -> str:
    """Rewrite plain postgres/sqlite URLs to their async driver variants."""
    db_type = detect_db_type(conn_string)
    scheme, rest = conn_string.split("://", 1)
    if db_type == "postgres" and "+" not in scheme:
        return f"postgresql+asyncpg://{rest}"
    if db_type == "sqlite" and "+" not in scheme:
        return f"sqlite+aiosqlite://{rest}"
    return conn_string


def query_timeout_from_env() -> float:
    raw = os.getenv("STORE_QUERY_TIMEOUT", "")
    try:
        value = float(raw) if raw else DEFAULT_QUERY_TIMEOUT
    except ValueError:
        logger.warning("Invalid STORE_QUERY_TIMEOUT %r, using default", raw)
        value = DEFAULT_QUERY_TIMEOUT
    return value if value > 0 else DEFAULT_QUERY_TIMEOUT


def create_store(
    conn_string: str,
    db_type: Optional[str] = None,
    echo: bool = False,
    query_timeout: Optional[float] = None,
) -> "SQLAlchemyStore":
    """
    Create a storage backend based on the connection string.

    :param conn_string: Database connection string.
    :param db_type: Optional explicit database type ('postgres', 'sqlite').
                   If not provided, it will be auto-detected from conn_string.
    :param echo: Whether to echo SQL statements.
    :param query_timeout: Read timeout in seconds (defaults to STORE_QUERY_TIMEOUT).
    :return: A SQLAlchemyStore instance.
    """
    if db_type is None:
        db_type = detect_db_type(conn_string)

    db_type = db_type.lower()

    if db_type in ("postgres", "postgresql", "sqlite"):
        return SQLAlchemyStore(
            async_db_url(conn_string), echo=echo, query_timeout=query_timeout
        )
    raise ValueError(
        f"Unsupported database type: {db_type}. Supported types: postgres, sqlite"
    )


@dataclass(frozen=True)
class SyncRunResult:
    run_id: uuid.UUID
    run_at: datetime
    source: str
    count: int


@dataclass(frozen=True)
class WorkItemQuery:
    q: Optional[str] = None
    release: Optional[str] = None
    assigned_to_upn: Optional[str] = None
    state: Optional[str] = None
    type: Optional[str] = None
    feature: Optional[str] = None
    changed_from: Optional[datetime] = None
    changed_to: Optional[datetime] = None
    limit: int = DEFAULT_PAGE_LIMIT
    offset: int = 0


@dataclass(frozen=True)
class LatestPage:
    total: int
    limit: int
    offset: int
    rollup: Dict[str, int]
    rows: List[Dict[str, Any]] = field(default_factory=list)


def _row_to_dict(mapping: Mapping[str, Any]) -> Dict[str, Any]:
    """Copy a result row, normalizing datetimes to aware UTC."""
    data: Dict[str, Any] = {}
    for key, value in mapping.items():
        if isinstance(value, datetime):
            value = _normalize_datetime(value)
        data[key] = value
    return data


class SQLAlchemyStore:
    """
    Async snapshot store backed by SQLAlchemy.

    Every operation opens its own session, so reads may run concurrently. The
    only write path, ``append_run``, runs in a single transaction.
    """

    def __init__(
        self,
        conn_string: str,
        echo: bool = False,
        query_timeout: Optional[float] = None,
    ) -> None:
        engine_kwargs: Dict[str, Any] = {"echo": echo}

        # Only add pooling parameters for databases that support them
        if "sqlite" not in conn_string.lower():
            engine_kwargs.update(
                {
                    "pool_size": 20,
                    "max_overflow": 30,
                    "pool_pre_ping": True,
                    "pool_recycle": 3600,
                }
            )

        self.engine = create_async_engine(conn_string, **engine_kwargs)
        self.session_factory = sessionmaker(
            self.engine, expire_on_commit=False, class_=AsyncSession
        )
        self.query_timeout = (
            float(query_timeout) if query_timeout else query_timeout_from_env()
        )

    def _insert_for_dialect(self, model: Any):
        dialect = self.engine.dialect.name
        if dialect == "sqlite":
            return sqlite_insert(model)
        if dialect in ("postgres", "postgresql"):
            return pg_insert(model)
        raise ValueError(f"Unsupported SQL dialect for upserts: {dialect}")

    async def _upsert_many(
        self,
        session: AsyncSession,
        model: Any,
        rows: List[Dict[str, Any]],
        conflict_columns: List[str],
        update_columns: List[str],
    ) -> None:
        if not rows:
            return

        stmt = self._insert_for_dialect(model)
        stmt = stmt.on_conflict_do_update(
            index_elements=[getattr(model, col) for col in conflict_columns],
            set_={col: getattr(stmt.excluded, col) for col in update_columns},
        )
        await session.execute(stmt, rows)

    async def __aenter__(self) -> "SQLAlchemyStore":
        # Create tables for SQLite automatically
        if "sqlite" in str(self.engine.url):
            await self.ensure_tables()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def ensure_tables(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()

    async def _read(self, label: str, query: Callable[[], Awaitable[T]]) -> T:
        try:
            return await asyncio.wait_for(query(), timeout=self.query_timeout)
        except asyncio.TimeoutError as exc:
            logger.error("Store read %s timed out after %.1fs", label, self.query_timeout)
            raise StoreUnavailableException(
                f"{label} timed out after {self.query_timeout:g}s"
            ) from exc
        except SQLAlchemyError as exc:
            logger.error("Store read %s failed: %s", label, exc)
            raise StoreUnavailableException(f"{label} failed") from exc

    async def ping(self) -> bool:
        async def _query() -> bool:
            async with self.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                return result.scalar() == 1

        return await self._read("ping", _query)

    async def append_run(
        self,
        source: Optional[str],
        items: Sequence[Mapping[str, Any]],
        run_at: Optional[datetime] = None,
    ) -> SyncRunResult:
        """
        Record one ingestion run atomically.

        Creates the ``sync_runs`` row, one snapshot per item stamped with the
        run id and time, and upserts ``work_items_latest``. Either all of it
        becomes visible or, on any failure, none of it does.

        :raises InvalidRequestException: empty batch or a row without a valid id.
        :raises StoreUnavailableException: the transaction failed and was rolled back.
        """
        if not items:
            raise InvalidRequestException("rows array required")

        run_at = _normalize_datetime(run_at) or datetime.now(timezone.utc)
        source = (source or "").strip() or DEFAULT_SOURCE

        latest_rows: Dict[int, Dict[str, Any]] = {}
        duplicates = 0
        for raw in items:
            row = normalize_work_item_row(raw, source=source, synced_at=run_at)
            if row["work_item_id"] in latest_rows:
                duplicates += 1
            latest_rows[row["work_item_id"]] = row
        if duplicates:
            logger.warning(
                "Dropped %d duplicate work item rows from run (last occurrence wins)",
                duplicates,
            )

        rows = list(latest_rows.values())
        run_id = uuid.uuid4()
        snapshot_rows = [
            {
                "run_id": run_id,
                "snapshot_at": run_at,
                **{col: row[col] for col in SNAPSHOT_COLUMNS},
            }
            for row in rows
        ]
        update_columns = [col for col in LATEST_COLUMNS if col != "work_item_id"]

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    newest = (
                        await session.execute(select(func.max(WorkItemLatest.synced_at)))
                    ).scalar()
                    newest = _normalize_datetime(newest)
                    if newest is not None and newest > run_at:
                        logger.warning(
                            "Run at %s is older than newest synced_at %s; "
                            "latest state will regress for items in this batch",
                            run_at.isoformat(),
                            newest.isoformat(),
                        )

                    session.add(
                        SyncRun(
                            run_id=run_id,
                            run_at=run_at,
                            source=source,
                            item_count=len(rows),
                        )
                    )
                    await session.flush()

                    for chunk in chunked(snapshot_rows, BATCH_SIZE):
                        await session.execute(insert(WorkItemSnapshot), chunk)
                    for chunk in chunked(rows, BATCH_SIZE):
                        await self._upsert_many(
                            session,
                            WorkItemLatest,
                            chunk,
                            conflict_columns=["work_item_id"],
                            update_columns=update_columns,
                        )
        except SQLAlchemyError as exc:
            logger.error("Ingest of run %s rolled back: %s", run_id, exc)
            raise StoreUnavailableException("ingest failed; run rolled back") from exc

        logger.info(
            "Appended run %s: %d items from %s at %s",
            run_id,
            len(rows),
            source,
            run_at.isoformat(),
        )
        return SyncRunResult(run_id=run_id, run_at=run_at, source=source, count=len(rows))

    def _latest_conditions(self, query: WorkItemQuery) -> List[Any]:
        conditions: List[Any] = []
        if query.release:
            conditions.append(WorkItemLatest.release == query.release)
        if query.assigned_to_upn:
            conditions.append(WorkItemLatest.assigned_to_upn == query.assigned_to_upn)
        if query.state:
            conditions.append(WorkItemLatest.state == query.state)
        if query.type:
            conditions.append(WorkItemLatest.type == query.type)
        if query.feature:
            conditions.append(WorkItemLatest.feature.ilike(f"%{query.feature}%"))
        if query.changed_from is not None:
            conditions.append(
                WorkItemLatest.changed_date >= _normalize_datetime(query.changed_from)
            )
        if query.changed_to is not None:
            conditions.append(
                WorkItemLatest.changed_date <= _normalize_datetime(query.changed_to)
            )
        search = (query.q or "").strip()
        if search:
            pattern = f"%{search}%"
            conditions.append(
                or_(
                    WorkItemLatest.title.ilike(pattern),
                    WorkItemLatest.tags.ilike(pattern),
                    cast(WorkItemLatest.work_item_id, String).ilike(pattern),
                )
            )
        return conditions

    async def latest(self, query: Optional[WorkItemQuery] = None) -> LatestPage:
        """
        Page through current work item state.

        ``total`` and ``rollup`` cover every row matching the filters, not only
        the returned page.

        :raises InvalidRequestException: limit outside [1, 1000] or negative offset.
        """
        query = query or WorkItemQuery()
        if not 1 <= int(query.limit) <= MAX_PAGE_LIMIT:
            raise InvalidRequestException(
                f"limit must be between 1 and {MAX_PAGE_LIMIT}"
            )
        if int(query.offset) < 0:
            raise InvalidRequestException("offset must be >= 0")

        conditions = self._latest_conditions(query)
        where = and_(*conditions) if conditions else None

        def _filtered(stmt):
            return stmt.where(where) if where is not None else stmt

        async def _query() -> LatestPage:
            async with self.session_factory() as session:
                rollup_row = (
                    await session.execute(
                        _filtered(
                            select(
                                func.count().label("total"),
                                func.coalesce(func.sum(WorkItemLatest.dep_count), 0).label(
                                    "dep_total"
                                ),
                                func.coalesce(
                                    func.sum(WorkItemLatest.related_link_count), 0
                                ).label("rel_total"),
                                func.coalesce(
                                    func.sum(WorkItemLatest.open_dep_count), 0
                                ).label("open_dep_total"),
                                func.coalesce(
                                    func.sum(WorkItemLatest.open_related_count), 0
                                ).label("open_rel_total"),
                            ).select_from(WorkItemLatest)
                        )
                    )
                ).mappings().one()

                page = await session.execute(
                    _filtered(select(WorkItemLatest.__table__))
                    .order_by(
                        WorkItemLatest.changed_date.desc().nulls_last(),
                        WorkItemLatest.work_item_id.desc(),
                    )
                    .limit(int(query.limit))
                    .offset(int(query.offset))
                )
                rows = [_row_to_dict(r) for r in page.mappings().all()]

            rollup = {key: int(rollup_row[key] or 0) for key in rollup_row.keys()}
            total = rollup.pop("total")
            return LatestPage(
                total=total,
                limit=int(query.limit),
                offset=int(query.offset),
                rollup=rollup,
                rows=rows,
            )

        return await self._read("latest", _query)

    async def latest_for_release(self, release: str) -> List[LatestRow]:
        async def _query() -> List[LatestRow]:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(WorkItemLatest.__table__)
                    .where(WorkItemLatest.release == release)
                    .order_by(WorkItemLatest.work_item_id)
                )
                return [_row_to_dict(r) for r in result.mappings().all()]  # type: ignore[misc]

        return await self._read("latest_for_release", _query)

    async def release_run_bounds(
        self, release: str
    ) -> Tuple[Optional[datetime], Optional[datetime], int]:
        """Earliest and latest snapshot time for a release and its run count."""

        async def _query() -> Tuple[Optional[datetime], Optional[datetime], int]:
            async with self.session_factory() as session:
                row = (
                    await session.execute(
                        select(
                            func.min(WorkItemSnapshot.snapshot_at),
                            func.max(WorkItemSnapshot.snapshot_at),
                            func.count(func.distinct(WorkItemSnapshot.run_id)),
                        ).where(WorkItemSnapshot.release == release)
                    )
                ).one()
            return (
                _normalize_datetime(row[0]),
                _normalize_datetime(row[1]),
                int(row[2] or 0),
            )

        return await self._read("release_run_bounds", _query)

    async def snapshots_at(
        self, release: str, snapshot_times: Sequence[datetime]
    ) -> List[SnapshotRow]:
        times = sorted({_normalize_datetime(ts) for ts in snapshot_times if ts is not None})
        if not times:
            return []

        async def _query() -> List[SnapshotRow]:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(WorkItemSnapshot.__table__)
                    .where(
                        WorkItemSnapshot.release == release,
                        WorkItemSnapshot.snapshot_at.in_(times),
                    )
                    .order_by(WorkItemSnapshot.snapshot_at, WorkItemSnapshot.work_item_id)
                )
                return [_row_to_dict(r) for r in result.mappings().all()]  # type: ignore[misc]

        return await self._read("snapshots_at", _query)

    async def snapshots_for_release(
        self, release: str, since: Optional[datetime] = None
    ) -> List[SnapshotRow]:
        async def _query() -> List[SnapshotRow]:
            stmt = select(WorkItemSnapshot.__table__).where(
                WorkItemSnapshot.release == release
            )
            if since is not None:
                stmt = stmt.where(WorkItemSnapshot.snapshot_at >= _normalize_datetime(since))
            async with self.session_factory() as session:
                result = await session.execute(
                    stmt.order_by(WorkItemSnapshot.snapshot_at, WorkItemSnapshot.work_item_id)
                )
                return [_row_to_dict(r) for r in result.mappings().all()]  # type: ignore[misc]

        return await self._read("snapshots_for_release", _query)

    async def list_releases(self) -> List[Dict[str, Any]]:
        async def _query() -> List[Dict[str, Any]]:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(
                        WorkItemLatest.release.label("release"),
                        func.count().label("item_count"),
                        func.max(WorkItemLatest.synced_at).label("synced_at"),
                    )
                    .where(WorkItemLatest.release.is_not(None))
                    .group_by(WorkItemLatest.release)
                    .order_by(WorkItemLatest.release)
                )
                return [_row_to_dict(r) for r in result.mappings().all()]

        return await self._read("list_releases", _query)
