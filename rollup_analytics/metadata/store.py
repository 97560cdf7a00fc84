"""
Rollup Metadata Store

Persists materialized-view and continuous-query definitions and keeps
materialized views fresh across processes.

Freshness protocol:
- `acquire_refresh` takes an exclusive row lock (SELECT ... FOR UPDATE) on
  the view's catalog row and checks staleness under the lock
- a stale view yields a RefreshTicket that owns the locked connection
- the ticket is consumed exactly once: `commit(t)` writes the new
  freshness timestamp and unlocks, `rollback()` unlocks without writing
- an unconsumed ticket is rolled back when its lease runs out

Only the database lock coordinates refreshers; nothing here relies on
in-process mutual exclusion.
"""

import asyncio
import dataclasses
import json
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, List, Optional, Set

import structlog
from sqlalchemy import delete, or_, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    AsyncTransaction,
    async_sessionmaker,
)

from rollup_analytics.cache import CacheManager
from rollup_analytics.config import get_settings
from rollup_analytics.database.models import (
    Base,
    ContinuousQueryRecord,
    MaterializedViewRecord,
)
from rollup_analytics.errors import (
    AlreadyExistsError,
    InternalError,
    InvalidRequestError,
    NotExistsError,
    RefreshLeaseExpiredError,
)
from rollup_analytics.metadata.types import ContinuousQuery, MaterializedView, ViewOptions
from rollup_analytics.metrics import MATERIALIZED_VIEW_REFRESHES

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _from_epoch(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _to_epoch(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def _to_view(record: MaterializedViewRecord) -> MaterializedView:
    return MaterializedView(
        table_name=record.table_name,
        name=record.name,
        query=record.query,
        update_interval=(
            timedelta(milliseconds=record.update_interval)
            if record.update_interval is not None else None
        ),
        incremental=bool(record.incremental),
        options=ViewOptions.from_json(record.options),
        last_update=_from_epoch(record.last_updated),
    )


def _to_continuous_query(record: ContinuousQueryRecord) -> ContinuousQuery:
    return ContinuousQuery(
        table_name=record.table_name,
        name=record.name,
        query=record.query,
        partition_keys=json.loads(record.partition_keys) if record.partition_keys else [],
        options=ViewOptions.from_json(record.options),
    )


class RefreshTicket:
    """
    Ownership of one materialized-view refresh.

    Holds the connection whose transaction carries the row lock. Consume it
    exactly once with `commit` or `rollback`; used as an async context
    manager it rolls back if the block exits without consuming it.
    """

    def __init__(
        self,
        store: "MetadataStore",
        project: str,
        view: MaterializedView,
        connection: AsyncConnection,
        transaction: AsyncTransaction,
        lease_seconds: float,
    ):
        self.project = project
        self.view = view
        self._store = store
        self._connection = connection
        self._transaction = transaction
        self._consumed = False
        self._released = False
        self._expired = False
        self._guard = asyncio.Lock()
        self._expiry_task: Optional[asyncio.Task] = None
        self._lease_handle = asyncio.get_running_loop().call_later(lease_seconds, self._on_lease_expired)

    @property
    def active(self) -> bool:
        """True while the row lock is held"""
        return not self._released

    @property
    def expired(self) -> bool:
        return self._expired

    def _consume(self) -> None:
        if self._consumed:
            raise RuntimeError(f"Refresh ticket for {self.project}.{self.view.table_name} already consumed")
        self._consumed = True

    async def commit(self, last_update: datetime) -> None:
        """Persist the refresh timestamp and release the lock."""
        if not isinstance(last_update, datetime):
            raise TypeError(f"Refresh timestamp must be a datetime, got {type(last_update).__name__}")
        self._consume()
        epoch = _to_epoch(last_update)
        async with self._guard:
            if self._released:
                raise RefreshLeaseExpiredError(
                    f"Refresh lease for {self.project}.{self.view.table_name} expired before commit"
                )
            try:
                await self._connection.execute(
                    update(MaterializedViewRecord)
                    .where(
                        MaterializedViewRecord.project == self.project,
                        MaterializedViewRecord.table_name == self.view.table_name,
                        or_(
                            MaterializedViewRecord.last_updated.is_(None),
                            MaterializedViewRecord.last_updated <= epoch,
                        ),
                    )
                    .values(last_updated=epoch)
                )
                await self._transaction.commit()
            except SQLAlchemyError as e:
                MATERIALIZED_VIEW_REFRESHES.labels(outcome="failed").inc()
                logger.error(
                    "Failed to record materialized view refresh",
                    project=self.project,
                    table=self.view.table_name,
                    error=str(e),
                )
                raise InternalError(f"Failed to record refresh: {e}") from e
            finally:
                await self._release()

        if self.view.last_update is None or self.view.last_update < last_update:
            self.view.last_update = last_update
        self._store.invalidate_materialized_view(self.project, self.view.table_name)
        MATERIALIZED_VIEW_REFRESHES.labels(outcome="committed").inc()
        logger.info(
            "Materialized view refreshed",
            project=self.project,
            table=self.view.table_name,
            last_update=last_update.isoformat(),
        )

    async def rollback(self) -> None:
        """Release the lock without writing."""
        self._consume()
        async with self._guard:
            if not self._released:
                await self._release()
        MATERIALIZED_VIEW_REFRESHES.labels(outcome="abandoned").inc()
        logger.debug("Materialized view refresh abandoned", project=self.project, table=self.view.table_name)

    async def _release(self) -> None:
        self._lease_handle.cancel()
        try:
            if self._transaction.is_active:
                await self._transaction.rollback()
        finally:
            self._released = True
            await self._connection.close()

    def _on_lease_expired(self) -> None:
        self._expiry_task = asyncio.ensure_future(self._expire())

    async def _expire(self) -> None:
        async with self._guard:
            if self._released:
                return
            self._expired = True
            MATERIALIZED_VIEW_REFRESHES.labels(outcome="expired").inc()
            logger.warning(
                "Refresh lease expired, releasing row lock",
                project=self.project,
                table=self.view.table_name,
            )
            await self._release()

    async def __aenter__(self) -> "RefreshTicket":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if not self._consumed:
            await self.rollback()
        return False


class MetadataStore:
    """
    Catalog of materialized views and continuous queries.

    Example:
        store = MetadataStore(get_engine())
        await store.setup()
        async with await store.acquire_refresh("demo", view) as ticket:
            ...
    """

    def __init__(
        self,
        engine: AsyncEngine,
        clock: Callable[[], datetime] = _utcnow,
        cache_ttl: Optional[float] = None,
        lease_seconds: Optional[float] = None,
    ):
        settings = get_settings()
        self._engine = engine
        self._clock = clock
        self._session_factory = async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)
        self._views_cache = CacheManager(
            "materialized_views",
            default_ttl=cache_ttl if cache_ttl is not None else settings.metadata.cache_ttl_seconds,
        )
        self._lease_seconds = lease_seconds if lease_seconds is not None else settings.metadata.refresh_lease_seconds
        self._pending_refreshes: Set[asyncio.Task] = set()

    async def setup(self) -> None:
        """Create the catalog tables if they do not exist."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Metadata catalog ready")

    # =========================================================================
    # MATERIALIZED VIEWS
    # =========================================================================

    async def create_materialized_view(self, project: str, view: MaterializedView) -> None:
        record = MaterializedViewRecord(
            project=project,
            name=view.name,
            table_name=view.table_name,
            query=view.query,
            update_interval=(
                int(view.update_interval.total_seconds() * 1000)
                if view.update_interval is not None else None
            ),
            incremental=view.incremental,
            options=view.options.to_json(),
        )
        try:
            async with self._session_factory() as session:
                session.add(record)
                await session.commit()
        except IntegrityError as e:
            if await self._materialized_view_exists(project, view.table_name):
                raise AlreadyExistsError("Materialized view") from e
            raise InternalError(f"Failed to create materialized view: {e}") from e
        except SQLAlchemyError as e:
            raise InternalError(f"Failed to create materialized view: {e}") from e
        finally:
            self.invalidate_materialized_view(project, view.table_name)

        logger.info("Materialized view created", project=project, table=view.table_name)

    async def get_materialized_view(self, project: str, table_name: str) -> MaterializedView:
        """Cached lookup; raises NotExistsError when no row matches."""

        async def load() -> MaterializedView:
            async with self._session_factory() as session:
                record = (await session.execute(
                    select(MaterializedViewRecord).where(
                        MaterializedViewRecord.project == project,
                        MaterializedViewRecord.table_name == table_name,
                    )
                )).scalar_one_or_none()
            if record is None:
                raise NotExistsError("Materialized view")
            return _to_view(record)

        return await self._views_cache.get_or_load((project, table_name), load)

    async def get_materialized_views(self, project: str) -> List[MaterializedView]:
        async with self._session_factory() as session:
            records = (await session.execute(
                select(MaterializedViewRecord)
                .where(MaterializedViewRecord.project == project)
                .order_by(MaterializedViewRecord.table_name)
            )).scalars().all()
        return [_to_view(record) for record in records]

    async def delete_materialized_view(self, project: str, table_name: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                delete(MaterializedViewRecord).where(
                    MaterializedViewRecord.project == project,
                    MaterializedViewRecord.table_name == table_name,
                )
            )
            await session.commit()
        self.invalidate_materialized_view(project, table_name)
        logger.info("Materialized view deleted", project=project, table=table_name)

    def invalidate_materialized_view(self, project: str, table_name: str) -> None:
        self._views_cache.delete((project, table_name))

    async def _materialized_view_exists(self, project: str, table_name: str) -> bool:
        async with self._session_factory() as session:
            found = (await session.execute(
                select(MaterializedViewRecord.table_name).where(
                    MaterializedViewRecord.project == project,
                    MaterializedViewRecord.table_name == table_name,
                )
            )).first()
        return found is not None

    # =========================================================================
    # FRESHNESS PROTOCOL
    # =========================================================================

    async def acquire_refresh(self, project: str, view: MaterializedView) -> Optional[RefreshTicket]:
        """
        Lock the view's catalog row and decide whether it needs a refresh.

        Returns:
            None when the view is fresh (lock already released), otherwise
            a RefreshTicket holding the lock

        Raises:
            NotExistsError: no catalog row for the view
        """
        # The ticket tracks its own copy; the caller's view may be a cached instance
        view = dataclasses.replace(view)
        try:
            connection = await self._engine.connect()
        except SQLAlchemyError as e:
            raise InternalError(f"Failed to open refresh connection: {e}") from e

        try:
            transaction = await connection.begin()
            if connection.dialect.name == "postgresql":
                # Server-side backstop: a dead client cannot hold the lock past the lease
                lease_ms = int(self._lease_seconds * 1000)
                await connection.execute(text(f"SET LOCAL idle_in_transaction_session_timeout = {lease_ms}"))

            row = (await connection.execute(
                select(MaterializedViewRecord.last_updated)
                .where(
                    MaterializedViewRecord.project == project,
                    MaterializedViewRecord.table_name == view.table_name,
                )
                .with_for_update()
            )).first()
            if row is None:
                raise NotExistsError("Materialized view")

            view.last_update = _from_epoch(row.last_updated)
            if not view.needs_update(self._clock()):
                await transaction.rollback()
                await connection.close()
                MATERIALIZED_VIEW_REFRESHES.labels(outcome="fresh").inc()
                logger.debug("Materialized view is fresh", project=project, table=view.table_name)
                return None
        except SQLAlchemyError as e:
            await connection.close()
            raise InternalError(f"Failed to lock materialized view: {e}") from e
        except BaseException:
            await connection.close()
            raise

        MATERIALIZED_VIEW_REFRESHES.labels(outcome="acquired").inc()
        logger.info("Materialized view refresh acquired", project=project, table=view.table_name)
        return RefreshTicket(self, project, view, connection, transaction, self._lease_seconds)

    async def update_materialized_view(
        self,
        project: str,
        view: MaterializedView,
        completion: Awaitable[datetime],
    ) -> bool:
        """
        Run the freshness protocol for a view.

        Returns False without writing when the view is fresh. Otherwise
        returns True at once: the caller owns the refresh and must resolve
        `completion` with the refresh timestamp (or fail it). The row lock is
        held until then.
        """
        ticket = await self.acquire_refresh(project, view)
        if ticket is None:
            return False

        task = asyncio.ensure_future(self._finish_refresh(ticket, completion))
        self._pending_refreshes.add(task)
        task.add_done_callback(self._pending_refreshes.discard)
        return True

    async def _finish_refresh(self, ticket: RefreshTicket, completion: Awaitable[datetime]) -> None:
        try:
            last_update = await completion
        except asyncio.CancelledError:
            await ticket.rollback()
            raise
        except Exception as e:
            # The failure belongs to whoever awaits `completion`; only the lock is ours
            logger.warning(
                "Materialized view refresh failed, lock released",
                project=ticket.project,
                table=ticket.view.table_name,
                error=str(e),
            )
            await ticket.rollback()
            return

        if not isinstance(last_update, datetime):
            logger.warning(
                "Materialized view refresh resolved without a timestamp, lock released",
                project=ticket.project,
                table=ticket.view.table_name,
                value=repr(last_update),
            )
            await ticket.rollback()
            return

        try:
            await ticket.commit(last_update)
        except InternalError as e:
            logger.error(
                "Materialized view refresh could not be recorded",
                project=ticket.project,
                table=ticket.view.table_name,
                error=str(e),
            )

    async def drain(self) -> None:
        """Wait for background refresh completions started by update_materialized_view."""
        if self._pending_refreshes:
            await asyncio.gather(*list(self._pending_refreshes), return_exceptions=True)

    # =========================================================================
    # CONTINUOUS QUERIES
    # =========================================================================

    async def create_continuous_query(self, project: str, query: ContinuousQuery) -> None:
        record = ContinuousQueryRecord(
            project=project,
            name=query.name,
            table_name=query.table_name,
            query=query.query,
            partition_keys=json.dumps(query.partition_keys),
            options=query.options.to_json(),
        )
        try:
            async with self._session_factory() as session:
                session.add(record)
                await session.commit()
        except SQLAlchemyError as e:
            try:
                await self.get_continuous_query(project, query.table_name)
            except NotExistsError:
                raise InvalidRequestError(f"Failed to create continuous query: {e}") from e
            raise AlreadyExistsError("Continuous query") from e

        logger.info("Continuous query created", project=project, table=query.table_name)

    async def get_continuous_query(self, project: str, table_name: str) -> ContinuousQuery:
        async with self._session_factory() as session:
            record = (await session.execute(
                select(ContinuousQueryRecord).where(
                    ContinuousQueryRecord.project == project,
                    ContinuousQueryRecord.table_name == table_name,
                )
            )).scalar_one_or_none()
        if record is None:
            raise NotExistsError(f"Continuous query table continuous.{table_name}")
        return _to_continuous_query(record)

    async def get_continuous_queries(self, project: str) -> List[ContinuousQuery]:
        async with self._session_factory() as session:
            records = (await session.execute(
                select(ContinuousQueryRecord)
                .where(ContinuousQueryRecord.project == project)
                .order_by(ContinuousQueryRecord.table_name)
            )).scalars().all()
        return [_to_continuous_query(record) for record in records]

    async def delete_continuous_query(self, project: str, table_name: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                delete(ContinuousQueryRecord).where(
                    ContinuousQueryRecord.project == project,
                    ContinuousQueryRecord.table_name == table_name,
                )
            )
            await session.commit()
        logger.info("Continuous query deleted", project=project, table=table_name)
