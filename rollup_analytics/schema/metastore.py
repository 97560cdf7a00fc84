"""
Collection Schema Cache

Caches the collections of each project and the fields of each collection,
and evolves collection tables when events arrive with new fields.

- Entries expire after a fixed TTL and reload lazily (single-flight)
- Schema changes run in one transaction, then refresh the cache and notify
  observers
- A table or column created concurrently by another writer is not an
  error: the change is retried against the catalog as it now stands
"""

from typing import Dict, Iterable, List, Optional, Protocol, Set

import structlog
from sqlalchemy import inspect, text
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from rollup_analytics.cache import CacheManager
from rollup_analytics.config import get_settings
from rollup_analytics.errors import InternalError, InvalidRequestError, NotExistsError
from rollup_analytics.metrics import SCHEMA_CHANGES
from rollup_analytics.schema.types import SchemaField, from_sql_type, to_sql
from rollup_analytics.validation import check_project, quote_identifier

logger = structlog.get_logger(__name__)

# Syntax error / reserved name collision
_RESERVED_NAME_SQLSTATES = {"42601", "42939"}
# duplicate_column / duplicate_table
_ALREADY_EXISTS_SQLSTATES = {"42701", "42P07"}
_SYSTEM_SCHEMAS = {"information_schema", "public"}


class SchemaObserver(Protocol):
    """Receives schema change notifications after they commit"""

    def on_create_collection(self, project: str, collection: str, fields: List[SchemaField]) -> None:
        ...

    def on_create_collection_fields(self, project: str, collection: str, fields: List[SchemaField]) -> None:
        ...


def _sqlstate(error: DBAPIError) -> Optional[str]:
    orig = error.orig
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def _is_already_exists(error: DBAPIError) -> bool:
    if _sqlstate(error) in _ALREADY_EXISTS_SQLSTATES:
        return True
    message = str(error.orig).lower()
    return "already exists" in message or "duplicate column" in message


class SchemaMetastore:
    """
    Project catalog with expiring caches.

    Example:
        metastore = SchemaMetastore(get_engine())
        fields = await metastore.get_or_create_collection_fields(
            "demo", "pageview", {SchemaField("url", FieldType.STRING)}
        )
    """

    def __init__(
        self,
        engine: AsyncEngine,
        cache_ttl: Optional[float] = None,
        max_create_retries: Optional[int] = None,
    ):
        settings = get_settings()
        ttl = cache_ttl if cache_ttl is not None else settings.schema_cache.cache_ttl_seconds
        self._engine = engine
        self._collection_cache = CacheManager("collections", default_ttl=ttl)
        self._schema_cache = CacheManager("collection_schema", default_ttl=ttl)
        self._max_create_retries = (
            max_create_retries if max_create_retries is not None
            else settings.schema_cache.max_create_retries
        )
        self._observers: List[SchemaObserver] = []

    def add_observer(self, observer: SchemaObserver) -> None:
        self._observers.append(observer)

    # =========================================================================
    # READS
    # =========================================================================

    async def get_collection_names(self, project: str) -> Set[str]:
        """Collections of a project; tables starting with '_' are internal."""

        async def load() -> Set[str]:
            async with self._engine.connect() as conn:
                tables = await conn.run_sync(
                    lambda sync_conn: inspect(sync_conn).get_table_names(schema=project)
                )
            return {table for table in tables if not table.startswith("_")}

        return await self._collection_cache.get_or_load(project, load)

    async def get_collection(self, project: str, collection: str) -> List[SchemaField]:
        """Fields of a collection, empty when it does not exist."""

        async def load() -> List[SchemaField]:
            async with self._engine.connect() as conn:
                return await self._fetch_schema(conn, project, collection)

        return await self._schema_cache.get_or_load((project, collection), load)

    async def get_collections(self, project: str) -> Dict[str, List[SchemaField]]:
        names = await self.get_collection_names(project)
        return {name: await self.get_collection(project, name) for name in sorted(names)}

    async def get_projects(self) -> Set[str]:
        async with self._engine.connect() as conn:
            schemas = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_schema_names())
        return {
            schema for schema in schemas
            if schema not in _SYSTEM_SCHEMAS and not schema.startswith("pg_")
        }

    async def _fetch_schema(self, conn: AsyncConnection, project: str, collection: str) -> List[SchemaField]:
        def read(sync_conn) -> List[SchemaField]:
            inspector = inspect(sync_conn)
            if not inspector.has_table(collection, schema=project):
                return []
            fields = []
            for column in inspector.get_columns(collection, schema=project):
                field_type = from_sql_type(column["type"])
                if field_type is None:
                    continue
                fields.append(SchemaField(column["name"], field_type))
            return fields

        return await conn.run_sync(read)

    # =========================================================================
    # SCHEMA EVOLUTION
    # =========================================================================

    async def get_or_create_collection_fields(
        self,
        project: str,
        collection: str,
        fields: Iterable[SchemaField],
    ) -> List[SchemaField]:
        """
        Make sure a collection has the requested fields.

        Creates the collection when missing, otherwise adds only the missing
        columns. Returns the collection's complete field list.

        Raises:
            NotExistsError: the project schema does not exist
            InvalidRequestError: a field name collides with a reserved word
        """
        check_project(project)
        requested = list({f.name: f for f in fields}.values())

        attempt = 0
        while True:
            try:
                current, added, created = await self._apply_fields(project, collection, requested)
                break
            except DBAPIError as e:
                if _is_already_exists(e) and attempt < self._max_create_retries:
                    attempt += 1
                    logger.info(
                        "Concurrent schema change detected, re-reading",
                        project=project,
                        collection=collection,
                        attempt=attempt,
                    )
                    continue
                if _sqlstate(e) in _RESERVED_NAME_SQLSTATES:
                    names = ", ".join(f.name for f in requested)
                    raise InvalidRequestError(
                        f"One of the column names collides with a reserved keyword in PostgreSQL: {names}"
                    ) from e
                raise InternalError(f"Failed to update collection schema: {e}") from e
            except SQLAlchemyError as e:
                raise InternalError(f"Failed to update collection schema: {e}") from e

        self._schema_cache.set((project, collection), current)
        if not added:
            return current

        if created:
            self._collection_cache.delete(project)
            logger.info("Collection created", project=project, collection=collection, fields=len(added))
            SCHEMA_CHANGES.labels(kind="collection").inc()
        else:
            logger.info("Collection fields added", project=project, collection=collection, fields=len(added))
            SCHEMA_CHANGES.labels(kind="fields").inc()
        self._notify(project, collection, added, created)
        return current

    async def _apply_fields(self, project: str, collection: str, requested: List[SchemaField]):
        async with self._engine.begin() as conn:
            current = await self._fetch_schema(conn, project, collection)
            existing = {f.name for f in current}
            missing = [f for f in requested if f.name not in existing]
            if not missing:
                return current, [], False

            table = f"{quote_identifier(project)}.{quote_identifier(collection)}"
            if not current:
                schemas = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_schema_names())
                if project not in schemas:
                    raise NotExistsError("Project")
                columns = ", ".join(f"{quote_identifier(f.name)} {to_sql(f.type)}" for f in missing)
                await conn.execute(text(f"CREATE TABLE {table} ({columns})"))
            else:
                # One statement per column keeps the DDL portable
                for f in missing:
                    await conn.execute(text(
                        f"ALTER TABLE {table} ADD COLUMN {quote_identifier(f.name)} {to_sql(f.type)}"
                    ))

        return current + missing, missing, not current

    def _notify(self, project: str, collection: str, added: List[SchemaField], created: bool) -> None:
        for observer in self._observers:
            try:
                if created:
                    observer.on_create_collection(project, collection, added)
                else:
                    observer.on_create_collection_fields(project, collection, added)
            except Exception:
                logger.exception(
                    "Schema observer failed",
                    observer=type(observer).__name__,
                    project=project,
                    collection=collection,
                )
