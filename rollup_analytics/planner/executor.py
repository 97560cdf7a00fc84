"""
Query Executor Boundary

The planner hands SQL text to a QueryExecutor and gets back a
QueryExecution: an asynchronous handle that callers await or decorate.
Backend failures are delivered through the handle, never raised at
dispatch.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

import polars as pl
import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from rollup_analytics.errors import InternalError
from rollup_analytics.metrics import QUERY_DURATION
from rollup_analytics.validation import check_project, quote_identifier

logger = structlog.get_logger(__name__)


@dataclass
class QueryResult:
    """Rows of an executed query"""
    columns: List[str]
    rows: List[Tuple[Any, ...]]
    properties: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def empty(cls) -> "QueryResult":
        return cls(columns=[], rows=[])

    def set_property(self, key: str, value: Any) -> None:
        self.properties[key] = value

    def to_frame(self) -> pl.DataFrame:
        """Result as a polars DataFrame"""
        return pl.DataFrame(self.rows, schema=self.columns, orient="row")


class QueryExecution:
    """
    Handle on a query that may still be running.

    Example:
        execution = executor.execute_query("demo", "SELECT 1 AS value")
        result = await execution
    """

    def __init__(self, result: Awaitable[QueryResult]):
        self._task = asyncio.ensure_future(result)

    def map(self, transform: Callable[[QueryResult], QueryResult]) -> "QueryExecution":
        """New handle whose result is `transform` applied to this one's"""

        async def apply() -> QueryResult:
            return transform(await self._task)

        return QueryExecution(apply())

    def done(self) -> bool:
        return self._task.done()

    def __await__(self):
        return self._task.__await__()


class QueryExecutor(Protocol):
    """What the planner needs from a query engine"""

    def execute_query(self, project: str, query: str, timeout_millis: Optional[int] = None) -> QueryExecution:
        ...

    def execute_raw_statement(self, project: str, sql: str) -> QueryExecution:
        ...

    def execute_raw_query(self, project: str, sql: str) -> QueryExecution:
        ...


class SqlAlchemyQueryExecutor:
    """Runs generated SQL on the project's schema through an AsyncEngine"""

    def __init__(self, engine: AsyncEngine):
        self._engine = engine

    def execute_query(self, project: str, query: str, timeout_millis: Optional[int] = None) -> QueryExecution:
        check_project(project)
        return QueryExecution(self._run(project, query, timeout_millis, commit=False))

    def execute_raw_statement(self, project: str, sql: str) -> QueryExecution:
        check_project(project)
        return QueryExecution(self._run(project, sql, None, commit=True))

    def execute_raw_query(self, project: str, sql: str) -> QueryExecution:
        return self.execute_query(project, sql)

    async def _prepare(self, conn: AsyncConnection, project: str, timeout_millis: Optional[int]) -> None:
        if conn.dialect.name != "postgresql":
            return
        await conn.execute(text(f"SET LOCAL search_path TO {quote_identifier(project)}"))
        if timeout_millis:
            await conn.execute(text(f"SET LOCAL statement_timeout = {int(timeout_millis)}"))

    async def _run(self, project: str, sql: str, timeout_millis: Optional[int], commit: bool) -> QueryResult:
        started = time.perf_counter()
        try:
            async with self._engine.connect() as conn:
                await self._prepare(conn, project, timeout_millis)
                # Driver-level execution: generated SQL carries no bind parameters
                result = await conn.exec_driver_sql(sql)
                if result.returns_rows:
                    columns = list(result.keys())
                    rows = [tuple(row) for row in result.fetchall()]
                else:
                    columns, rows = [], []
                affected = result.rowcount
                if commit:
                    await conn.commit()
        except SQLAlchemyError as e:
            QUERY_DURATION.labels(status="error").observe(time.perf_counter() - started)
            logger.error("Query failed", project=project, error=str(e))
            raise InternalError(f"Query failed: {e}") from e

        elapsed = time.perf_counter() - started
        QUERY_DURATION.labels(status="success").observe(elapsed)
        elapsed_ms = round(elapsed * 1000, 2)
        logger.debug("Query executed", project=project, rows=len(rows), duration_ms=elapsed_ms)
        properties: Dict[str, Any] = {"executionTimeMillis": elapsed_ms}
        if not columns:
            properties["affectedRows"] = affected
        return QueryResult(columns=columns, rows=rows, properties=properties)
