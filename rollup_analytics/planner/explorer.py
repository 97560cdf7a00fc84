"""
Event Explorer

Plans an analytics request into one SQL query, preferring a rollup table
over a raw scan whenever a rollup's descriptor can answer the request.

Request errors (bad references, oversized ranges, malformed filters,
unsupported aggregations) are raised before anything is dispatched;
backend errors arrive through the returned QueryExecution.

Example:
    explorer = EventExplorer(SqlAlchemyQueryExecutor(engine), MetadataStore(engine))
    result = await (await explorer.analyze(
        project="main",
        collections=["pageview"],
        measure=Measure(Aggregation.COUNT),
        grouping=Reference.column("country"),
        start_date=date(2024, 1, 1),
        end_date=date(2024, 1, 31),
    ))
"""

from dataclasses import dataclass
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence

import structlog

from rollup_analytics.config.settings import PlannerSettings
from rollup_analytics.errors import InvalidRequestError, UnsupportedAggregationError
from rollup_analytics.metrics import ANALYSES_PLANNED, ANALYSES_REJECTED
from rollup_analytics.metadata.store import MetadataStore
from rollup_analytics.metadata.types import Aggregation, continuous_relation
from rollup_analytics.planner.executor import QueryExecution, QueryExecutor, QueryResult
from rollup_analytics.planner.filters import FilterExpression, parse_filter
from rollup_analytics.planner.matching import RollupCandidate, first_match, load_candidates
from rollup_analytics.planner.references import check_reference, extra_dimensions, time_bucket_sql
from rollup_analytics.planner.sql import ROLLUP_AGGREGATIONS, QueryBuilder
from rollup_analytics.planner.types import (
    COLLECTION_SEGMENT,
    AnalyticsRequest,
    Measure,
    Reference,
    TimeBucket,
)
from rollup_analytics.validation import check_project, quote_identifier, quote_literal

logger = structlog.get_logger(__name__)

ROLLUP_TABLE_PROPERTY = "rollupTable"

EVENT_METRICS_TABLE = "_event_explorer_metrics"
EVENT_STATISTICS_TIMEOUT_MILLIS = 20000
# Assumed collection count when statistics span every collection
DEFAULT_STATISTICS_COLLECTIONS = 10


@dataclass(frozen=True)
class PreparedAnalysis:
    """A validated request with its filter parsed and its segment resolved"""
    project: str
    collections: List[str]
    measure: Measure
    grouping: Optional[Reference]
    segment: Optional[Reference]
    filter_expression: Optional[FilterExpression]
    start_date: date
    end_date: date

    @property
    def references(self) -> List[Optional[Reference]]:
        return [self.grouping, self.segment]

    @property
    def uses_rollups(self) -> bool:
        return self.measure.column is not None and self.measure.aggregation in ROLLUP_AGGREGATIONS


@dataclass(frozen=True)
class QueryPlan:
    query: str
    rollup: Optional[RollupCandidate] = None

    @property
    def rollup_table(self) -> Optional[str]:
        return self.rollup.provenance if self.rollup is not None else None


class EventExplorer:
    """Rollup-aware analytics over event collections"""

    def __init__(
        self,
        executor: QueryExecutor,
        metadata: MetadataStore,
        settings: Optional[PlannerSettings] = None,
    ):
        self.executor = executor
        self.metadata = metadata
        self.settings = settings or PlannerSettings()
        self.builder = QueryBuilder(
            time_column=self.settings.time_column,
            group_limit=self.settings.group_limit,
            segment_limit=self.settings.segment_limit,
            single_dimension_limit=self.settings.single_dimension_limit,
            result_limit=self.settings.result_limit,
        )

    # =========================================================================
    # PLANNING
    # =========================================================================

    def prepare(self, request: AnalyticsRequest) -> PreparedAnalysis:
        """
        Validate a request without touching the catalog.

        Raises:
            InvalidRequestError: empty collections, inverted dates, unknown
                time bucket or malformed filter
            DateRangeTooLargeError: a time bucket is too fine for the range
            UnsupportedAggregationError: exact distinct count with dimensions
        """
        check_project(request.project)
        collections = list(dict.fromkeys(request.collections))
        if not collections:
            raise InvalidRequestError("At least one collection is required")
        if request.end_date < request.start_date:
            raise InvalidRequestError("end_date must not be before start_date")

        for reference in (request.grouping, request.segment):
            if reference is not None and not reference.is_column:
                check_reference(
                    reference.value,
                    request.start_date,
                    request.end_date,
                    len(collections),
                    self.settings.max_time_buckets,
                )

        filter_expression = parse_filter(request.filter_expression)

        segment = request.segment
        if segment is None and len(collections) > 1:
            segment = COLLECTION_SEGMENT

        if request.measure.aggregation == Aggregation.COUNT_UNIQUE and (
            request.grouping is not None or segment is not None
        ):
            raise UnsupportedAggregationError(
                "count_unique is not supported with grouping or segment, use approximate_unique"
            )

        return PreparedAnalysis(
            project=request.project,
            collections=collections,
            measure=request.measure,
            grouping=request.grouping,
            segment=segment,
            filter_expression=filter_expression,
            start_date=request.start_date,
            end_date=request.end_date,
        )

    def plan(self, prepared: PreparedAnalysis, candidates: Sequence[RollupCandidate] = ()) -> QueryPlan:
        """Render the query for a prepared request; pure given the candidates"""
        dims = self.builder.dimensions(prepared.grouping, prepared.segment)
        filter_sql = prepared.filter_expression.sql() if prepared.filter_expression else None

        rollup = None
        if prepared.uses_rollups:
            rollup = first_match(
                candidates,
                prepared.collections,
                prepared.measure,
                prepared.references,
                prepared.filter_expression,
            )

        if rollup is not None:
            compute = self.builder.rollup_compute(
                rollup.relation,
                rollup.descriptor,
                prepared.collections,
                prepared.measure,
                dims,
                filter_sql,
                prepared.start_date,
                prepared.end_date,
                filter_columns=prepared.filter_expression.columns if prepared.filter_expression else (),
            )
        else:
            compute = self.builder.raw_compute(
                prepared.collections,
                prepared.measure,
                dims,
                filter_sql,
                prepared.start_date,
                prepared.end_date,
            )

        return QueryPlan(query=self.builder.bound(compute, prepared.measure.aggregation, dims), rollup=rollup)

    # =========================================================================
    # EXECUTION
    # =========================================================================

    async def analyze(self, request: Optional[AnalyticsRequest] = None, **kwargs) -> QueryExecution:
        """
        Plan and dispatch a request, given as an AnalyticsRequest or as its
        fields by keyword.

        Returns:
            Handle on the running query; a rollup-backed result carries the
            rollup's name under properties["rollupTable"]
        """
        if request is None:
            request = AnalyticsRequest(**kwargs)
        elif kwargs:
            raise TypeError("Pass either a request or keyword arguments, not both")

        try:
            prepared = self.prepare(request)
        except InvalidRequestError as e:
            ANALYSES_REJECTED.labels(error=type(e).__name__).inc()
            raise
        candidates: List[RollupCandidate] = []
        if prepared.uses_rollups:
            candidates = await load_candidates(self.metadata, prepared.project)

        plan = self.plan(prepared, candidates)
        ANALYSES_PLANNED.labels(source="rollup" if plan.rollup is not None else "raw").inc()
        logger.info(
            "Analysis planned",
            project=prepared.project,
            collections=prepared.collections,
            aggregation=prepared.measure.aggregation.value,
            rollup=plan.rollup_table,
        )

        execution = self.executor.execute_query(prepared.project, plan.query)
        if plan.rollup_table is None:
            return execution

        rollup_table = plan.rollup_table

        def annotate(result: QueryResult) -> QueryResult:
            result.set_property(ROLLUP_TABLE_PROPERTY, rollup_table)
            return result

        return execution.map(annotate)

    def get_extra_dimensions(self) -> Dict[str, List[str]]:
        return extra_dimensions()

    def get_event_statistics(
        self,
        project: str,
        collections: Optional[Iterable[str]],
        dimension: Optional[str],
        start_date: date,
        end_date: date,
    ) -> QueryExecution:
        """Event totals per collection, optionally per time bucket"""
        check_project(project)
        collections = sorted(set(collections)) if collections is not None else None
        if collections is not None and not collections:
            return QueryExecution(_completed(QueryResult.empty()))

        predicates = [self.builder.time_predicate(start_date, end_date)]
        if collections:
            members = ", ".join(quote_literal(c) for c in collections)
            predicates.append(f"{quote_identifier(COLLECTION_SEGMENT.value)} IN ({members})")
        where = " AND ".join(predicates)
        relation = quote_identifier(continuous_relation(EVENT_METRICS_TABLE))
        collection = f"{quote_identifier(COLLECTION_SEGMENT.value)} AS collection"

        if dimension is not None:
            check_reference(
                dimension,
                start_date,
                end_date,
                len(collections) if collections else DEFAULT_STATISTICS_COLLECTIONS,
                self.settings.max_time_buckets,
            )
            bucket = TimeBucket.from_string(dimension)
            bucket_sql = time_bucket_sql(bucket, self.settings.time_column)
            query = (
                f"SELECT {collection}, {bucket_sql} AS {quote_identifier(bucket.value)}, SUM(\"total\") AS total"
                f" FROM {relation} WHERE {where} GROUP BY 1, 2 ORDER BY 2 DESC"
            )
        else:
            query = (
                f"SELECT {collection}, COALESCE(SUM(\"total\"), 0) AS total"
                f" FROM {relation} WHERE {where} GROUP BY 1"
            )

        logger.debug("Event statistics requested", project=project, dimension=dimension)
        return self.executor.execute_query(project, query, EVENT_STATISTICS_TIMEOUT_MILLIS)


async def _completed(result: QueryResult) -> QueryResult:
    return result
