"""
Query Text Builders

Compute queries produce one row per (group, segment) with a `value`
column, either from raw collections or from a rollup table. The bounding
query wrapped around them collapses low-ranked values into 'Others' and
caps the output.

Output columns are named `<reference>_group` / `<reference>_segment`,
where time-bucket references use the timestamp column's name.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable, List, Optional, Sequence, Set

from rollup_analytics.errors import UnsupportedAggregationError
from rollup_analytics.metadata.types import Aggregation, OLAPTableDescriptor
from rollup_analytics.planner.references import reference_alias, time_bucket_sql
from rollup_analytics.planner.types import COLLECTION_SEGMENT, Measure, Reference
from rollup_analytics.validation import check_collection, quote_identifier, quote_literal

OTHERS = "Others"

_RAW_AGGREGATIONS = {
    Aggregation.COUNT: "COUNT({})",
    Aggregation.SUM: "SUM({})",
    Aggregation.MINIMUM: "MIN({})",
    Aggregation.MAXIMUM: "MAX({})",
    Aggregation.AVERAGE: "AVG({})",
    Aggregation.COUNT_UNIQUE: "COUNT(DISTINCT {})",
    # PostgreSQL ships no sketch type; exact distinct stands in
    Aggregation.APPROXIMATE_UNIQUE: "COUNT(DISTINCT {})",
}

# Partial results of these combine with a second aggregation
_INTERMEDIATE_AGGREGATIONS = {
    Aggregation.COUNT: "SUM",
    Aggregation.SUM: "SUM",
    Aggregation.MINIMUM: "MIN",
    Aggregation.MAXIMUM: "MAX",
}

ROLLUP_AGGREGATIONS = frozenset({
    Aggregation.COUNT,
    Aggregation.SUM,
    Aggregation.MINIMUM,
    Aggregation.MAXIMUM,
    Aggregation.AVERAGE,
})


def intermediate_aggregation(aggregation: Aggregation) -> Optional[str]:
    return _INTERMEDIATE_AGGREGATIONS.get(aggregation)


def rollup_measure_column(column: str, aggregation: Aggregation) -> str:
    """Name of a pre-aggregated measure column inside a rollup table"""
    return f"{column}_{aggregation.value}"


@dataclass(frozen=True)
class Dimension:
    """A grouping or segment reference with its output alias"""
    reference: Reference
    alias: str

    @property
    def quoted(self) -> str:
        return quote_identifier(self.alias)

    @property
    def is_column(self) -> bool:
        return self.reference.is_column


class QueryBuilder:
    """Renders compute and bounding queries"""

    def __init__(
        self,
        time_column: str = "_time",
        group_limit: int = 15,
        segment_limit: int = 20,
        single_dimension_limit: int = 50,
        result_limit: int = 100,
    ):
        self.time_column = time_column
        self.group_limit = group_limit
        self.segment_limit = segment_limit
        self.single_dimension_limit = single_dimension_limit
        self.result_limit = result_limit

    def dimensions(self, grouping: Optional[Reference], segment: Optional[Reference]) -> List[Dimension]:
        dims = []
        if grouping is not None:
            dims.append(Dimension(grouping, reference_alias(grouping, "group", self.time_column)))
        if segment is not None:
            dims.append(Dimension(segment, reference_alias(segment, "segment", self.time_column)))
        return dims

    def time_predicate(self, start_date: date, end_date: date) -> str:
        column = quote_identifier(self.time_column)
        upper = end_date + timedelta(days=1)
        return f"{column} >= {quote_literal(start_date.isoformat())} AND {column} < {quote_literal(upper.isoformat())}"

    def _reference_sql(self, reference: Reference, collection: Optional[str]) -> str:
        if reference == COLLECTION_SEGMENT:
            # Raw scans know their collection; rollups store it in a column
            if collection is not None:
                return quote_literal(collection)
            return quote_identifier(COLLECTION_SEGMENT.value)
        if reference.is_column:
            return quote_identifier(reference.value)
        return time_bucket_sql(reference.bucket, self.time_column)

    def _select_dimensions(self, dims: Sequence[Dimension], collection: Optional[str]) -> List[str]:
        return [f"{self._reference_sql(d.reference, collection)} AS {d.quoted}" for d in dims]

    @staticmethod
    def _group_by(dims: Sequence[Dimension]) -> str:
        if not dims:
            return ""
        return " GROUP BY " + ", ".join(str(i + 1) for i in range(len(dims)))

    @staticmethod
    def _where(predicates: Sequence[str]) -> str:
        return " AND ".join(p for p in predicates if p)

    # =========================================================================
    # COMPUTE QUERIES
    # =========================================================================

    def raw_compute(
        self,
        collections: Sequence[str],
        measure: Measure,
        dims: Sequence[Dimension],
        filter_sql: Optional[str],
        start_date: date,
        end_date: date,
    ) -> str:
        """Aggregate directly over one collection, or over a union of several"""
        where = self._where([
            self.time_predicate(start_date, end_date),
            f"({filter_sql})" if filter_sql else "",
        ])
        measure_column = quote_identifier(measure.column) if measure.column else "1"
        aggregate = _RAW_AGGREGATIONS[measure.aggregation]

        if len(collections) == 1:
            collection = collections[0]
            select = self._select_dimensions(dims, collection)
            select.append(f"{aggregate.format(measure_column)} AS value")
            return (
                f"SELECT {', '.join(select)} FROM {check_collection(collection)}"
                f" WHERE {where}{self._group_by(dims)}"
            )

        parts = []
        for collection in collections:
            select = self._select_dimensions(dims, collection)
            select.append(f"{measure_column} AS {quote_identifier('_measure')}")
            parts.append(f"SELECT {', '.join(select)} FROM {check_collection(collection)} WHERE {where}")

        outer = [d.quoted for d in dims]
        outer.append(f"{aggregate.format(quote_identifier('_measure'))} AS value")
        return (
            f"SELECT {', '.join(outer)} FROM ({' UNION ALL '.join(parts)}) AS data"
            f"{self._group_by(dims)}"
        )

    def rollup_compute(
        self,
        relation: str,
        descriptor: OLAPTableDescriptor,
        collections: Sequence[str],
        measure: Measure,
        dims: Sequence[Dimension],
        filter_sql: Optional[str],
        start_date: date,
        end_date: date,
        filter_columns: Iterable[str] = (),
    ) -> str:
        """
        Re-aggregate a rollup at the level selected by the request.

        Dimensions the request groups, segments or filters by must be set;
        every other descriptor dimension must be rolled up (NULL).
        """
        predicates = []
        if set(collections) != set(descriptor.collections):
            members = ", ".join(quote_literal(c) for c in collections)
            predicates.append(f"{quote_identifier(COLLECTION_SEGMENT.value)} IN ({members})")

        used: Set[str] = {
            d.reference.value for d in dims
            if d.is_column and d.reference != COLLECTION_SEGMENT
        }
        used |= set(filter_columns) & descriptor.dimensions
        for dimension in sorted(used):
            predicates.append(f"{quote_identifier(dimension)} IS NOT NULL")
        for dimension in sorted(descriptor.dimensions - used):
            predicates.append(f"{quote_identifier(dimension)} IS NULL")
        if filter_sql:
            predicates.append(f"({filter_sql})")
        predicates.append(self.time_predicate(start_date, end_date))

        select = self._select_dimensions(dims, None)
        select.append(f"{self._rollup_final(measure)} AS value")
        return (
            f"SELECT {', '.join(select)} FROM {quote_identifier(relation)}"
            f" WHERE {self._where(predicates)}{self._group_by(dims)}"
        )

    @staticmethod
    def _rollup_final(measure: Measure) -> str:
        column = measure.column
        aggregation = measure.aggregation
        if aggregation == Aggregation.AVERAGE:
            total = quote_identifier(rollup_measure_column(column, Aggregation.SUM))
            count = quote_identifier(rollup_measure_column(column, Aggregation.COUNT))
            return f"CAST(SUM({total}) AS DOUBLE PRECISION) / NULLIF(SUM({count}), 0)"
        function = intermediate_aggregation(aggregation)
        if function is None:
            raise UnsupportedAggregationError(
                f"Aggregation {aggregation.value} cannot be computed from a rollup"
            )
        return f"{function}({quote_identifier(rollup_measure_column(column, aggregation))})"

    # =========================================================================
    # CARDINALITY BOUNDING
    # =========================================================================

    def bound(self, compute: str, aggregation: Aggregation, dims: Sequence[Dimension]) -> str:
        """
        Wrap a compute query with ranking, 'Others' collapsing and the
        row cap. Time-bucket dimensions are never collapsed; aggregations
        without a partial/final split are only ordered and capped.
        """
        function = intermediate_aggregation(aggregation)
        column_dims = [d for d in dims if d.is_column]

        if function is None or not column_dims:
            return self._plain(compute, dims)
        if len(column_dims) == 2:
            return self._collapse_group_and_segment(compute, function, column_dims[0], column_dims[1])
        time_dims = [d for d in dims if not d.is_column]
        return self._collapse_single(compute, function, dims, column_dims[0], time_dims[0] if time_dims else None)

    def _plain(self, compute: str, dims: Sequence[Dimension]) -> str:
        select = [
            f"CAST({d.quoted} AS VARCHAR) AS {d.quoted}" if d.is_column else d.quoted
            for d in dims
        ]
        select.append("value")
        return (
            f"SELECT {', '.join(select)} FROM ({compute}) AS data"
            f" ORDER BY value DESC LIMIT {self.result_limit}"
        )

    def _collapse_group_and_segment(self, compute: str, function: str, group: Dimension, segment: Dimension) -> str:
        g, s = group.quoted, segment.quoted
        others = quote_literal(OTHERS)
        return (
            f"SELECT CASE WHEN group_rank > {self.group_limit} THEN {others} ELSE CAST({g} AS VARCHAR) END AS {g},"
            f" CASE WHEN segment_rank > {self.segment_limit} THEN {others} ELSE CAST({s} AS VARCHAR) END AS {s},"
            f" {function}(value) AS value"
            f" FROM (SELECT totals.*,"
            f" DENSE_RANK() OVER (ORDER BY group_value DESC, {g}) AS group_rank,"
            f" ROW_NUMBER() OVER (PARTITION BY {g} ORDER BY value DESC, {s}) AS segment_rank"
            f" FROM (SELECT data.*, {function}(value) OVER (PARTITION BY {g}) AS group_value"
            f" FROM ({compute}) AS data) AS totals) AS ranked"
            f" GROUP BY 1, 2 ORDER BY 3 DESC LIMIT {self.result_limit}"
        )

    def _collapse_single(
        self,
        compute: str,
        function: str,
        dims: Sequence[Dimension],
        column: Dimension,
        partition: Optional[Dimension],
    ) -> str:
        c = column.quoted
        others = quote_literal(OTHERS)
        select = []
        for d in dims:
            if d is column:
                select.append(
                    f"CASE WHEN dimension_rank > {self.single_dimension_limit} THEN {others}"
                    f" ELSE CAST({c} AS VARCHAR) END AS {c}"
                )
            else:
                select.append(d.quoted)
        select.append(f"{function}(value) AS value")
        window = f"PARTITION BY {partition.quoted} " if partition is not None else ""
        return (
            f"SELECT {', '.join(select)}"
            f" FROM (SELECT data.*, ROW_NUMBER() OVER ({window}ORDER BY value DESC, {c}) AS dimension_rank"
            f" FROM ({compute}) AS data) AS ranked"
            f"{self._group_by(dims)} ORDER BY {len(dims) + 1} DESC LIMIT {self.result_limit}"
        )
