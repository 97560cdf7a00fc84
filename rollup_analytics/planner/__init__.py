"""
Query Planner Module
"""
from .types import AnalyticsRequest, Measure, Reference, ReferenceKind, TimeBucket, COLLECTION_SEGMENT
from .references import check_reference, bucket_count
from .filters import FilterExpression, parse_filter, filter_columns, is_resolvable
from .executor import QueryExecution, QueryExecutor, QueryResult, SqlAlchemyQueryExecutor
from .explorer import EventExplorer, ROLLUP_TABLE_PROPERTY

__all__ = [
    "AnalyticsRequest",
    "Measure",
    "Reference",
    "ReferenceKind",
    "TimeBucket",
    "COLLECTION_SEGMENT",
    "check_reference",
    "bucket_count",
    "FilterExpression",
    "parse_filter",
    "filter_columns",
    "is_resolvable",
    "QueryExecution",
    "QueryExecutor",
    "QueryResult",
    "SqlAlchemyQueryExecutor",
    "EventExplorer",
    "ROLLUP_TABLE_PROPERTY",
]
