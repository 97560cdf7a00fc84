"""
Reference Validation and Time Bucket Expressions
"""

from datetime import date, timedelta
from typing import Dict, List

from rollup_analytics.errors import DateRangeTooLargeError, InvalidRequestError
from rollup_analytics.planner.types import Reference, TimeBucket
from rollup_analytics.validation import quote_identifier

DEFAULT_MAX_TIME_BUCKETS = 30000

_BUCKET_SQL = {
    TimeBucket.HOUR: "date_trunc('hour', {})",
    TimeBucket.DAY: "date_trunc('day', {})",
    TimeBucket.WEEK: "date_trunc('week', {})",
    TimeBucket.MONTH: "date_trunc('month', {})",
    TimeBucket.YEAR: "date_trunc('year', {})",
    TimeBucket.HOUR_OF_DAY: "CAST(EXTRACT(HOUR FROM {}) AS INTEGER)",
    TimeBucket.DAY_OF_MONTH: "CAST(EXTRACT(DAY FROM {}) AS INTEGER)",
    TimeBucket.WEEK_OF_YEAR: "CAST(EXTRACT(WEEK FROM {}) AS INTEGER)",
    TimeBucket.MONTH_OF_YEAR: "CAST(EXTRACT(MONTH FROM {}) AS INTEGER)",
    TimeBucket.QUARTER_OF_YEAR: "CAST(EXTRACT(QUARTER FROM {}) AS INTEGER)",
    TimeBucket.DAY_OF_WEEK: "CAST(EXTRACT(ISODOW FROM {}) AS INTEGER)",
}


def _months_between(start: date, end: date) -> int:
    months = (end.year - start.year) * 12 + end.month - start.month
    if end.day < start.day:
        months -= 1
    return months


def _years_between(start: date, end: date) -> int:
    years = end.year - start.year
    if (end.month, end.day) < (start.month, start.day):
        years -= 1
    return years


def bucket_count(bucket: TimeBucket, start_date: date, end_date: date) -> int:
    """Whole buckets in [start_date, end_date + 1 day); 0 for relative buckets."""
    end = end_date + timedelta(days=1)
    days = (end - start_date).days
    if bucket == TimeBucket.HOUR:
        return days * 24
    if bucket == TimeBucket.DAY:
        return days
    if bucket == TimeBucket.WEEK:
        return days // 7
    if bucket == TimeBucket.MONTH:
        return _months_between(start_date, end)
    if bucket == TimeBucket.YEAR:
        return _years_between(start_date, end)
    return 0


def check_reference(
    value: str,
    start_date: date,
    end_date: date,
    collection_count: int,
    max_buckets: int = DEFAULT_MAX_TIME_BUCKETS,
) -> None:
    """
    Bound a time bucket's granularity against the date range.

    Relative buckets (hour of day, day of week, ...) always pass.

    Raises:
        DateRangeTooLargeError: more than max_buckets // collection_count buckets
        InvalidRequestError: unknown bucket name
    """
    bucket = TimeBucket.from_string(value)
    if bucket.category != "Absolute":
        return
    if collection_count < 1:
        raise InvalidRequestError("At least one collection is required")
    if bucket_count(bucket, start_date, end_date) > max_buckets // collection_count:
        raise DateRangeTooLargeError()


def time_bucket_sql(bucket: TimeBucket, time_column: str = "_time") -> str:
    """SQL expression deriving a bucket from the timestamp column"""
    return _BUCKET_SQL[bucket].format(quote_identifier(time_column))


def reference_alias(reference: Reference, suffix: str, time_column: str = "_time") -> str:
    """Output column name for a grouping ('group') or segment ('segment')"""
    base = reference.value if reference.is_column else time_column
    return f"{base}_{suffix}"


def extra_dimensions() -> Dict[str, List[str]]:
    """Time buckets offered as dimensions, by category"""
    dimensions: Dict[str, List[str]] = {}
    for bucket in TimeBucket:
        dimensions.setdefault(bucket.category, []).append(bucket.pretty_name)
    return dimensions
