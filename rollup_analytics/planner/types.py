"""
Analytics Request Types
"""

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import List, Optional

from rollup_analytics.errors import InvalidRequestError
from rollup_analytics.metadata.types import Aggregation


class ReferenceKind(str, Enum):
    """How a grouping or segment dimension is derived"""
    COLUMN = "column"
    TIME_BUCKET = "time_bucket"


class TimeBucket(str, Enum):
    """Named truncations of the event timestamp"""
    # Absolute buckets
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"
    # Relative (cyclic) buckets
    HOUR_OF_DAY = "hour_of_day"
    DAY_OF_MONTH = "day_of_month"
    WEEK_OF_YEAR = "week_of_year"
    MONTH_OF_YEAR = "month_of_year"
    QUARTER_OF_YEAR = "quarter_of_year"
    DAY_OF_WEEK = "day_of_week"

    @classmethod
    def from_string(cls, value: str) -> "TimeBucket":
        normalized = value.strip().lower().replace(" ", "_")
        try:
            return cls(normalized)
        except ValueError:
            raise InvalidRequestError(f"Unknown time bucket '{value}'") from None

    @property
    def pretty_name(self) -> str:
        return self.value.replace("_", " ")

    @property
    def category(self) -> str:
        return "Absolute" if self in _ABSOLUTE_BUCKETS else "Relative"


_ABSOLUTE_BUCKETS = {TimeBucket.HOUR, TimeBucket.DAY, TimeBucket.WEEK, TimeBucket.MONTH, TimeBucket.YEAR}


@dataclass(frozen=True)
class Reference:
    """A grouping or segment dimension"""
    kind: ReferenceKind
    value: str

    @classmethod
    def column(cls, name: str) -> "Reference":
        return cls(ReferenceKind.COLUMN, name)

    @classmethod
    def time_bucket(cls, bucket) -> "Reference":
        bucket = bucket if isinstance(bucket, TimeBucket) else TimeBucket.from_string(bucket)
        return cls(ReferenceKind.TIME_BUCKET, bucket.value)

    @property
    def is_column(self) -> bool:
        return self.kind == ReferenceKind.COLUMN

    @property
    def bucket(self) -> TimeBucket:
        if self.is_column:
            raise ValueError(f"Column reference '{self.value}' has no time bucket")
        return TimeBucket.from_string(self.value)


# Segments by source collection when several collections are analyzed together
COLLECTION_SEGMENT = Reference.column("_collection")


@dataclass(frozen=True)
class Measure:
    """What to aggregate; no column means counting events"""
    aggregation: Aggregation
    column: Optional[str] = None


@dataclass
class AnalyticsRequest:
    """A time-bounded aggregate query over one or more collections"""
    project: str
    collections: List[str]
    measure: Measure
    start_date: date
    end_date: date
    grouping: Optional[Reference] = None
    segment: Optional[Reference] = None
    filter_expression: Optional[str] = None
