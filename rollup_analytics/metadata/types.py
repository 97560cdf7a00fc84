"""
Rollup Metadata Types

MaterializedView and ContinuousQuery describe rollup tables; their option
bags are parsed into ViewOptions, where the reserved `olap_table` key holds
the OLAPTableDescriptor the query planner matches requests against and
every other key is carried through untouched.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_serializer

from rollup_analytics.errors import InvalidRequestError

OLAP_TABLE_KEY = "olap_table"


class Aggregation(str, Enum):
    """Aggregation functions a measure can request"""
    COUNT = "count"
    SUM = "sum"
    MINIMUM = "minimum"
    MAXIMUM = "maximum"
    AVERAGE = "average"
    COUNT_UNIQUE = "count_unique"
    APPROXIMATE_UNIQUE = "approximate_unique"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            normalized = value.strip().lower().replace(" ", "_")
            normalized = _AGGREGATION_ALIASES.get(normalized, normalized)
            for member in cls:
                if member.value == normalized:
                    return member
        return None


_AGGREGATION_ALIASES = {
    "min": "minimum",
    "max": "maximum",
    "avg": "average",
    "approx_unique": "approximate_unique",
}


class OLAPTableDescriptor(BaseModel):
    """What a rollup table can answer"""

    model_config = ConfigDict(extra="forbid", frozen=True)

    collections: Set[str]
    measures: Set[str]
    dimensions: Set[str] = Field(default_factory=set)
    aggregations: Set[Aggregation]
    table_name: str

    @field_serializer("collections", "measures", "dimensions", "aggregations")
    def _sorted(self, values: Set[Any]) -> List[Any]:
        return sorted(values)


class ViewOptions(BaseModel):
    """
    Typed view of a rollup's option bag.

    `olap_table` is strict; unrecognized keys live in `extra` and are
    written back verbatim.
    """

    olap_table: Optional[OLAPTableDescriptor] = None
    extra: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> "ViewOptions":
        if not raw:
            return cls()
        extra = dict(raw)
        descriptor = extra.pop(OLAP_TABLE_KEY, None)
        try:
            olap_table = OLAPTableDescriptor.model_validate(descriptor) if descriptor is not None else None
        except ValidationError as e:
            raise InvalidRequestError(f"Invalid {OLAP_TABLE_KEY} option: {e}") from e
        return cls(olap_table=olap_table, extra=extra)

    @classmethod
    def from_json(cls, text: Optional[str]) -> "ViewOptions":
        if text is None:
            return cls()
        return cls.from_dict(json.loads(text))

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        if self.olap_table is not None:
            data[OLAP_TABLE_KEY] = self.olap_table.model_dump(mode="json")
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)


@dataclass
class MaterializedView:
    """A rollup with an explicit refresh cadence"""
    table_name: str
    name: str
    query: str
    update_interval: Optional[timedelta] = None
    incremental: bool = False
    options: ViewOptions = field(default_factory=ViewOptions)
    last_update: Optional[datetime] = None

    def needs_update(self, now: datetime) -> bool:
        """
        A view is stale when it was never refreshed, or when its interval
        has elapsed since the last refresh. Views without an interval are
        refreshed once.
        """
        if self.last_update is None:
            return True
        if self.update_interval is None:
            return False
        return now - self.last_update >= self.update_interval


@dataclass
class ContinuousQuery:
    """A rollup kept current by an external streaming process"""
    table_name: str
    name: str
    query: str
    partition_keys: List[str] = field(default_factory=list)
    options: ViewOptions = field(default_factory=ViewOptions)


def materialized_relation(table_name: str) -> str:
    """Physical table name of a materialized view inside its project schema"""
    return f"_materialized_{table_name}"


def continuous_relation(table_name: str) -> str:
    """Physical table name of a continuous query inside its project schema"""
    return f"_continuous_{table_name}"
