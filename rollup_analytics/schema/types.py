"""
Collection Field Types

Maps the engine's field types to PostgreSQL DDL and back from reflected
SQLAlchemy column types.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy import types as sqltypes


class FieldType(str, Enum):
    """Column types a collection may hold"""
    INTEGER = "integer"
    LONG = "long"
    DECIMAL = "decimal"
    DOUBLE = "double"
    BOOLEAN = "boolean"
    DATE = "date"
    TIME = "time"
    TIMESTAMP = "timestamp"
    STRING = "string"
    MAP_STRING = "map_string"
    ARRAY_LONG = "array_long"
    ARRAY_DOUBLE = "array_double"
    ARRAY_STRING = "array_string"

    @property
    def is_array(self) -> bool:
        return self.value.startswith("array_")

    @property
    def is_map(self) -> bool:
        return self.value.startswith("map_")

    @property
    def array_element_type(self) -> "FieldType":
        if not self.is_array:
            raise ValueError(f"{self.value} is not an array type")
        return FieldType(self.value[len("array_"):])


@dataclass(frozen=True)
class SchemaField:
    """A named, typed collection column"""
    name: str
    type: FieldType


_SCALAR_SQL = {
    FieldType.INTEGER: "INT",
    FieldType.DECIMAL: "DECIMAL",
    FieldType.LONG: "BIGINT",
    FieldType.STRING: "TEXT",
    FieldType.BOOLEAN: "BOOLEAN",
    FieldType.DATE: "DATE",
    FieldType.TIME: "TIME",
    FieldType.TIMESTAMP: "TIMESTAMP",
    FieldType.DOUBLE: "DOUBLE PRECISION",
}


def to_sql(field_type: FieldType) -> str:
    """DDL type for a field type"""
    if field_type in _SCALAR_SQL:
        return _SCALAR_SQL[field_type]
    if field_type.is_array:
        return to_sql(field_type.array_element_type) + "[]"
    if field_type.is_map:
        return "JSONB"
    raise ValueError(f"Field type {field_type.value} has no SQL mapping")


def from_sql_type(column_type: sqltypes.TypeEngine) -> Optional[FieldType]:
    """
    Field type for a reflected column type.

    Returns None for types collections never hold; callers skip those
    columns.
    """
    if isinstance(column_type, sqltypes.ARRAY):
        element = from_sql_type(column_type.item_type)
        if element in (FieldType.INTEGER, FieldType.LONG):
            return FieldType.ARRAY_LONG
        if element in (FieldType.DOUBLE, FieldType.DECIMAL):
            return FieldType.ARRAY_DOUBLE
        if element == FieldType.STRING:
            return FieldType.ARRAY_STRING
        return None
    if isinstance(column_type, sqltypes.JSON):
        return FieldType.MAP_STRING
    if isinstance(column_type, sqltypes.Boolean):
        return FieldType.BOOLEAN
    if isinstance(column_type, sqltypes.BigInteger):
        return FieldType.LONG
    if isinstance(column_type, sqltypes.Integer):
        return FieldType.INTEGER
    # Float subclasses Numeric
    if isinstance(column_type, sqltypes.Float):
        return FieldType.DOUBLE
    if isinstance(column_type, sqltypes.Numeric):
        return FieldType.DECIMAL
    if isinstance(column_type, sqltypes.DateTime):
        return FieldType.TIMESTAMP
    if isinstance(column_type, sqltypes.Date):
        return FieldType.DATE
    if isinstance(column_type, sqltypes.Time):
        return FieldType.TIME
    if isinstance(column_type, sqltypes.String):
        return FieldType.STRING
    return None
