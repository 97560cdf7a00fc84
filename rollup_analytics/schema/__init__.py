"""
Collection Schema Module
"""
from .types import FieldType, SchemaField, from_sql_type, to_sql
from .metastore import SchemaMetastore, SchemaObserver

__all__ = [
    "FieldType",
    "SchemaField",
    "from_sql_type",
    "to_sql",
    "SchemaMetastore",
    "SchemaObserver",
]
