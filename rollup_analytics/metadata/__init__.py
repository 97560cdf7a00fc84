"""
Rollup Metadata Module
"""
from .types import (
    Aggregation,
    ContinuousQuery,
    MaterializedView,
    OLAPTableDescriptor,
    ViewOptions,
)
from .store import MetadataStore, RefreshTicket

__all__ = [
    "Aggregation",
    "ContinuousQuery",
    "MaterializedView",
    "OLAPTableDescriptor",
    "ViewOptions",
    "MetadataStore",
    "RefreshTicket",
]
