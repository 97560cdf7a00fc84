"""
Rollup Matching

A rollup answers a request when its descriptor covers the requested
collections, measure, column dimensions and every column the filter reads.
Time buckets derive from `_time`, which every rollup keeps.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

import structlog

from rollup_analytics.metadata.store import MetadataStore
from rollup_analytics.metadata.types import (
    OLAPTableDescriptor,
    continuous_relation,
    materialized_relation,
)
from rollup_analytics.planner.filters import FilterExpression, is_resolvable
from rollup_analytics.planner.sql import ROLLUP_AGGREGATIONS
from rollup_analytics.planner.types import COLLECTION_SEGMENT, Measure, Reference

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RollupCandidate:
    """A rollup table the planner may scan instead of raw events"""
    provenance: str
    relation: str
    descriptor: OLAPTableDescriptor


def descriptor_matches(
    descriptor: OLAPTableDescriptor,
    collections: Iterable[str],
    measure: Measure,
    references: Sequence[Optional[Reference]],
    filter_expression: Optional[FilterExpression] = None,
) -> bool:
    if not set(collections) <= descriptor.collections:
        return False

    if measure.column is None or measure.aggregation not in ROLLUP_AGGREGATIONS:
        return False
    if measure.column not in descriptor.measures or measure.aggregation not in descriptor.aggregations:
        return False

    for reference in references:
        if reference is None or not reference.is_column or reference == COLLECTION_SEGMENT:
            continue
        if reference.value not in descriptor.dimensions:
            return False

    if filter_expression is not None and not is_resolvable(filter_expression.tree, descriptor.dimensions):
        return False
    return True


def first_match(
    candidates: Iterable[RollupCandidate],
    collections: Iterable[str],
    measure: Measure,
    references: Sequence[Optional[Reference]],
    filter_expression: Optional[FilterExpression] = None,
) -> Optional[RollupCandidate]:
    """First candidate that can answer the request, in catalog order"""
    collections = list(collections)
    for candidate in candidates:
        if descriptor_matches(candidate.descriptor, collections, measure, references, filter_expression):
            return candidate
    return None


async def load_candidates(metadata: MetadataStore, project: str) -> List[RollupCandidate]:
    """Rollups with an OLAP descriptor: materialized views, then continuous queries"""
    candidates = []
    for view in await metadata.get_materialized_views(project):
        if view.options.olap_table is not None:
            candidates.append(RollupCandidate(
                provenance=f"materialized.{view.table_name}",
                relation=materialized_relation(view.table_name),
                descriptor=view.options.olap_table,
            ))
    for query in await metadata.get_continuous_queries(project):
        if query.options.olap_table is not None:
            candidates.append(RollupCandidate(
                provenance=f"continuous.{query.table_name}",
                relation=continuous_relation(query.table_name),
                descriptor=query.options.olap_table,
            ))
    logger.debug("Rollup candidates loaded", project=project, count=len(candidates))
    return candidates
