"""
Prometheus Metrics

Module-level collectors shared by the planner, the executor and the
catalog stores. `start_metrics_server` serves them when METRICS_PORT is
set; otherwise exposition is left to the embedding service.
"""

from typing import Optional

import structlog
from prometheus_client import Counter, Histogram, start_http_server

from rollup_analytics.config.settings import Settings, get_settings

logger = structlog.get_logger(__name__)

# =============================================================================
# PLANNER
# =============================================================================

ANALYSES_PLANNED = Counter(
    "rollup_analytics_analyses_planned_total",
    "Analytics requests planned, by source table kind",
    ["source"],
)

ANALYSES_REJECTED = Counter(
    "rollup_analytics_analyses_rejected_total",
    "Analytics requests rejected before dispatch",
    ["error"],
)

# =============================================================================
# EXECUTION
# =============================================================================

QUERY_DURATION = Histogram(
    "rollup_analytics_query_seconds",
    "Time spent executing generated queries",
    ["status"],
)

# =============================================================================
# CATALOG
# =============================================================================

MATERIALIZED_VIEW_REFRESHES = Counter(
    "rollup_analytics_materialized_view_refreshes_total",
    "Freshness protocol outcomes",
    ["outcome"],
)

SCHEMA_CHANGES = Counter(
    "rollup_analytics_schema_changes_total",
    "Collection tables created or extended",
    ["kind"],
)


def start_metrics_server(settings: Optional[Settings] = None) -> Optional[int]:
    """
    Serve the default registry over HTTP.

    Returns:
        The port being served, or None when METRICS_PORT is unset
    """
    settings = settings or get_settings()
    port = settings.monitoring.metrics_port
    if port is None:
        return None
    start_http_server(port)
    logger.info("Metrics server started", port=port)
    return port
