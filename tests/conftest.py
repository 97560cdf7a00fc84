"""
Test Suite Configuration
"""
import pytest
from typing import AsyncGenerator

import polars as pl
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from rollup_analytics.config import Settings
from rollup_analytics.metadata import (
    Aggregation,
    ContinuousQuery,
    MaterializedView,
    MetadataStore,
    OLAPTableDescriptor,
    ViewOptions,
)
from rollup_analytics.planner import EventExplorer, SqlAlchemyQueryExecutor


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Create test settings"""
    return Settings(app_env="testing")


@pytest.fixture
async def test_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed sqlite engine, so every connection sees the same data"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'analytics.db'}",
        echo=False,
    )

    yield engine

    await engine.dispose()


@pytest.fixture
async def metadata_store(test_engine) -> MetadataStore:
    """Metadata store with its catalog tables created"""
    store = MetadataStore(test_engine, cache_ttl=60)
    await store.setup()
    return store


@pytest.fixture
def executor(test_engine) -> SqlAlchemyQueryExecutor:
    return SqlAlchemyQueryExecutor(test_engine)


@pytest.fixture
def explorer(executor, metadata_store, test_settings) -> EventExplorer:
    return EventExplorer(executor, metadata_store, test_settings.planner)


@pytest.fixture
def revenue_descriptor() -> OLAPTableDescriptor:
    """Rollup over events that sums revenue by country"""
    return OLAPTableDescriptor(
        collections={"events"},
        measures={"revenue"},
        dimensions={"country"},
        aggregations={Aggregation.SUM},
        table_name="events_revenue",
    )


@pytest.fixture
def sample_view(revenue_descriptor) -> MaterializedView:
    """Create a sample materialized view for testing"""
    return MaterializedView(
        table_name="daily_revenue",
        name="Daily revenue",
        query="SELECT country, SUM(revenue) FROM events GROUP BY 1",
        options=ViewOptions(olap_table=revenue_descriptor, extra={"owner": "analytics"}),
    )


@pytest.fixture
def sample_continuous_query() -> ContinuousQuery:
    """Create a sample continuous query for testing"""
    return ContinuousQuery(
        table_name="pageview_counts",
        name="Pageview counts",
        query="SELECT _collection, count(*) FROM pageview GROUP BY 1",
        partition_keys=["_time"],
    )


@pytest.fixture
def sample_events_df() -> pl.DataFrame:
    """Create sample events DataFrame for testing"""
    return pl.DataFrame({
        "_time": [
            "2024-01-01 10:00:00",
            "2024-01-01 14:30:00",
            "2024-01-02 09:15:00",
            "2024-01-03 18:45:00",
        ],
        "country": ["US", "US", "DE", "FR"],
        "revenue": [150.0, 200.5, 75.25, 20.0],
    })
