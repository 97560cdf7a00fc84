"""
Integration Tests - Planned Queries Against a Database
"""
import pytest
from datetime import date

import polars as pl
from sqlalchemy import text

from rollup_analytics.errors import InternalError
from rollup_analytics.metadata import Aggregation, MaterializedView, ViewOptions
from rollup_analytics.planner import ROLLUP_TABLE_PROPERTY, Measure, Reference

PROJECT = "main"
START = date(2024, 1, 1)
END = date(2024, 1, 31)


async def _load(engine, table: str, columns: str, rows: list) -> None:
    placeholders = ", ".join(f":{name}" for name in rows[0])
    async with engine.begin() as conn:
        await conn.execute(text(f"CREATE TABLE {table} ({columns})"))
        await conn.execute(text(f"INSERT INTO {table} VALUES ({placeholders})"), rows)


@pytest.fixture
async def events(test_engine):
    """Country k (1..30) has k events, all on device 'web'"""
    rows = []
    for k in range(1, 31):
        for i in range(k):
            rows.append({
                "time": f"2024-01-{(i % 28) + 1:02d} 10:00:00",
                "country": f"C{k:02d}",
                "device": "web",
                "revenue": float(k),
            })
    # Outside the requested range
    rows.append({"time": "2024-02-01 00:00:00", "country": "C30", "device": "web", "revenue": 1000.0})
    await _load(test_engine, "events", '"_time" TEXT, country TEXT, device TEXT, revenue DOUBLE PRECISION', rows)
    return rows


@pytest.fixture
async def pageviews(test_engine):
    """60 countries with one pageview each"""
    rows = [
        {"time": "2024-01-10 12:00:00", "country": f"P{k:02d}", "url": f"/page/{k}"}
        for k in range(60)
    ]
    await _load(test_engine, "pageview", '"_time" TEXT, country TEXT, url TEXT', rows)
    return rows


class TestRawQueries:
    """Tests for queries over raw collections"""

    async def test_total_count(self, explorer, events):
        execution = await explorer.analyze(
            project=PROJECT,
            collections=["events"],
            measure=Measure(Aggregation.COUNT),
            start_date=START,
            end_date=END,
        )
        result = await execution

        assert result.rows == [(465,)]
        assert ROLLUP_TABLE_PROPERTY not in result.properties

    async def test_groups_beyond_limit_collapse_into_others(self, explorer, events):
        """Groups ranked past 15 are summed into Others, never dropped"""
        result = await (await explorer.analyze(
            project=PROJECT,
            collections=["events"],
            measure=Measure(Aggregation.COUNT),
            grouping=Reference.column("country"),
            segment=Reference.column("device"),
            start_date=START,
            end_date=END,
        ))
        df = result.to_frame()

        assert df.height == 16
        others = df.filter(pl.col("country_group") == "Others")
        assert others["value"].to_list() == [sum(range(1, 16))]
        assert df["value"].sum() == 465
        assert df["value"].to_list() == sorted(df["value"].to_list(), reverse=True)
        kept = set(df.filter(pl.col("country_group") != "Others")["country_group"].to_list())
        assert kept == {f"C{k:02d}" for k in range(16, 31)}

    async def test_single_dimension_collapses_beyond_fifty(self, explorer, pageviews):
        result = await (await explorer.analyze(
            project=PROJECT,
            collections=["pageview"],
            measure=Measure(Aggregation.COUNT),
            grouping=Reference.column("country"),
            start_date=START,
            end_date=END,
        ))
        df = result.to_frame()

        assert df.height == 51
        assert df.filter(pl.col("country_group") == "Others")["value"].to_list() == [10]
        assert df["value"].sum() == 60

    async def test_sum_with_filter(self, explorer, events):
        result = await (await explorer.analyze(
            project=PROJECT,
            collections=["events"],
            measure=Measure(Aggregation.SUM, "revenue"),
            filter_expression="country = 'C10' OR country = 'C20'",
            start_date=START,
            end_date=END,
        ))

        assert result.rows == [(10 * 10.0 + 20 * 20.0,)]

    async def test_collections_are_segmented(self, explorer, events, pageviews):
        result = await (await explorer.analyze(
            project=PROJECT,
            collections=["events", "pageview"],
            measure=Measure(Aggregation.COUNT),
            start_date=START,
            end_date=END,
        ))
        df = result.to_frame()

        assert dict(zip(df["_collection_segment"].to_list(), df["value"].to_list())) == {
            "events": 465,
            "pageview": 60,
        }

    async def test_backend_failure_arrives_through_the_handle(self, explorer):
        execution = await explorer.analyze(
            project=PROJECT,
            collections=["missing_collection"],
            measure=Measure(Aggregation.COUNT),
            start_date=START,
            end_date=END,
        )

        with pytest.raises(InternalError):
            await execution


class TestRollupQueries:
    """Tests for queries answered by a rollup table"""

    @pytest.fixture
    async def revenue_rollup(self, test_engine, metadata_store, revenue_descriptor):
        rows = [
            {"time": "2024-01-05 00:00:00", "collection": "events", "country": None, "revenue_sum": 300.0},
            {"time": "2024-01-05 00:00:00", "collection": "events", "country": "US", "revenue_sum": 200.0},
            {"time": "2024-01-05 00:00:00", "collection": "events", "country": "DE", "revenue_sum": 100.0},
            {"time": "2024-01-06 00:00:00", "collection": "events", "country": None, "revenue_sum": 50.0},
            {"time": "2024-01-06 00:00:00", "collection": "events", "country": "US", "revenue_sum": 50.0},
        ]
        await _load(
            test_engine,
            "_materialized_daily_revenue",
            '"_time" TEXT, "_collection" TEXT, country TEXT, revenue_sum DOUBLE PRECISION',
            rows,
        )
        await metadata_store.create_materialized_view(PROJECT, MaterializedView(
            table_name="daily_revenue",
            name="Daily revenue",
            query="SELECT 1",
            options=ViewOptions(olap_table=revenue_descriptor),
        ))

    async def test_total_reads_the_aggregated_level(self, explorer, revenue_rollup):
        result = await (await explorer.analyze(
            project=PROJECT,
            collections=["events"],
            measure=Measure(Aggregation.SUM, "revenue"),
            start_date=START,
            end_date=END,
        ))

        assert result.properties[ROLLUP_TABLE_PROPERTY] == "materialized.daily_revenue"
        assert result.rows == [(350.0,)]

    @pytest.fixture
    async def raw_revenue(self, test_engine):
        """Raw events the rollup above was computed from"""
        rows = [
            {"time": "2024-01-05 09:00:00", "country": "US", "device": "web", "revenue": 120.0},
            {"time": "2024-01-05 17:00:00", "country": "US", "device": "web", "revenue": 80.0},
            {"time": "2024-01-05 11:00:00", "country": "DE", "device": "web", "revenue": 100.0},
            {"time": "2024-01-06 08:00:00", "country": "US", "device": "web", "revenue": 50.0},
        ]
        await _load(test_engine, "events", '"_time" TEXT, country TEXT, device TEXT, revenue DOUBLE PRECISION', rows)

    async def test_filtered_sum_matches_raw_events(self, explorer, revenue_rollup, raw_revenue):
        rollup = await (await explorer.analyze(
            project=PROJECT,
            collections=["events"],
            measure=Measure(Aggregation.SUM, "revenue"),
            filter_expression="country = 'US'",
            start_date=START,
            end_date=END,
        ))
        # device is not a rollup dimension, so this one reads the raw collection
        raw = await (await explorer.analyze(
            project=PROJECT,
            collections=["events"],
            measure=Measure(Aggregation.SUM, "revenue"),
            filter_expression="country = 'US' AND device = 'web'",
            start_date=START,
            end_date=END,
        ))

        assert rollup.properties[ROLLUP_TABLE_PROPERTY] == "materialized.daily_revenue"
        assert ROLLUP_TABLE_PROPERTY not in raw.properties
        assert rollup.rows == raw.rows == [(250.0,)]

    async def test_grouping_by_rollup_dimension(self, explorer, revenue_rollup):
        result = await (await explorer.analyze(
            project=PROJECT,
            collections=["events"],
            measure=Measure(Aggregation.SUM, "revenue"),
            grouping=Reference.column("country"),
            start_date=START,
            end_date=END,
        ))

        assert result.properties[ROLLUP_TABLE_PROPERTY] == "materialized.daily_revenue"
        df = result.to_frame()
        assert df["country_group"].null_count() == 0
        assert df.rows() == [("US", 250.0), ("DE", 100.0)]


async def test_event_statistics(explorer, test_engine):
    rows = [
        {"time": "2024-01-02 00:00:00", "collection": "pageview", "total": 10},
        {"time": "2024-01-03 00:00:00", "collection": "pageview", "total": 5},
        {"time": "2024-01-03 00:00:00", "collection": "purchase", "total": 2},
    ]
    await _load(test_engine, "_continuous__event_explorer_metrics", '"_time" TEXT, "_collection" TEXT, total BIGINT', rows)

    result = await explorer.get_event_statistics(PROJECT, ["pageview", "purchase"], None, START, END)

    assert dict(result.rows) == {"pageview": 15, "purchase": 2}


async def test_grouped_sum_matches_dataframe(explorer, test_engine, sample_events_df):
    await _load(
        test_engine,
        "purchase",
        '"_time" TEXT, country TEXT, revenue DOUBLE PRECISION',
        [dict(zip(("time", "country", "revenue"), row)) for row in sample_events_df.rows()],
    )
    expected = (
        sample_events_df.group_by("country")
        .agg(pl.col("revenue").sum().alias("value"))
        .sort("value", descending=True)
    )

    result = await (await explorer.analyze(
        project=PROJECT,
        collections=["purchase"],
        measure=Measure(Aggregation.SUM, "revenue"),
        grouping=Reference.column("country"),
        start_date=START,
        end_date=END,
    ))
    df = result.to_frame()

    assert df["country_group"].to_list() == expected["country"].to_list()
    assert df["value"].to_list() == expected["value"].to_list()
