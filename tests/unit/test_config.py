"""
Unit Tests - Configuration and Logging
"""
import logging
import pytest

from rollup_analytics import metrics
from rollup_analytics.config import Settings
from rollup_analytics.config.logging import configure_logging
from rollup_analytics.config.settings import DatabaseSettings, PlannerSettings


class TestSettings:
    """Tests for Settings"""

    def test_defaults(self, test_settings):
        assert test_settings.metadata.cache_ttl_seconds == 60
        assert test_settings.metadata.refresh_lease_seconds == 600.0
        assert test_settings.schema_cache.cache_ttl_seconds == 60
        assert test_settings.planner.max_time_buckets == 30000
        assert test_settings.planner.result_limit == 100
        assert test_settings.app_env == "testing"

    def test_invalid_environment(self):
        with pytest.raises(ValueError):
            Settings(app_env="moon")

    def test_planner_limits_from_environment(self, monkeypatch):
        monkeypatch.setenv("PLANNER_GROUP_LIMIT", "5")
        monkeypatch.setenv("PLANNER_RESULT_LIMIT", "25")

        planner = PlannerSettings()

        assert planner.group_limit == 5
        assert planner.result_limit == 25
        assert planner.segment_limit == 20

    def test_database_url_override(self):
        database = DatabaseSettings(url="sqlite+aiosqlite:///analytics.db")

        assert database.async_url == "sqlite+aiosqlite:///analytics.db"

    def test_database_url_from_parts(self):
        database = DatabaseSettings(host="db", port=5433, user="reader", password="pw")

        assert database.async_url.startswith("postgresql+asyncpg://reader:pw@db:5433/")


class TestLogging:
    """Tests for configure_logging"""

    def test_installs_single_handler(self, test_settings):
        handler = configure_logging("debug", settings=test_settings)
        configure_logging("debug", settings=test_settings)

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert handler.level == logging.DEBUG

    def test_sqlalchemy_follows_echo(self, test_settings):
        configure_logging(settings=test_settings)

        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING


class TestMetricsServer:
    """Tests for start_metrics_server"""

    def test_disabled_without_port(self, test_settings, monkeypatch):
        started = []
        monkeypatch.setattr(metrics, "start_http_server", started.append)

        assert metrics.start_metrics_server(test_settings) is None
        assert started == []

    def test_serves_configured_port(self, monkeypatch):
        monkeypatch.setenv("METRICS_PORT", "9464")
        started = []
        monkeypatch.setattr(metrics, "start_http_server", started.append)

        assert metrics.start_metrics_server(Settings()) == 9464
        assert started == [9464]
