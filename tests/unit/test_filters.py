"""
Unit Tests - Filter Expressions
"""
import pytest

from rollup_analytics.errors import InvalidRequestError
from rollup_analytics.planner.filters import filter_columns, is_resolvable, parse_filter


class TestParseFilter:
    """Tests for parse_filter"""

    def test_blank_filter_is_none(self):
        assert parse_filter(None) is None
        assert parse_filter("   ") is None

    def test_comparison(self):
        expression = parse_filter("country = 'US' AND revenue > 10")

        assert expression is not None
        assert expression.columns == {"country", "revenue"}
        assert "country = 'US'" in expression.sql()

    def test_malformed_filter_is_invalid(self):
        with pytest.raises(InvalidRequestError):
            parse_filter("country = = 'US' AND (")

    def test_multiple_statements_are_invalid(self):
        with pytest.raises(InvalidRequestError):
            parse_filter("country = 'US'; DROP TABLE events")

    def test_non_boolean_statement_is_invalid(self):
        with pytest.raises(InvalidRequestError):
            parse_filter("SELECT 1")

    def test_subquery_is_invalid(self):
        with pytest.raises(InvalidRequestError):
            parse_filter("country IN (SELECT country FROM users)")

    def test_parses_are_independent(self):
        """Each call builds its own tree"""
        first = parse_filter("a = 1")
        second = parse_filter("b = 2")

        assert first.columns == {"a"}
        assert second.columns == {"b"}


class TestResolvability:
    """Tests for is_resolvable"""

    def test_columns_in_dimensions(self):
        expression = parse_filter("country = 'US' OR (device IS NULL AND country <> 'DE')")

        assert is_resolvable(expression.tree, {"country", "device"})
        assert not is_resolvable(expression.tree, {"country"})

    def test_qualified_column_is_unresolvable(self):
        """Multi-part names can never be proven against a rollup"""
        expression = parse_filter("events.country = 'US'")

        assert filter_columns(expression.tree) == {"country"}
        assert not is_resolvable(expression.tree, {"country"})

    def test_literal_only_filter_is_resolvable(self):
        expression = parse_filter("1 = 1")

        assert is_resolvable(expression.tree, set())

    def test_function_arguments_are_checked(self):
        expression = parse_filter("lower(city) = 'berlin'")

        assert filter_columns(expression.tree) == {"city"}
        assert not is_resolvable(expression.tree, {"country"})
