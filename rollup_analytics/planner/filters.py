"""
Filter Expressions

Filters arrive as SQL boolean expressions. Each call parses on its own
(sqlglot holds no shared parser state), and the checks below are pure
recursive walks over the resulting expression tree.
"""

from dataclasses import dataclass
from typing import Iterator, Optional, Set

import sqlglot
from sqlglot import exp
from sqlglot.errors import ParseError, TokenError

from rollup_analytics.errors import InvalidRequestError

DIALECT = "postgres"


@dataclass(frozen=True)
class FilterExpression:
    """A parsed filter"""
    source: str
    tree: exp.Expression

    def sql(self) -> str:
        """Render the parsed tree, dropping anything the parser did not accept"""
        return self.tree.sql(dialect=DIALECT)

    @property
    def columns(self) -> Set[str]:
        return filter_columns(self.tree)


def parse_filter(text: Optional[str]) -> Optional[FilterExpression]:
    """
    Parse a filter expression.

    Returns:
        None for a missing or blank filter

    Raises:
        InvalidRequestError: not exactly one boolean expression, or the
            expression contains a sub-query
    """
    if text is None or not text.strip():
        return None

    try:
        statements = [s for s in sqlglot.parse(text, read=DIALECT) if s is not None]
    except (ParseError, TokenError) as e:
        raise InvalidRequestError(f"Invalid filter expression: {e}") from e

    if len(statements) != 1:
        raise InvalidRequestError("Filter must be a single expression")
    tree = statements[0]
    if not isinstance(tree, exp.Condition):
        raise InvalidRequestError(f"Filter must be a boolean expression, got {tree.key}")
    if tree.find(exp.Select) is not None:
        raise InvalidRequestError("Sub-queries are not allowed in filters")

    return FilterExpression(text, tree)


def column_references(node: exp.Expression) -> Iterator[exp.Column]:
    if isinstance(node, exp.Column):
        yield node
        return
    for child in node.iter_expressions():
        yield from column_references(child)


def filter_columns(node: exp.Expression) -> Set[str]:
    """Unqualified names of every column the filter touches"""
    return {column.name for column in column_references(node)}


def is_qualified(column: exp.Column) -> bool:
    return bool(column.table)


def is_resolvable(node: exp.Expression, dimensions: Set[str]) -> bool:
    """
    True when every column in the tree is a single-part name found in
    `dimensions`. Qualified names can never be proven against a rollup.
    """
    if isinstance(node, exp.Column):
        return not is_qualified(node) and node.name in dimensions
    return all(is_resolvable(child, dimensions) for child in node.iter_expressions())
