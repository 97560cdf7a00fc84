"""
Identifier Validation

Every name spliced into generated SQL passes through here.
"""

import re

from rollup_analytics.errors import InvalidRequestError

_PROJECT_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")


def check_project(project: str) -> str:
    """Validate a project (schema) name"""
    if not project or not _PROJECT_PATTERN.match(project):
        raise InvalidRequestError(f"Project name '{project}' is not valid")
    return project


def quote_identifier(name: str) -> str:
    """Quote a table or column name for PostgreSQL"""
    if not name or "\x00" in name:
        raise InvalidRequestError(f"Identifier '{name}' is not valid")
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    """Quote a string literal"""
    if "\x00" in value:
        raise InvalidRequestError("String literal contains a NUL character")
    return "'" + value.replace("'", "''") + "'"


def check_collection(collection: str) -> str:
    """Validate and quote a collection (table) name"""
    return quote_identifier(collection)
