"""
Rollup Analytics Engine

Event analytics over PostgreSQL that answers requests from rollup tables
when it can and from raw collections when it must.
"""

__version__ = "1.0.0"
