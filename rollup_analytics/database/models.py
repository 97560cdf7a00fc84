"""
Database Models - Rollup Catalog

Two catalog tables describe the rollups a project owns:

- MaterializedViewRecord: rollups with an explicit refresh cadence and a
  persisted freshness timestamp (epoch seconds)
- ContinuousQueryRecord: rollups maintained by an external streaming process

`options` and `partition_keys` hold JSON text.
"""

from typing import Optional

from sqlalchemy import BigInteger, Boolean, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


class MaterializedViewRecord(Base):
    """Materialized view catalog row"""
    __tablename__ = "materialized_views"

    project: Mapped[str] = mapped_column(String(255), primary_key=True)
    table_name: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    query: Mapped[str] = mapped_column(Text, nullable=False)
    update_interval: Mapped[Optional[int]] = mapped_column(BigInteger)  # milliseconds
    last_updated: Mapped[Optional[int]] = mapped_column(BigInteger)  # epoch seconds
    incremental: Mapped[bool] = mapped_column(Boolean, default=False)
    options: Mapped[Optional[str]] = mapped_column(Text)


class ContinuousQueryRecord(Base):
    """Continuous query catalog row"""
    __tablename__ = "continuous_query_metadata"

    project: Mapped[str] = mapped_column(String(255), primary_key=True)
    table_name: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    query: Mapped[str] = mapped_column(Text, nullable=False)
    partition_keys: Mapped[Optional[str]] = mapped_column(Text)
    options: Mapped[Optional[str]] = mapped_column(Text)
