"""
Database schema definitions for lookupguard's SQLite stores.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List

from sqlalchemy import CheckConstraint, Column, Index, Integer, MetaData, Table, Text
from sqlalchemy.dialects import sqlite
from sqlalchemy.schema import CreateIndex, CreateTable

from lookupguard.protocols import RetryItemType

# Using a standard naming convention for database objects
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=convention)

_ITEM_TYPES = ", ".join(f"'{item_type.value}'" for item_type in RetryItemType)

# Timestamps are ISO-8601 UTC text with a fixed microsecond width, so text
# order is time order.

retry_queue_table = Table(
    "scraper_retry_queue",
    metadata,
    Column("id", Text, primary_key=True),
    Column("session_id", Text, nullable=False),
    Column("item_type", Text, nullable=False),
    Column("item_data", Text, nullable=False, comment="JSON payload needed to replay the operation"),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("next_retry_time", Text, nullable=False),
    Column("created_at", Text, nullable=False),
    Column("updated_at", Text, nullable=False),
    CheckConstraint(f"item_type IN ({_ITEM_TYPES})", name="item_type"),
)

Index("ix_scraper_retry_queue_session_id", retry_queue_table.c.session_id)
Index("ix_scraper_retry_queue_next_retry_time", retry_queue_table.c.next_retry_time)
Index(
    "ix_scraper_retry_queue_session_retry",
    retry_queue_table.c.session_id,
    retry_queue_table.c.next_retry_time,
)
Index("ix_scraper_retry_queue_item_type", retry_queue_table.c.item_type)


provider_cache_table = Table(
    "provider_lookup_cache",
    metadata,
    Column("phone_number", Text, primary_key=True),
    Column("provider", Text, nullable=False),
    Column("last_checked", Text, nullable=False),
)

Index("ix_provider_lookup_cache_last_checked", provider_cache_table.c.last_checked)


def format_timestamp(value: datetime) -> str:
    """Fixed-width UTC ISO-8601, so lexical order equals chronological order."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value)


def create_statements(table: Table) -> List[str]:
    """Render idempotent SQLite DDL for ``table`` and its indexes."""
    dialect = sqlite.dialect()
    statements = [str(CreateTable(table, if_not_exists=True).compile(dialect=dialect))]
    for index in sorted(table.indexes, key=lambda idx: idx.name or ""):
        statements.append(str(CreateIndex(index, if_not_exists=True).compile(dialect=dialect)))
    return statements
