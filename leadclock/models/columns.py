"""
Shared column helpers.
JSON columns map to JSONB on PostgreSQL and plain JSON elsewhere.
"""
from sqlalchemy import Column, JSON
from sqlalchemy.dialects.postgresql import JSONB


def json_column(**kwargs) -> Column:
    """Build a fresh JSON column (a Column object cannot be shared between tables)."""
    return Column(JSON().with_variant(JSONB(), "postgresql"), **kwargs)
