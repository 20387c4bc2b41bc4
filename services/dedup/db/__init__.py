"""
SQLAlchemy async database module.

Re-exports engine, session, and model utilities for the review service.
"""

from services.dedup.db.engine import create_engine, init_schema
from services.dedup.db.session import get_db, get_pool
from services.dedup.db.models import (
    Base,
    Venue,
    VenueDuplicateExclusion,
    VenueMergeAudit,
)

__all__ = [
    "create_engine",
    "init_schema",
    "get_db",
    "get_pool",
    "Base",
    "Venue",
    "VenueDuplicateExclusion",
    "VenueMergeAudit",
]
