"""
SQLAlchemy DeclarativeBase models.

Venue is a read-only mirror of the host application's venues table; its
migrations live with the host. The two dedup tables below it are owned
here and created by init_schema().
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class Venue(Base):
    """Read-only mirror. NEVER create this table from here."""

    __tablename__ = "venues"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    normalized_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    slug: Mapped[Optional[str]] = mapped_column(String, unique=True, nullable=True)
    address: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    city_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    # "metadata" is reserved on declarative classes
    venue_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSONB, nullable=True)
    provider_ids: Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True)
    inserted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class VenueDuplicateExclusion(Base):
    """A pair of venues a reviewer declared distinct. Always stored smaller id first."""

    __tablename__ = "venue_duplicate_exclusions"
    __table_args__ = (
        UniqueConstraint("venue_id_1", "venue_id_2", name="uq_venue_duplicate_exclusions_pair"),
        CheckConstraint("venue_id_1 < venue_id_2", name="ck_venue_duplicate_exclusions_ordered"),
        Index("idx_venue_duplicate_exclusions_venue_2", "venue_id_2"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    venue_id_1: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("venues.id", ondelete="CASCADE"), nullable=False
    )
    venue_id_2: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("venues.id", ondelete="CASCADE"), nullable=False
    )
    excluded_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    inserted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class VenueMergeAudit(Base):
    """Append-only. One row per committed merge; NEVER update rows from this table."""

    __tablename__ = "venue_merge_audits"
    __table_args__ = (
        Index("idx_venue_merge_audits_source", "source_venue_id"),
        Index("idx_venue_merge_audits_target", "target_venue_id"),
        Index("idx_venue_merge_audits_inserted_at", "inserted_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    # Plain value: the source row is deleted by the merge that writes this audit
    source_venue_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    target_venue_id: Mapped[Optional[int]] = mapped_column(
        BigInteger, ForeignKey("venues.id", ondelete="SET NULL"), nullable=True
    )
    merged_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    merge_reason: Mapped[str] = mapped_column(String, nullable=False, server_default="manual")
    similarity_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    distance_meters: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    reassignment_counts: Mapped[dict] = mapped_column(JSONB, nullable=False, server_default="{}")
    source_snapshot: Mapped[dict] = mapped_column(JSONB, nullable=False)
    inserted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


ENGINE_OWNED_TABLES = (
    VenueDuplicateExclusion.__tablename__,
    VenueMergeAudit.__tablename__,
)
