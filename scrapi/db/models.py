"""
SQLAlchemy ORM models for the staging datastore.

Organized into sections:
- Staging Tables (written by this service)
- Downstream Tables (filled by database triggers, read-only here)
"""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSON
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from scrapi.core.constants import STAGING_TABLE
from scrapi.core.models import StagingStatus
from scrapi.db.database import Base


# ==============================================================================
# Staging Tables
# ==============================================================================


class StagingSerpModel(Base):
    """One normalized SERP scrape awaiting trigger-based processing."""

    __tablename__ = STAGING_TABLE
    __table_args__ = (UniqueConstraint("job_id", name="staging_serps_job_id_key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    job_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    query: Mapped[str] = mapped_column(Text, nullable=False)
    location: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[str] = mapped_column(String(64), nullable=False)
    content: Mapped[dict] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=StagingStatus.PENDING.value, nullable=False, index=True
    )
    error_message: Mapped[str | None] = mapped_column(Text)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


# ==============================================================================
# Downstream Tables
# ==============================================================================


class SerpModel(Base):
    """SERP row created by the staging trigger."""

    __tablename__ = "serps"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    job_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    query: Mapped[str | None] = mapped_column(Text)
    location: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class SerpAdModel(Base):
    """Ad placement on a SERP, created by the staging trigger."""

    __tablename__ = "serp_ads"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    serp_id: Mapped[int] = mapped_column(ForeignKey("serps.id"), nullable=False, index=True)
    ad_id: Mapped[int | None] = mapped_column(Integer)
    position: Mapped[int | None] = mapped_column(Integer)
