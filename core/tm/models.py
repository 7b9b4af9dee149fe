"""
Translation Memory Database Models
SQLAlchemy models for TM entries and the usage trace.
"""
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import (
    String, Text, Integer, Float, DateTime,
    ForeignKey, Index, event, create_engine
)
from sqlalchemy.orm import Mapped, mapped_column, declarative_base
import uuid

from .normalizer import normalize, hash_normalized

Base = declarative_base()


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite stores no tz)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TMEntry(Base):
    """
    A stored reusable source -> target translation.

    (source_hash, target_language, domain_context) is unique. SQLite treats
    NULLs as distinct in unique indexes, so the index runs over context_key,
    which mirrors domain_context with "" for no context.
    """

    __tablename__ = "translation_memory"

    # Primary key
    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )

    # Text content
    source_text: Mapped[str] = mapped_column(Text, nullable=False)
    target_text: Mapped[str] = mapped_column(Text, nullable=False)

    # Lookup
    source_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    source_normalized: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Language pair
    source_language: Mapped[str] = mapped_column(String(16), nullable=False)
    target_language: Mapped[str] = mapped_column(String(16), nullable=False)

    # Scope
    domain_context: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    context_key: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    provider_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Quality & usage (null quality = unrated)
    quality_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    usage_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    last_used_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        Index("idx_tm_identity", "source_hash", "target_language", "context_key", unique=True),
        Index("idx_tm_target_lang", "target_language"),
        Index("idx_tm_quality", "quality_score"),
        Index("idx_tm_last_used", "last_used_at"),
    )

    def __repr__(self):
        src = self.source_text[:30] + "..." if len(self.source_text) > 30 else self.source_text
        return f"<TMEntry {src} -> {self.target_language}>"

    @property
    def identity(self) -> tuple:
        return (self.source_hash, self.target_language, self.domain_context)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "source_text": self.source_text,
            "target_text": self.target_text,
            "source_hash": self.source_hash,
            "source_language": self.source_language,
            "target_language": self.target_language,
            "domain_context": self.domain_context,
            "provider_id": self.provider_id,
            "quality_score": self.quality_score,
            "usage_count": self.usage_count,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class TMUsage(Base):
    """Append-only trace of a TM entry applied to a translation."""

    __tablename__ = "translation_memory_usage"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    entry_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("translation_memory.id", ondelete="CASCADE"),
        nullable=False
    )
    consumer_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    match_confidence: Mapped[float] = mapped_column(Float, nullable=False)
    applied_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        Index("idx_tm_usage_entry", "entry_id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entry_id": self.entry_id,
            "consumer_ref": self.consumer_ref,
            "match_confidence": self.match_confidence,
            "applied_at": self.applied_at.isoformat() if self.applied_at else None,
        }


# ==================== EVENT LISTENERS ====================

@event.listens_for(TMEntry, "before_insert")
@event.listens_for(TMEntry, "before_update")
def sync_entry_fields(mapper, connection, target):
    """Keep context_key and the normalized source in step with their inputs."""
    target.context_key = target.domain_context or ""
    if not target.source_normalized:
        target.source_normalized = normalize(target.source_text)
    if not target.source_hash:
        target.source_hash = hash_normalized(target.source_normalized)


# ==================== DATABASE SETUP ====================

def get_engine(db_path: str = "data/tm.db"):
    """Create SQLAlchemy engine."""
    from pathlib import Path
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(
        f"sqlite:///{db_path}",
        echo=False,
        connect_args={"check_same_thread": False},
    )


def create_tables(engine=None):
    """Create all TM tables."""
    if engine is None:
        engine = get_engine()
    Base.metadata.create_all(engine)
    return engine
