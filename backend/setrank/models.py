from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.sql import func

from .db import Base
from .services.rating import DEFAULT_RATING


class LiveSet(Base):
    """A live-music set a user has logged."""

    __tablename__ = "live_set"
    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False)
    artist_name = Column(String, nullable=False)
    location_name = Column(String, nullable=False)
    event_name = Column(String, nullable=True)
    event_date = Column(Date, nullable=True)
    notes = Column(Text, nullable=True)
    source = Column(String, nullable=False, default="manual")  # catalog the set came from
    external_id = Column(String, nullable=True)
    bucket = Column(String, nullable=False)  # "liked" | "neutral" | "disliked"
    rating = Column(Float, nullable=False, default=DEFAULT_RATING)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "bucket IN ('liked', 'neutral', 'disliked')", name="ck_live_set_bucket"
        ),
        Index("ix_live_set_owner_bucket", "owner_id", "bucket"),
    )


class Comparison(Base):
    """Append-only record of one pairwise decision."""

    __tablename__ = "comparison"
    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False)
    winner_set_id = Column(String, ForeignKey("live_set.id"), nullable=False)
    loser_set_id = Column(String, ForeignKey("live_set.id"), nullable=False)
    comparison_key = Column(String(64), nullable=False)
    compared_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("comparison_key", name="uq_comparison_comparison_key"),
        CheckConstraint(
            "winner_set_id <> loser_set_id", name="ck_comparison_distinct_sets"
        ),
    )
