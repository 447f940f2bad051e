"""Earner aggregate carrying the points ledger counters."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from rewards_api.db.base import Base


class Earner(Base):
    """Points holder whose balance funds redemption payouts."""

    __tablename__ = "earners"
    __table_args__ = (
        CheckConstraint("total_points >= 0", name="ck_earners_total_points_non_negative"),
        CheckConstraint("redeemed_points >= 0", name="ck_earners_redeemed_points_non_negative"),
        CheckConstraint("redeemed_points <= total_points", name="ck_earners_redeemed_within_total"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    external_ref = Column(String, nullable=True, unique=True, index=True)
    display_name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    total_points = Column(Integer, nullable=False, default=0, server_default="0")
    redeemed_points = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    redemptions = relationship(
        "RedemptionRequest", back_populates="earner", cascade="all, delete-orphan"
    )
