"""Redemption request records and settlement run bookkeeping."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    false,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from rewards_api.db.base import Base


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class PayoutMethod(str, Enum):
    """Closed set of payout channels."""

    UPI = "upi"
    WALLET = "wallet"


class RedemptionStatus(str, Enum):
    """Lifecycle statuses for redemption requests."""

    PENDING = "pending"
    PROCESSED = "processed"
    COMPLETED = "completed"
    FAILED = "failed"


class RedemptionFailureKind(str, Enum):
    """Why a redemption ended up failed."""

    REJECTED = "rejected"
    UNREACHABLE = "unreachable"
    MALFORMED = "malformed"
    GATEWAY_FAILED = "gateway_failed"
    INTERNAL = "internal"


class RedemptionRequest(Base):
    """A request to convert committed points into an external payout."""

    __tablename__ = "redemption_requests"
    __table_args__ = (
        CheckConstraint("points > 0", name="ck_redemption_requests_points_positive"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    earner_id = Column(
        UUID(as_uuid=True),
        ForeignKey("earners.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    points = Column(Integer, nullable=False)
    method = Column(
        SqlEnum(PayoutMethod, name="payout_method", values_callable=_enum_values),
        nullable=False,
    )
    destination_details = Column(String, nullable=False)
    status = Column(
        SqlEnum(RedemptionStatus, name="redemption_status", values_callable=_enum_values),
        nullable=False,
        default=RedemptionStatus.PENDING,
        server_default=RedemptionStatus.PENDING.value,
        index=True,
    )
    external_payout_id = Column(String, nullable=True, unique=True)
    external_status = Column(String, nullable=True)
    failure_reason = Column(Text, nullable=True)
    failure_kind = Column(
        SqlEnum(RedemptionFailureKind, name="redemption_failure_kind", values_callable=_enum_values),
        nullable=True,
    )
    points_refunded = Column(Boolean, nullable=False, default=False, server_default=false())
    reference_id = Column(String, nullable=True)
    idempotency_key = Column(String, nullable=True)
    settlement_attempts = Column(Integer, nullable=False, default=0, server_default="0")
    settlement_claimed_at = Column(DateTime(timezone=True), nullable=True)
    gateway_response = Column(JSON, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    last_reconciled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    earner = relationship("Earner", back_populates="redemptions")


class SettlementRun(Base):
    """Audit row for a single settlement batch pass."""

    __tablename__ = "settlement_runs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    triggered_by = Column(String, nullable=False)
    status = Column(String, nullable=False, default="running", server_default="running")
    pending_count = Column(Integer, nullable=False, default=0, server_default="0")
    processed_count = Column(Integer, nullable=False, default=0, server_default="0")
    failed_count = Column(Integer, nullable=False, default=0, server_default="0")
    skipped_count = Column(Integer, nullable=False, default=0, server_default="0")
    error_message = Column(Text, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    started_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
