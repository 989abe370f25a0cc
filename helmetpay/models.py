from __future__ import annotations

from datetime import datetime
from decimal import Decimal
import uuid
from typing import Dict, FrozenSet, Optional

from sqlalchemy import DateTime, Index, Integer, JSON, Numeric, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class TimestampMixin:
    """Common created/updated timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class PaymentStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    PENDING_VERIFICATION = "pending_verification"
    COMPLETED = "completed"
    FAILED = "failed"

    TERMINAL: FrozenSet[str] = frozenset({COMPLETED, FAILED})

    # target status -> statuses it may be reached from
    TRANSITIONS: Dict[str, FrozenSet[str]] = {
        PROCESSING: frozenset({PENDING}),
        COMPLETED: frozenset({PROCESSING, PENDING_VERIFICATION}),
        FAILED: frozenset({PENDING, PROCESSING, PENDING_VERIFICATION}),
    }

    @classmethod
    def sources_for(cls, target: str) -> FrozenSet[str]:
        return cls.TRANSITIONS.get(target, frozenset())

    @classmethod
    def can_transition(cls, current: str, target: str) -> bool:
        return current in cls.sources_for(target)

    @classmethod
    def is_terminal(cls, status: Optional[str]) -> bool:
        return status in cls.TERMINAL


class PaymentMethod:
    MPESA = "mpesa"


class PaymentGateway:
    SAFARICOM_MPESA = "safaricom_mpesa"


class VerificationMethod:
    AUTO_CALLBACK = "auto_callback"
    MANUAL_RECEIPT = "manual_receipt"


class Payment(Base, TimestampMixin):
    __tablename__ = "payments"
    __table_args__ = (
        Index("ix_payments_advertiser_status", "advertiser_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    payment_reference: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    advertiser_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    campaign_id: Mapped[Optional[int]] = mapped_column(Integer, index=True)

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="KES")
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False, default=PaymentMethod.MPESA)
    payment_gateway: Mapped[str] = mapped_column(
        String(32), nullable=False, default=PaymentGateway.SAFARICOM_MPESA
    )
    verification_method: Mapped[Optional[str]] = mapped_column(String(32))

    # MerchantRequestID / CheckoutRequestID from the push acknowledgment
    gateway_reference: Mapped[Optional[str]] = mapped_column(String(128))
    gateway_transaction_id: Mapped[Optional[str]] = mapped_column(String(128), unique=True)
    mpesa_receipt_number: Mapped[Optional[str]] = mapped_column(String(32), unique=True)
    phone_number: Mapped[Optional[str]] = mapped_column(String(15), index=True)
    paybill_account_number: Mapped[Optional[str]] = mapped_column(String(32))

    status: Mapped[str] = mapped_column(String(32), nullable=False, default=PaymentStatus.PENDING)
    status_message: Mapped[Optional[str]] = mapped_column(Text)
    stk_push_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_stk_push_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    initiated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    json_type = JSON().with_variant(JSONB, "postgresql")
    payment_details: Mapped[Optional[dict]] = mapped_column(json_type)
    # "metadata" is reserved on declarative classes
    meta: Mapped[Optional[dict]] = mapped_column("metadata", json_type)

    @property
    def mpesa_receipt(self) -> Optional[str]:
        """Receipt from the dedicated column, falling back to the stored callback payload."""
        if self.mpesa_receipt_number:
            return self.mpesa_receipt_number
        details = self.payment_details or {}
        if details.get("mpesa_receipt"):
            return details["mpesa_receipt"]
        callback = details.get("callback") or {}
        items = (
            callback.get("Body", {}).get("stkCallback", {}).get("CallbackMetadata", {}).get("Item", [])
        )
        for item in items or []:
            if isinstance(item, dict) and item.get("Name") == "MpesaReceiptNumber":
                return item.get("Value")
        return None

    def __repr__(self) -> str:
        return (
            f"Payment(id={self.id}, reference={self.payment_reference}, "
            f"advertiser_id={self.advertiser_id}, status={self.status})"
        )
