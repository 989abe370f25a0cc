from __future__ import annotations

import logging
import math
import uuid
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Payment, PaymentStatus
from ..payments.errors import DuplicateCheckoutId, DuplicateReceipt

logger = logging.getLogger(__name__)

DEFAULT_PER_PAGE = 15
MAX_PER_PAGE = 100
OPEN_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def merge_details(existing: Optional[Dict[str, Any]], extra: Dict[str, Any]) -> Dict[str, Any]:
    """Append-only merge for the JSON blobs; returns a new dict so the ORM sees a change."""
    merged = dict(existing or {})
    merged.update(extra)
    return merged


async def create_payment(session: AsyncSession, payment: Payment) -> Payment:
    session.add(payment)
    try:
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    await session.refresh(payment)
    return payment


async def get_payment(session: AsyncSession, payment_id: uuid.UUID) -> Optional[Payment]:
    return await session.get(Payment, payment_id, populate_existing=True)


async def get_payment_by_reference(
    session: AsyncSession,
    reference: str,
    *,
    advertiser_id: Optional[int] = None,
) -> Optional[Payment]:
    stmt = select(Payment).where(Payment.payment_reference == reference)
    if advertiser_id is not None:
        stmt = stmt.where(Payment.advertiser_id == advertiser_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_payment_by_checkout_id(
    session: AsyncSession,
    checkout_request_id: str,
    *,
    advertiser_id: Optional[int] = None,
) -> Optional[Payment]:
    stmt = select(Payment).where(Payment.gateway_transaction_id == checkout_request_id)
    if advertiser_id is not None:
        stmt = stmt.where(Payment.advertiser_id == advertiser_id)
    result = await session.execute(stmt.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


async def receipt_in_use(session: AsyncSession, receipt_number: str) -> bool:
    result = await session.execute(
        select(Payment.id).where(Payment.mpesa_receipt_number == receipt_number)
    )
    return result.first() is not None


def _translate_integrity_error(exc: IntegrityError, values: Dict[str, Any]) -> Exception:
    if values.get("mpesa_receipt_number"):
        return DuplicateReceipt(receipt_number=values["mpesa_receipt_number"])
    if values.get("gateway_transaction_id"):
        return DuplicateCheckoutId(checkout_request_id=values["gateway_transaction_id"])
    return exc


async def transition_payment(
    session: AsyncSession,
    payment_id: uuid.UUID,
    target: str,
    values: Dict[str, Any],
    *,
    sources: Optional[Iterable[str]] = None,
) -> bool:
    """Compare-and-set a status change.

    The row is only updated while its status is one the target may be reached
    from, so exactly one concurrent writer wins. Returns ``True`` for the winner.
    Unique-constraint violations surface as ``DuplicateReceipt`` or
    ``DuplicateCheckoutId``.
    """
    allowed = PaymentStatus.sources_for(target)
    if sources is not None:
        allowed = allowed & frozenset(sources)
    if not allowed:
        raise ValueError(f"No valid transition into {target!r}")

    stmt = update(Payment).where(
        Payment.id == payment_id,
        Payment.status.in_(sorted(allowed)),
    )
    if "gateway_transaction_id" in values:
        # correlation id is write-once
        stmt = stmt.where(Payment.gateway_transaction_id.is_(None))
    stmt = stmt.values(status=target, **values).execution_options(synchronize_session=False)

    try:
        result = await session.execute(stmt)
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        translated = _translate_integrity_error(exc, values)
        if translated is exc:
            raise
        raise translated from exc
    except Exception:
        await session.rollback()
        raise

    won = result.rowcount == 1
    if not won:
        logger.info(
            "Payment transition skipped; status already moved",
            extra={"payment_id": str(payment_id), "target": target},
        )
    return won


def serialize_payment(payment: Payment) -> Dict[str, Any]:
    def iso(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    return {
        "id": str(payment.id),
        "reference": payment.payment_reference,
        "advertiser_id": payment.advertiser_id,
        "campaign_id": payment.campaign_id,
        "amount": str(payment.amount),
        "currency": payment.currency,
        "status": payment.status,
        "status_message": payment.status_message,
        "mpesa_receipt": payment.mpesa_receipt,
        "payment_method": payment.payment_method,
        "payment_gateway": payment.payment_gateway,
        "verification_method": payment.verification_method,
        "phone_number": payment.phone_number,
        "checkout_request_id": payment.gateway_transaction_id,
        "stk_push_attempts": payment.stk_push_attempts,
        "initiated_at": iso(payment.initiated_at),
        "processed_at": iso(payment.processed_at),
        "completed_at": iso(payment.completed_at),
        "failed_at": iso(payment.failed_at),
        "metadata": payment.meta,
    }


async def list_payments(
    session: AsyncSession,
    advertiser_id: int,
    *,
    status: Optional[str] = None,
    payment_method: Optional[str] = None,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    campaign_id: Optional[int] = None,
    page: int = 1,
    per_page: int = DEFAULT_PER_PAGE,
) -> Dict[str, Any]:
    per_page = max(1, min(per_page, MAX_PER_PAGE))
    page = max(1, page)

    conditions = [Payment.advertiser_id == advertiser_id]
    if status:
        conditions.append(Payment.status == status)
    if payment_method:
        conditions.append(Payment.payment_method == payment_method)
    if from_date:
        conditions.append(Payment.initiated_at >= datetime.combine(from_date, time.min))
    if to_date:
        conditions.append(Payment.initiated_at < datetime.combine(to_date + timedelta(days=1), time.min))
    if campaign_id is not None:
        conditions.append(Payment.campaign_id == campaign_id)

    total = (
        await session.execute(select(func.count()).select_from(Payment).where(*conditions))
    ).scalar_one()
    rows = (
        await session.execute(
            select(Payment)
            .where(*conditions)
            .order_by(Payment.initiated_at.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        )
    ).scalars().all()

    first = (page - 1) * per_page + 1 if rows else None
    return {
        "success": True,
        "payments": [serialize_payment(p) for p in rows],
        "pagination": {
            "total": int(total or 0),
            "per_page": per_page,
            "current_page": page,
            "last_page": max(1, math.ceil((total or 0) / per_page)),
            "from": first,
            "to": first + len(rows) - 1 if first else None,
        },
    }


async def get_payment_stats(session: AsyncSession, advertiser_id: int) -> Dict[str, Any]:
    async def _count(*statuses: str) -> int:
        stmt = select(func.count()).select_from(Payment).where(Payment.advertiser_id == advertiser_id)
        if statuses:
            stmt = stmt.where(Payment.status.in_(statuses))
        return int((await session.execute(stmt)).scalar_one() or 0)

    async def _sum(*statuses: str) -> Decimal:
        stmt = select(func.coalesce(func.sum(Payment.amount), 0)).where(
            Payment.advertiser_id == advertiser_id,
            Payment.status.in_(statuses),
        )
        value = (await session.execute(stmt)).scalar_one()
        return Decimal(str(value or 0)).quantize(Decimal("0.01"))

    return {
        "total_payments": await _count(),
        "completed_payments": await _count(PaymentStatus.COMPLETED),
        "pending_payments": await _count(*OPEN_STATUSES),
        "awaiting_verification": await _count(PaymentStatus.PENDING_VERIFICATION),
        "failed_payments": await _count(PaymentStatus.FAILED),
        "total_amount_paid": str(await _sum(PaymentStatus.COMPLETED)),
        "total_pending_amount": str(await _sum(*OPEN_STATUSES)),
    }
