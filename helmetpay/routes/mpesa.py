import logging
from datetime import date
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from ..auth import get_current_advertiser
from ..config import get_settings
from ..db import get_session
from ..ratelimit import limiter
from ..schemas import (
    ManualReceiptRequest,
    MpesaInitiateRequest,
    MpesaQueryRequest,
    PaybillDetails,
    PaymentDetailResponse,
    PaymentListResponse,
    PaymentResult,
    PaymentStatsResponse,
)
from ..services.payment_store import (
    DEFAULT_PER_PAGE,
    MAX_PER_PAGE,
    get_payment_by_checkout_id,
    get_payment_by_reference,
    get_payment_stats,
    list_payments,
    serialize_payment,
)
from ..services.payments import PaymentOrchestrator, get_payment_orchestrator

router = APIRouter(tags=["payments"])

logger = logging.getLogger(__name__)

CALLBACK_ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}


def _payments_rate_limit() -> str:
    return get_settings().payments_rate_limit


def _ensure_same_advertiser(requested: Optional[int], advertiser_id: int) -> None:
    if requested is not None and requested != advertiser_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unauthorized access")


def _result_response(result: Dict[str, Any], failure_status: int) -> JSONResponse:
    body = PaymentResult.model_validate(result).model_dump(mode="json", exclude_none=True)
    code = status.HTTP_200_OK if result.get("success") else failure_status
    return JSONResponse(status_code=code, content=body)


@router.post("/payments/mpesa/initiate", response_model=PaymentResult)
@limiter.limit(_payments_rate_limit)
async def initiate_mpesa_payment(
    request: Request,
    payload: MpesaInitiateRequest,
    advertiser_id: int = Depends(get_current_advertiser),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    _ensure_same_advertiser(payload.advertiser_id, advertiser_id)
    result = await orchestrator.initiate_stk_push(
        advertiser_id=advertiser_id,
        amount=payload.amount,
        phone_number=payload.phone_number,
        campaign_id=payload.campaign_id,
        campaign_data=payload.campaign_data.model_dump() if payload.campaign_data else None,
        description=payload.description,
    )
    return _result_response(result, status.HTTP_400_BAD_REQUEST)


@router.post("/payments/mpesa/query")
async def query_mpesa_payment(
    payload: MpesaQueryRequest,
    advertiser_id: int = Depends(get_current_advertiser),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    async with get_session() as session:
        payment = await get_payment_by_checkout_id(
            session, payload.checkout_request_id, advertiser_id=advertiser_id
        )
    if payment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")
    return await orchestrator.query_payment_status(payload.checkout_request_id)


@router.post("/payments/mpesa/verify-receipt", response_model=PaymentResult)
async def verify_mpesa_receipt(
    payload: ManualReceiptRequest,
    advertiser_id: int = Depends(get_current_advertiser),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    _ensure_same_advertiser(payload.advertiser_id, advertiser_id)
    result = await orchestrator.verify_manual_receipt(
        advertiser_id=advertiser_id,
        receipt_number=payload.receipt_number,
        amount=payload.amount,
        phone_number=payload.phone_number,
        campaign_id=payload.campaign_id,
        campaign_data=payload.campaign_data.model_dump() if payload.campaign_data else None,
    )
    return _result_response(result, status.HTTP_422_UNPROCESSABLE_ENTITY)


@router.get("/payments/mpesa/{reference}", response_model=PaymentDetailResponse)
async def get_mpesa_payment(reference: str, advertiser_id: int = Depends(get_current_advertiser)):
    async with get_session() as session:
        payment = await get_payment_by_reference(session, reference, advertiser_id=advertiser_id)
    if payment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")
    return {"success": True, "payment": serialize_payment(payment)}


@router.get("/payments/mpesa/{reference}/paybill", response_model=PaybillDetails)
async def get_mpesa_paybill_instructions(
    reference: str,
    advertiser_id: int = Depends(get_current_advertiser),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    async with get_session() as session:
        payment = await get_payment_by_reference(session, reference, advertiser_id=advertiser_id)
    if payment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")
    return orchestrator.get_paybill_instructions(payment)


@router.get("/payments", response_model=PaymentListResponse)
async def list_advertiser_payments(
    advertiser_id: int = Depends(get_current_advertiser),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    payment_method: Optional[str] = None,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    campaign_id: Optional[int] = None,
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=DEFAULT_PER_PAGE, ge=1, le=MAX_PER_PAGE),
):
    async with get_session() as session:
        return await list_payments(
            session,
            advertiser_id,
            status=status_filter,
            payment_method=payment_method,
            from_date=from_date,
            to_date=to_date,
            campaign_id=campaign_id,
            page=page,
            per_page=per_page,
        )


@router.get("/payments/stats", response_model=PaymentStatsResponse)
async def advertiser_payment_stats(advertiser_id: int = Depends(get_current_advertiser)):
    async with get_session() as session:
        return await get_payment_stats(session, advertiser_id)


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return None


@router.post("/mpesa/callback")
async def mpesa_callback(
    request: Request,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    body = await _read_json(request)
    processed = await orchestrator.process_callback(body)
    if not processed:
        logger.warning(
            "M-Pesa callback not applied",
            extra={"client": request.client.host if request.client else None},
        )
    # Safaricom retries anything that is not acknowledged; outcome is tracked on our side.
    return CALLBACK_ACK


@router.post("/mpesa/timeout")
async def mpesa_timeout(
    request: Request,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    await orchestrator.process_timeout(await _read_json(request))
    return {"ResultCode": 0, "ResultDesc": "Timeout acknowledged"}
