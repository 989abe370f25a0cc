from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

MIN_PAYMENT_AMOUNT = 1
MAX_PAYMENT_AMOUNT = 150000

# Kenyan mobile number as typed by a user: 2547XXXXXXXX, 07XXXXXXXX, 7XXXXXXXX (also 1XX ranges)
PHONE_PATTERN = r"^(254|0)?[17]\d{8}$"


class CampaignData(BaseModel):
    name: str = Field(max_length=255)
    helmet_count: int = Field(ge=1, le=10000)
    duration: int = Field(ge=1, le=365)

    model_config = ConfigDict(extra="allow")


class MpesaInitiateRequest(BaseModel):
    advertiser_id: Optional[int] = Field(default=None, ge=1)
    amount: Decimal = Field(ge=MIN_PAYMENT_AMOUNT, le=MAX_PAYMENT_AMOUNT, decimal_places=2)
    phone_number: str = Field(pattern=PHONE_PATTERN)
    campaign_id: Optional[int] = Field(default=None, ge=1)
    campaign_data: Optional[CampaignData] = None
    description: Optional[str] = Field(default=None, max_length=500)


class MpesaQueryRequest(BaseModel):
    checkout_request_id: str = Field(min_length=10, max_length=100)


class ManualReceiptRequest(BaseModel):
    advertiser_id: Optional[int] = Field(default=None, ge=1)
    receipt_number: str = Field(min_length=8, max_length=20)
    amount: Decimal = Field(ge=MIN_PAYMENT_AMOUNT, le=MAX_PAYMENT_AMOUNT, decimal_places=2)
    phone_number: str = Field(pattern=PHONE_PATTERN)
    campaign_id: Optional[int] = Field(default=None, ge=1)
    campaign_data: Optional[CampaignData] = None


class PaybillDetails(BaseModel):
    paybill_number: str
    account_number: Optional[str] = None
    amount: str
    currency: str
    steps: List[str]


class PaymentResult(BaseModel):
    """Common envelope for initiate / verify responses."""

    success: bool
    message: str
    error: Optional[str] = None
    reference: Optional[str] = None
    payment_id: Optional[str] = None
    status: Optional[str] = None
    checkout_request_id: Optional[str] = None
    phone_number: Optional[str] = None
    receipt_number: Optional[str] = None
    paybill_details: Optional[PaybillDetails] = None


class PaymentSchema(BaseModel):
    id: str
    reference: str
    advertiser_id: int
    campaign_id: Optional[int] = None
    amount: str
    currency: str
    status: str
    status_message: Optional[str] = None
    mpesa_receipt: Optional[str] = None
    payment_method: str
    payment_gateway: str
    verification_method: Optional[str] = None
    phone_number: Optional[str] = None
    checkout_request_id: Optional[str] = None
    stk_push_attempts: int = 0
    initiated_at: Optional[str] = None
    processed_at: Optional[str] = None
    completed_at: Optional[str] = None
    failed_at: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class PaymentDetailResponse(BaseModel):
    success: bool = True
    payment: PaymentSchema


class Pagination(BaseModel):
    total: int
    per_page: int
    current_page: int
    last_page: int
    from_: Optional[int] = Field(default=None, alias="from")
    to: Optional[int] = None

    model_config = ConfigDict(populate_by_name=True)


class PaymentListResponse(BaseModel):
    success: bool = True
    payments: List[PaymentSchema]
    pagination: Pagination


class PaymentStatsResponse(BaseModel):
    total_payments: int
    completed_payments: int
    pending_payments: int
    awaiting_verification: int
    failed_payments: int
    total_amount_paid: str
    total_pending_amount: str
