from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from functools import lru_cache
from typing import Any, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .. import db
from ..models import (
    Payment,
    PaymentGateway,
    PaymentMethod,
    PaymentStatus,
    VerificationMethod,
)
from ..notifications import PaymentEvent, PaymentOutcome, PaymentPublisher, build_publisher
from ..payments.errors import (
    DuplicateCheckoutId,
    DuplicateReceipt,
    GatewayUnavailable,
    InvalidAmount,
    InvalidPhoneFormat,
    InvalidReceiptFormat,
    OrphanCallback,
    PaymentError,
    ProviderRejected,
)
from ..payments.mpesa import (
    MpesaClient,
    MpesaConfig,
    StkCallback,
    generate_password,
    generate_payment_reference,
    generate_timestamp,
    is_valid_receipt_format,
    normalize_phone_number,
    normalize_receipt_number,
    parse_stk_callback,
)
from .payment_store import (
    create_payment,
    get_payment,
    get_payment_by_checkout_id,
    merge_details,
    receipt_in_use,
    transition_payment,
)

logger = logging.getLogger(__name__)

DEFAULT_DESCRIPTION = "Campaign Payment"
ACCEPTED_RESPONSE_CODE = "0"

SessionFactory = Callable[[], Any]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _whole_shillings(amount: Decimal) -> int:
    # STK Push only accepts whole units of currency
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _to_amount(raw: Any) -> Decimal:
    try:
        amount = Decimal(str(raw)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        raise InvalidAmount(amount=raw) from None
    if amount <= 0:
        raise InvalidAmount(amount=raw)
    return amount


def _push_accepted(response: Dict[str, Any]) -> bool:
    return str(response.get("ResponseCode", "")).strip() == ACCEPTED_RESPONSE_CODE


def _provider_error_message(response: Dict[str, Any]) -> str:
    return (
        response.get("errorMessage")
        or response.get("ResponseDescription")
        or response.get("message")
        or ProviderRejected.default_message
    )


def _reference_fields(reference: Optional[str], payment_id: Optional[uuid.UUID]) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    if reference:
        fields["reference"] = reference
    if payment_id:
        fields["payment_id"] = str(payment_id)
    return fields


class PaymentOrchestrator:
    """Owns every Payment state change for the M-Pesa flows.

    Public coroutines never raise: predictable failures come back as
    ``{"success": False, "message": ..., "error": <code>}`` and anything
    unexpected is logged and folded into the same shape.
    """

    def __init__(
        self,
        *,
        config: MpesaConfig,
        gateway: MpesaClient,
        session_factory: SessionFactory,
        publisher: PaymentPublisher,
    ) -> None:
        self.config = config
        self.gateway = gateway
        self.session_factory = session_factory
        self.publisher = publisher

    def _credentials(self) -> tuple[str, str]:
        timestamp = generate_timestamp(self.config.timezone)
        return timestamp, generate_password(self.config.short_code, self.config.passkey, timestamp)

    async def _require_token(self) -> str:
        token = await self.gateway.acquire_access_token()
        if not token:
            raise GatewayUnavailable()
        return token

    # ------------------------------------------------------------------ initiate

    async def initiate_stk_push(
        self,
        advertiser_id: int,
        amount: Any,
        phone_number: str,
        campaign_id: Optional[int] = None,
        campaign_data: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        reference: Optional[str] = None
        payment_id: Optional[uuid.UUID] = None
        try:
            phone = normalize_phone_number(phone_number)
            if not phone:
                raise InvalidPhoneFormat(phone_number=phone_number)
            value = _to_amount(amount)

            # No record is written when the provider cannot even be authenticated against.
            access_token = await self._require_token()
            timestamp, password = self._credentials()
            reference = generate_payment_reference()

            async with self.session_factory() as session:
                payment = await create_payment(
                    session,
                    Payment(
                        payment_reference=reference,
                        advertiser_id=advertiser_id,
                        campaign_id=campaign_id,
                        amount=value,
                        currency=self.config.currency,
                        payment_method=PaymentMethod.MPESA,
                        payment_gateway=PaymentGateway.SAFARICOM_MPESA,
                        verification_method=VerificationMethod.AUTO_CALLBACK,
                        phone_number=phone,
                        paybill_account_number=phone,
                        status=PaymentStatus.PENDING,
                        initiated_at=_utcnow(),
                        payment_details={},
                        meta={"phone_number": phone, "campaign_data": campaign_data},
                    ),
                )
                payment_id = payment.id
            logger.info(
                "Initiating M-Pesa STK Push",
                extra={
                    "payment_id": str(payment_id),
                    "reference": reference,
                    "advertiser_id": advertiser_id,
                    "amount": str(value),
                },
            )

            # no session is open across the gateway round trip
            response = await self.gateway.request_push(
                access_token,
                short_code=self.config.short_code,
                password=password,
                timestamp=timestamp,
                amount=_whole_shillings(value),
                phone_number=phone,
                callback_url=self.config.callback_url,
                account_reference=phone,
                description=description or DEFAULT_DESCRIPTION,
            )
            return await self._record_push_response(payment_id, reference, response)
        except PaymentError as exc:
            logger.warning(
                "STK Push not sent",
                extra={"error": exc.code, "reason": exc.message, "reference": reference},
            )
            return exc.to_result(**_reference_fields(reference, payment_id))
        except Exception as exc:
            logger.exception("STK Push error", extra={"reference": reference})
            return {
                "success": False,
                "message": f"An error occurred while processing payment: {exc}",
                "error": "internal_error",
                **_reference_fields(reference, payment_id),
            }

    async def _record_push_response(
        self,
        payment_id: uuid.UUID,
        reference: str,
        response: Dict[str, Any],
    ) -> Dict[str, Any]:
        now = _utcnow()
        async with self.session_factory() as session:
            payment = await get_payment(session, payment_id)
            if payment is None:
                raise RuntimeError(f"Payment {payment_id} vanished before the STK Push was recorded")
            details = merge_details(payment.payment_details, {"stk_push": response})

            error: PaymentError
            if _push_accepted(response):
                checkout_request_id = response.get("CheckoutRequestID")
                try:
                    won = await transition_payment(
                        session,
                        payment_id,
                        PaymentStatus.PROCESSING,
                        {
                            "gateway_reference": response.get("MerchantRequestID"),
                            "gateway_transaction_id": checkout_request_id,
                            "payment_details": details,
                            "processed_at": now,
                            "status_message": "STK Push sent; awaiting customer confirmation",
                            "stk_push_attempts": Payment.stk_push_attempts + 1,
                            "last_stk_push_at": now,
                        },
                    )
                except DuplicateCheckoutId as exc:
                    # another payment already owns this checkout id; keep the record, close it out
                    error = exc
                else:
                    if not won:
                        raise RuntimeError(f"Payment {payment_id} left the pending state before acknowledgment")
                    logger.info(
                        "STK Push initiated successfully",
                        extra={"payment_id": str(payment_id), "checkout_request_id": checkout_request_id},
                    )
                    refreshed = await get_payment(session, payment_id)
                    return {
                        "success": True,
                        "message": "Payment request sent successfully",
                        "reference": reference,
                        "payment_id": str(payment_id),
                        "checkout_request_id": checkout_request_id,
                        "phone_number": refreshed.phone_number,
                        "status": PaymentStatus.PROCESSING,
                        "paybill_details": self.get_paybill_instructions(refreshed),
                    }
            elif response.get("success") is False and "ResponseCode" not in response:
                # transport failure: timeout, HTTP error or unreadable body
                error = GatewayUnavailable(response.get("message"), response=response)
            else:
                error = ProviderRejected(_provider_error_message(response), response=response)

            await transition_payment(
                session,
                payment_id,
                PaymentStatus.FAILED,
                {
                    "gateway_reference": response.get("MerchantRequestID"),
                    "payment_details": details,
                    "processed_at": now,
                    "failed_at": now,
                    "status_message": error.message,
                },
            )
            logger.error(
                "STK Push initiation failed",
                extra={"payment_id": str(payment_id), "error": error.code, "response": response},
            )
            refreshed = await get_payment(session, payment_id)
            return error.to_result(
                reference=reference,
                payment_id=str(payment_id),
                status=PaymentStatus.FAILED,
                paybill_details=self.get_paybill_instructions(refreshed),
            )

    # ------------------------------------------------------------------ callback

    async def process_callback(self, raw_body: Any) -> bool:
        """Reconcile an STK callback. Returns ``False`` only for malformed or orphan callbacks
        (and unexpected faults); repeats for a settled payment are acknowledged as no-ops."""
        try:
            callback = parse_stk_callback(raw_body)
            async with self.session_factory() as session:
                payment = await get_payment_by_checkout_id(session, callback.checkout_request_id)
                if payment is None:
                    raise OrphanCallback(checkout_request_id=callback.checkout_request_id)

                payment_id = payment.id
                if PaymentStatus.is_terminal(payment.status):
                    logger.info(
                        "Duplicate M-Pesa callback ignored",
                        extra={"payment_id": str(payment_id), "status": payment.status},
                    )
                    return True

                if callback.is_success:
                    won = await self._complete_from_callback(session, payment, callback, raw_body)
                    outcome = PaymentOutcome.SUCCESS
                else:
                    won = await self._fail_from_callback(session, payment, callback, raw_body)
                    outcome = PaymentOutcome.FAILED
                if not won:
                    return True
                settled = await get_payment(session, payment_id)

            if settled is not None:
                await self._notify(settled, outcome)
            return True
        except PaymentError as exc:
            logger.error(
                "M-Pesa callback rejected",
                extra={"error": exc.code, "reason": exc.message, **exc.context},
            )
            return False
        except Exception:
            logger.exception("Callback processing error")
            return False

    async def _complete_from_callback(
        self,
        session: AsyncSession,
        payment: Payment,
        callback: StkCallback,
        raw_body: Any,
    ) -> bool:
        payment_id = payment.id
        receipt = callback.metadata.receipt_number
        values: Dict[str, Any] = {
            "status_message": "Payment completed successfully",
            "completed_at": _utcnow(),
            "verification_method": VerificationMethod.AUTO_CALLBACK,
            "payment_details": merge_details(
                payment.payment_details,
                {
                    "callback": raw_body,
                    "mpesa_receipt": receipt,
                    "transaction_date": callback.metadata.transaction_date,
                },
            ),
        }
        if receipt:
            values["mpesa_receipt_number"] = receipt
        try:
            won = await transition_payment(
                session, payment_id, PaymentStatus.COMPLETED, values, sources={PaymentStatus.PROCESSING}
            )
        except DuplicateReceipt:
            # Money still moved for this push; keep the receipt in details only.
            logger.error(
                "Callback receipt already claimed by another payment",
                extra={"payment_id": str(payment_id), "mpesa_receipt": receipt},
            )
            values.pop("mpesa_receipt_number", None)
            won = await transition_payment(
                session, payment_id, PaymentStatus.COMPLETED, values, sources={PaymentStatus.PROCESSING}
            )
        if won:
            logger.info(
                "Payment completed successfully",
                extra={"payment_id": str(payment_id), "mpesa_receipt": receipt},
            )
        return won

    async def _fail_from_callback(
        self,
        session: AsyncSession,
        payment: Payment,
        callback: StkCallback,
        raw_body: Any,
    ) -> bool:
        result_desc = callback.result_desc or "Payment failed"
        won = await transition_payment(
            session,
            payment.id,
            PaymentStatus.FAILED,
            {
                "status_message": result_desc,
                "failed_at": _utcnow(),
                "payment_details": merge_details(payment.payment_details, {"callback": raw_body}),
            },
            sources={PaymentStatus.PROCESSING},
        )
        if won:
            logger.warning(
                "Payment failed",
                extra={
                    "payment_id": str(payment.id),
                    "result_code": callback.result_code,
                    "result_desc": result_desc,
                },
            )
        return won

    async def process_timeout(self, raw_body: Any) -> bool:
        # Queue-timeout notices carry no final result; the STK callback or a query settles the payment.
        logger.warning("M-Pesa timeout callback received", extra={"body": raw_body})
        return True

    # ------------------------------------------------------------------ manual receipts

    async def verify_manual_receipt(
        self,
        advertiser_id: int,
        receipt_number: str,
        amount: Any,
        phone_number: str,
        campaign_id: Optional[int] = None,
        campaign_data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        receipt = normalize_receipt_number(receipt_number)
        reference: Optional[str] = None
        payment_id: Optional[uuid.UUID] = None
        try:
            logger.info(
                "Manual receipt verification initiated",
                extra={"advertiser_id": advertiser_id, "receipt": receipt},
            )
            phone = normalize_phone_number(phone_number)
            if not phone:
                raise InvalidPhoneFormat(phone_number=phone_number)
            value = _to_amount(amount)

            async with self.session_factory() as session:
                if await receipt_in_use(session, receipt):
                    raise DuplicateReceipt(receipt_number=receipt)

                reference = generate_payment_reference()
                now = _utcnow()
                payment = await create_payment(
                    session,
                    Payment(
                        payment_reference=reference,
                        advertiser_id=advertiser_id,
                        campaign_id=campaign_id,
                        amount=value,
                        currency=self.config.currency,
                        payment_method=PaymentMethod.MPESA,
                        payment_gateway=PaymentGateway.SAFARICOM_MPESA,
                        verification_method=VerificationMethod.MANUAL_RECEIPT,
                        phone_number=phone,
                        paybill_account_number=phone,
                        status=PaymentStatus.PENDING_VERIFICATION,
                        status_message="Manual receipt submitted - pending verification",
                        initiated_at=now,
                        payment_details={
                            "mpesa_receipt": receipt,
                            "manual_verification": True,
                            "user_submitted": True,
                        },
                        meta={
                            "phone_number": phone,
                            "campaign_data": campaign_data,
                            "verification_method": VerificationMethod.MANUAL_RECEIPT,
                            "submitted_receipt": receipt,
                            "submitted_at": now.isoformat(),
                        },
                    ),
                )
                payment_id = payment.id

                if not is_valid_receipt_format(receipt):
                    error = InvalidReceiptFormat(receipt_number=receipt)
                    await self._fail_manual(session, payment_id, error)
                    raise error

                try:
                    won = await transition_payment(
                        session,
                        payment_id,
                        PaymentStatus.COMPLETED,
                        {
                            "mpesa_receipt_number": receipt,
                            "processed_at": _utcnow(),
                            "completed_at": _utcnow(),
                            "status_message": "Payment verified from manual receipt",
                        },
                    )
                except DuplicateReceipt as exc:
                    await self._fail_manual(session, payment_id, exc)
                    raise
                if not won:
                    raise RuntimeError(f"Payment {payment_id} left pending_verification unexpectedly")
                settled = await get_payment(session, payment_id)

            logger.info("Manual receipt accepted", extra={"payment_id": str(payment_id), "receipt": receipt})
            if settled is not None:
                await self._notify(settled, PaymentOutcome.SUCCESS)
            return {
                "success": True,
                "message": "Receipt verified. Your payment has been recorded.",
                "reference": reference,
                "payment_id": str(payment_id),
                "receipt_number": receipt,
                "status": PaymentStatus.COMPLETED,
            }
        except PaymentError as exc:
            logger.warning(
                "Manual receipt rejected",
                extra={"error": exc.code, "receipt": receipt, "reference": reference},
            )
            fields = _reference_fields(reference, payment_id)
            if payment_id:
                fields["status"] = PaymentStatus.FAILED
            return exc.to_result(**fields)
        except Exception as exc:
            logger.exception("Manual receipt verification error", extra={"receipt": receipt})
            return {
                "success": False,
                "message": f"An error occurred while verifying the receipt: {exc}",
                "error": "internal_error",
                **_reference_fields(reference, payment_id),
            }

    async def _fail_manual(self, session: AsyncSession, payment_id: uuid.UUID, error: PaymentError) -> None:
        await transition_payment(
            session,
            payment_id,
            PaymentStatus.FAILED,
            {"failed_at": _utcnow(), "status_message": error.message},
            sources={PaymentStatus.PENDING_VERIFICATION},
        )

    # ------------------------------------------------------------------ queries

    async def query_payment_status(self, checkout_request_id: str) -> Dict[str, Any]:
        """Ask Daraja for the STK status. Read-only: the Payment record is not reconciled here."""
        try:
            access_token = await self._require_token()
            timestamp, password = self._credentials()
            logger.info("Querying M-Pesa payment status", extra={"checkout_request_id": checkout_request_id})
            return await self.gateway.query_status(
                access_token,
                short_code=self.config.short_code,
                password=password,
                timestamp=timestamp,
                checkout_request_id=checkout_request_id,
            )
        except PaymentError as exc:
            return exc.to_result()
        except Exception as exc:
            logger.exception("Payment status query error", extra={"checkout_request_id": checkout_request_id})
            return {
                "success": False,
                "message": f"Error querying payment: {exc}",
                "error": "internal_error",
            }

    def get_paybill_instructions(self, payment: Payment) -> Dict[str, Any]:
        short_code = self.config.short_code
        account = payment.paybill_account_number or payment.phone_number or payment.payment_reference
        amount = str(payment.amount)
        return {
            "paybill_number": short_code,
            "account_number": account,
            "amount": amount,
            "currency": payment.currency,
            "steps": [
                "1. Go to M-Pesa menu on your phone",
                "2. Select Lipa na M-Pesa",
                "3. Select Pay Bill",
                f"4. Enter Business Number: {short_code}",
                f"5. Enter Account Number: {account}",
                f"6. Enter Amount: {amount}",
                "7. Enter your M-Pesa PIN",
                "8. Confirm the transaction",
                "9. You will receive an M-Pesa receipt (e.g., SH12ABC34)",
                "10. Enter the receipt number in the form below",
            ],
        }

    # ------------------------------------------------------------------ notifications

    async def _notify(self, payment: Payment, outcome: str) -> None:
        event = PaymentEvent(
            payment_id=str(payment.id),
            advertiser_id=payment.advertiser_id,
            reference=payment.payment_reference,
            outcome=outcome,
            amount=str(payment.amount),
            currency=payment.currency,
            message=(
                "Payment completed successfully"
                if outcome == PaymentOutcome.SUCCESS
                else payment.status_message or "Payment failed"
            ),
            mpesa_receipt=payment.mpesa_receipt,
        )
        try:
            await self.publisher.publish(event)
        except Exception:
            logger.warning(
                "Payment notification failed", extra={"payment_id": event.payment_id}, exc_info=True
            )


@lru_cache
def get_payment_orchestrator() -> PaymentOrchestrator:
    config = MpesaConfig.from_settings()
    return PaymentOrchestrator(
        config=config,
        gateway=MpesaClient(config),
        session_factory=db.get_session_factory(),
        publisher=build_publisher(),
    )
