"""Failure taxonomy for the M-Pesa payment flows.

Each error renders to the ``{"success": False, ...}`` result shape returned by
the orchestrator, so callers never have to catch these themselves.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class PaymentError(Exception):
    code = "payment_error"
    default_message = "Payment could not be processed"

    def __init__(self, message: Optional[str] = None, **context: Any) -> None:
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def to_result(self, **extra: Any) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": False, "message": self.message, "error": self.code}
        result.update(extra)
        return result


class GatewayUnavailable(PaymentError):
    code = "gateway_unavailable"
    default_message = "Failed to generate M-Pesa access token"


class InvalidPhoneFormat(PaymentError):
    code = "invalid_phone_format"
    default_message = "Invalid phone number format. Use 254XXXXXXXXX"


class DuplicateReceipt(PaymentError):
    code = "duplicate_receipt"
    default_message = "This receipt number has already been used for another payment."


class InvalidReceiptFormat(PaymentError):
    code = "invalid_receipt_format"
    default_message = "Invalid M-Pesa receipt format. Receipt should be like: SH12ABC34"


class MalformedCallback(PaymentError):
    code = "malformed_callback"
    default_message = "Callback is missing required fields"


class OrphanCallback(PaymentError):
    code = "orphan_callback"
    default_message = "No payment matches the callback checkout request"


class ProviderRejected(PaymentError):
    code = "provider_rejected"
    default_message = "Payment initiation failed"


class DuplicateCheckoutId(PaymentError):
    code = "duplicate_checkout_id"
    default_message = "Checkout request is already linked to another payment"


class InvalidAmount(PaymentError):
    code = "invalid_amount"
    default_message = "Payment amount must be a positive number"
