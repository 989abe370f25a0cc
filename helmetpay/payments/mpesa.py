from __future__ import annotations

import base64
import logging
import re
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

import httpx

from ..config import Settings, get_settings
from .errors import MalformedCallback

logger = logging.getLogger(__name__)

MPESA_HOSTS = {
    "production": "https://api.safaricom.co.ke",
    "sandbox": "https://sandbox.safaricom.co.ke",
}

TOKEN_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"

TRANSACTION_TYPE = "CustomerPayBillOnline"
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"
COUNTRY_CODE = "254"
REFERENCE_PREFIX = "HLM"

RECEIPT_PATTERN = re.compile(r"^[A-Z]{2}[A-Z0-9]{6,18}$", re.IGNORECASE)
_NON_DIGITS = re.compile(r"[^0-9]")
_REFERENCE_ALPHABET = string.ascii_uppercase + string.digits


@dataclass(frozen=True)
class MpesaConfig:
    environment: str = "sandbox"
    consumer_key: str = ""
    consumer_secret: str = ""
    short_code: str = ""
    passkey: str = ""
    callback_url: str = ""
    timeout_url: str = ""
    timeout_seconds: float = 8.0
    timezone: str = "Africa/Nairobi"
    currency: str = "KES"

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "MpesaConfig":
        s = settings or get_settings()
        return cls(
            environment=s.mpesa_environment or "sandbox",
            consumer_key=(s.mpesa_consumer_key or "").strip(),
            consumer_secret=(s.mpesa_consumer_secret or "").strip(),
            short_code=(s.mpesa_business_short_code or "").strip(),
            passkey=(s.mpesa_passkey or "").strip(),
            callback_url=(s.mpesa_callback_url or "").strip(),
            timeout_url=(s.mpesa_timeout_url or "").strip(),
            timeout_seconds=s.mpesa_timeout_seconds,
            timezone=s.mpesa_timezone,
            currency=s.mpesa_currency.upper(),
        )

    @property
    def host(self) -> str:
        return get_api_host(self.environment)

    @property
    def token_url(self) -> str:
        return self.host + TOKEN_PATH

    @property
    def stk_push_url(self) -> str:
        return self.host + STK_PUSH_PATH

    @property
    def stk_query_url(self) -> str:
        return self.host + STK_QUERY_PATH


def get_api_host(environment: str) -> str:
    return MPESA_HOSTS.get((environment or "").lower(), MPESA_HOSTS["sandbox"])


def generate_timestamp(tz: str = "Africa/Nairobi", *, now: Optional[datetime] = None) -> str:
    """Daraja expects local (EAT) wall-clock time as ``YYYYMMDDHHMMSS``."""
    moment = now or datetime.now(ZoneInfo(tz))
    return moment.strftime(TIMESTAMP_FORMAT)


def generate_password(short_code: str, passkey: str, timestamp: str) -> str:
    payload = f"{short_code}{passkey}{timestamp}"
    return base64.b64encode(payload.encode("utf-8")).decode("ascii")


def normalize_phone_number(raw: Optional[str]) -> Optional[str]:
    """Return the ``254XXXXXXXXX`` form of a Kenyan MSISDN, or ``None`` if unrecognised."""
    digits = _NON_DIGITS.sub("", raw or "")
    if digits.startswith(COUNTRY_CODE) and len(digits) == 12:
        return digits
    if digits.startswith("0") and len(digits) == 10:
        return COUNTRY_CODE + digits[1:]
    if digits.startswith("7") and len(digits) == 9:
        return COUNTRY_CODE + digits
    return None


def normalize_receipt_number(raw: Optional[str]) -> str:
    return (raw or "").strip().upper()


def is_valid_receipt_format(receipt_number: Optional[str]) -> bool:
    # Structural check only; the receipt is never confirmed with Safaricom.
    return bool(receipt_number) and RECEIPT_PATTERN.match(receipt_number) is not None


def generate_payment_reference(*, now: Optional[datetime] = None) -> str:
    moment = now or datetime.now(timezone.utc)
    suffix = "".join(secrets.choice(_REFERENCE_ALPHABET) for _ in range(8))
    return f"{REFERENCE_PREFIX}-{moment.strftime('%y%m%d%H%M%S')}-{suffix}"


def _failure(message: str, **extra: Any) -> Dict[str, Any]:
    result: Dict[str, Any] = {"success": False, "message": message}
    result.update(extra)
    return result


class MpesaClient:
    """Stateless adapter over the Daraja OAuth, STK Push and STK Query endpoints.

    Every provider or network failure is turned into a return value; nothing is
    retried here.
    """

    def __init__(self, config: MpesaConfig) -> None:
        self.config = config

    async def acquire_access_token(self) -> Optional[str]:
        credentials = base64.b64encode(
            f"{self.config.consumer_key}:{self.config.consumer_secret}".encode("utf-8")
        ).decode("ascii")
        try:
            async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
                response = await client.get(
                    self.config.token_url,
                    headers={"Authorization": f"Basic {credentials}"},
                )
        except httpx.HTTPError as exc:
            logger.error("M-Pesa token request error", extra={"error": str(exc)})
            return None

        body = _safe_json(response)
        token = body.get("access_token") if isinstance(body, dict) else None
        if response.is_success and token:
            return token

        logger.error(
            "M-Pesa token generation failed",
            extra={
                "status_code": response.status_code,
                "response": body if body is not None else response.text,
            },
        )
        return None

    async def request_push(
        self,
        access_token: str,
        *,
        short_code: str,
        password: str,
        timestamp: str,
        amount: int,
        phone_number: str,
        callback_url: str,
        account_reference: str,
        description: str,
    ) -> Dict[str, Any]:
        payload = {
            "BusinessShortCode": short_code,
            "Password": password,
            "Timestamp": timestamp,
            "TransactionType": TRANSACTION_TYPE,
            "Amount": amount,
            "PartyA": phone_number,
            "PartyB": short_code,
            "PhoneNumber": phone_number,
            "CallBackURL": callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": description,
        }
        return await self._post(self.config.stk_push_url, access_token, payload, operation="stk_push")

    async def query_status(
        self,
        access_token: str,
        *,
        short_code: str,
        password: str,
        timestamp: str,
        checkout_request_id: str,
    ) -> Dict[str, Any]:
        payload = {
            "BusinessShortCode": short_code,
            "Password": password,
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        return await self._post(self.config.stk_query_url, access_token, payload, operation="stk_query")

    async def _post(
        self,
        url: str,
        access_token: str,
        payload: Dict[str, Any],
        *,
        operation: str,
    ) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            logger.error("M-Pesa request timed out", extra={"operation": operation, "error": str(exc)})
            return _failure(f"M-Pesa request timed out: {exc}")
        except httpx.HTTPError as exc:
            logger.error("M-Pesa request error", extra={"operation": operation, "error": str(exc)})
            return _failure(f"M-Pesa request failed: {exc}")

        body = _safe_json(response)
        if not isinstance(body, dict):
            logger.error(
                "M-Pesa returned a non-JSON body",
                extra={
                    "operation": operation,
                    "status_code": response.status_code,
                    "body": response.text[:500],
                },
            )
            return _failure("Unexpected response from M-Pesa", status_code=response.status_code)
        if not response.is_success:
            logger.warning(
                "M-Pesa returned an error status",
                extra={"operation": operation, "status_code": response.status_code, "response": body},
            )
        return body


def _safe_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


# Known CallbackMetadata item names -> StkCallbackMetadata attribute
CALLBACK_METADATA_FIELDS = {
    "MpesaReceiptNumber": "receipt_number",
    "TransactionDate": "transaction_date",
    "Amount": "amount",
    "PhoneNumber": "phone_number",
}


@dataclass(frozen=True)
class StkCallbackMetadata:
    receipt_number: Optional[str] = None
    transaction_date: Optional[str] = None
    amount: Optional[float] = None
    phone_number: Optional[str] = None

    @classmethod
    def from_items(cls, items: Any) -> "StkCallbackMetadata":
        values: Dict[str, Any] = {}
        if not isinstance(items, list):
            return cls()
        for item in items:
            if not isinstance(item, dict):
                continue
            attr = CALLBACK_METADATA_FIELDS.get(item.get("Name", ""))
            if attr is None or item.get("Value") is None:
                continue
            value = item["Value"]
            values[attr] = value if attr == "amount" else str(value)
        return cls(**values)


@dataclass(frozen=True)
class StkCallback:
    checkout_request_id: str
    result_code: str
    result_desc: Optional[str]
    merchant_request_id: Optional[str]
    metadata: StkCallbackMetadata

    @property
    def is_success(self) -> bool:
        return self.result_code == "0"


def parse_stk_callback(raw_body: Any) -> StkCallback:
    """Pull the fields we reconcile on out of ``Body.stkCallback``.

    Raises ``MalformedCallback`` when the checkout id or result code is absent.
    """
    body = raw_body.get("Body") if isinstance(raw_body, dict) else None
    stk = body.get("stkCallback") if isinstance(body, dict) else None
    if not isinstance(stk, dict):
        raise MalformedCallback("Callback body has no stkCallback section")

    checkout_request_id = stk.get("CheckoutRequestID")
    if not checkout_request_id:
        raise MalformedCallback("Callback missing CheckoutRequestID")
    result_code = stk.get("ResultCode")
    if result_code is None or str(result_code).strip() == "":
        raise MalformedCallback(
            "Callback missing ResultCode", checkout_request_id=checkout_request_id
        )

    callback_metadata = stk.get("CallbackMetadata")
    items = callback_metadata.get("Item") if isinstance(callback_metadata, dict) else None
    return StkCallback(
        checkout_request_id=str(checkout_request_id),
        result_code=str(result_code).strip(),
        result_desc=stk.get("ResultDesc"),
        merchant_request_id=stk.get("MerchantRequestID"),
        metadata=StkCallbackMetadata.from_items(items),
    )
