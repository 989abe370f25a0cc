from __future__ import annotations

import base64
import re
import unittest
from datetime import datetime
from unittest import IsolatedAsyncioTestCase, mock

import httpx

from helmetpay.config import Settings
from helmetpay.payments.errors import MalformedCallback
from helmetpay.payments.mpesa import (
    MpesaClient,
    MpesaConfig,
    generate_password,
    generate_payment_reference,
    generate_timestamp,
    get_api_host,
    is_valid_receipt_format,
    normalize_phone_number,
    normalize_receipt_number,
    parse_stk_callback,
)


def _client_manager(method: str, *, return_value=None, side_effect=None):
    client_instance = mock.AsyncMock()
    setattr(client_instance, method, mock.AsyncMock(return_value=return_value, side_effect=side_effect))
    client_manager = mock.AsyncMock()
    client_manager.__aenter__.return_value = client_instance
    return client_manager, client_instance


def _response(body, *, status_code: int = 200):
    response = mock.Mock()
    response.status_code = status_code
    response.is_success = 200 <= status_code < 300
    if isinstance(body, Exception):
        response.json = mock.Mock(side_effect=body)
        response.text = "<html>upstream error</html>"
    else:
        response.json = mock.Mock(return_value=body)
        response.text = str(body)
    return response


class MpesaHelpersTestCase(unittest.TestCase):
    def test_phone_numbers_normalize_to_international_form(self):
        cases = {
            "254712345678": "254712345678",
            "0712345678": "254712345678",
            "712345678": "254712345678",
            "+254 712 345 678": "254712345678",
            "0712-345-678": "254712345678",
            "0112345678": "254112345678",
        }
        for raw, expected in cases.items():
            with self.subTest(raw=raw):
                self.assertEqual(normalize_phone_number(raw), expected)

    def test_unrecognised_phone_numbers_are_rejected(self):
        for raw in ("", None, "12345", "25471234567", "07123456789", "812345678", "255712345678"):
            with self.subTest(raw=raw):
                self.assertIsNone(normalize_phone_number(raw))

    def test_receipt_format(self):
        self.assertTrue(is_valid_receipt_format("SH12ABC34"))
        self.assertTrue(is_valid_receipt_format("nlj7rt61sv"))
        self.assertFalse(is_valid_receipt_format("12ABC345"))
        self.assertFalse(is_valid_receipt_format("SH123"))
        self.assertFalse(is_valid_receipt_format("SH12-ABC34"))
        self.assertFalse(is_valid_receipt_format(""))
        self.assertFalse(is_valid_receipt_format(None))

    def test_receipts_are_trimmed_and_uppercased(self):
        self.assertEqual(normalize_receipt_number("  sh12abc34 "), "SH12ABC34")
        self.assertEqual(normalize_receipt_number(None), "")

    def test_password_encodes_shortcode_passkey_and_timestamp(self):
        password = generate_password("174379", "passkey", "20240102030405")
        self.assertEqual(base64.b64decode(password).decode("utf-8"), "174379passkey20240102030405")

    def test_timestamp_uses_daraja_format(self):
        self.assertEqual(generate_timestamp(now=datetime(2024, 1, 2, 3, 4, 5)), "20240102030405")
        self.assertRegex(generate_timestamp("Africa/Nairobi"), r"^\d{14}$")

    def test_payment_reference_shape(self):
        reference = generate_payment_reference(now=datetime(2026, 10, 19, 8, 30, 0))
        self.assertRegex(reference, r"^HLM-261019083000-[A-Z0-9]{8}$")
        self.assertNotEqual(generate_payment_reference(), generate_payment_reference())

    def test_api_host_by_environment(self):
        self.assertEqual(get_api_host("production"), "https://api.safaricom.co.ke")
        self.assertEqual(get_api_host("Sandbox"), "https://sandbox.safaricom.co.ke")
        self.assertEqual(get_api_host("unknown"), "https://sandbox.safaricom.co.ke")

    def test_config_from_settings(self):
        settings = Settings(
            mpesa_environment=" Production ",
            mpesa_consumer_key=" key ",
            mpesa_consumer_secret="secret",
            mpesa_business_short_code="174379",
            mpesa_passkey="passkey",
            mpesa_callback_url="https://example.com/v1/mpesa/callback",
            mpesa_currency="kes",
        )
        config = MpesaConfig.from_settings(settings)
        self.assertEqual(config.environment, "production")
        self.assertEqual(config.consumer_key, "key")
        self.assertEqual(config.currency, "KES")
        self.assertEqual(
            config.stk_push_url, "https://api.safaricom.co.ke/mpesa/stkpush/v1/processrequest"
        )
        self.assertEqual(
            config.token_url,
            "https://api.safaricom.co.ke/oauth/v1/generate?grant_type=client_credentials",
        )


class StkCallbackParsingTestCase(unittest.TestCase):
    def test_successful_callback_metadata(self):
        callback = parse_stk_callback(
            {
                "Body": {
                    "stkCallback": {
                        "MerchantRequestID": "29115-34620561-1",
                        "CheckoutRequestID": "ws_CO_191220191020363925",
                        "ResultCode": 0,
                        "ResultDesc": "The service request is processed successfully.",
                        "CallbackMetadata": {
                            "Item": [
                                {"Name": "Amount", "Value": 1.0},
                                {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"},
                                {"Name": "Balance"},
                                {"Name": "TransactionDate", "Value": 20191219102115},
                                {"Name": "PhoneNumber", "Value": 254708374149},
                            ]
                        },
                    }
                }
            }
        )
        self.assertTrue(callback.is_success)
        self.assertEqual(callback.checkout_request_id, "ws_CO_191220191020363925")
        self.assertEqual(callback.metadata.receipt_number, "NLJ7RT61SV")
        self.assertEqual(callback.metadata.transaction_date, "20191219102115")
        self.assertEqual(callback.metadata.phone_number, "254708374149")
        self.assertEqual(callback.metadata.amount, 1.0)

    def test_failed_callback_without_metadata(self):
        callback = parse_stk_callback(
            {
                "Body": {
                    "stkCallback": {
                        "CheckoutRequestID": "ws_CO_1",
                        "ResultCode": 1032,
                        "ResultDesc": "Request cancelled by user",
                    }
                }
            }
        )
        self.assertFalse(callback.is_success)
        self.assertEqual(callback.result_code, "1032")
        self.assertIsNone(callback.metadata.receipt_number)

    def test_malformed_callbacks(self):
        bodies = [
            None,
            {},
            {"Body": {}},
            {"Body": {"stkCallback": {"ResultCode": 0}}},
            {"Body": {"stkCallback": {"CheckoutRequestID": "ws_CO_1"}}},
        ]
        for body in bodies:
            with self.subTest(body=body):
                with self.assertRaises(MalformedCallback):
                    parse_stk_callback(body)


class MpesaClientTestCase(IsolatedAsyncioTestCase):
    def setUp(self):
        self.config = MpesaConfig(
            environment="sandbox",
            consumer_key="key",
            consumer_secret="secret",
            short_code="174379",
            passkey="passkey",
            callback_url="https://example.com/v1/mpesa/callback",
            timeout_seconds=5.0,
        )
        self.client = MpesaClient(self.config)

    async def test_access_token_uses_basic_auth(self):
        client_manager, client_instance = _client_manager(
            "get", return_value=_response({"access_token": "tok-123", "expires_in": "3599"})
        )
        with mock.patch("helmetpay.payments.mpesa.httpx.AsyncClient", return_value=client_manager) as client_cls:
            token = await self.client.acquire_access_token()

        self.assertEqual(token, "tok-123")
        client_cls.assert_called_once_with(timeout=5.0)
        expected = base64.b64encode(b"key:secret").decode("ascii")
        client_instance.get.assert_awaited_once_with(
            "https://sandbox.safaricom.co.ke/oauth/v1/generate?grant_type=client_credentials",
            headers={"Authorization": f"Basic {expected}"},
        )

    async def test_access_token_failure_returns_none(self):
        client_manager, _ = _client_manager(
            "get", return_value=_response({"errorMessage": "Invalid credentials"}, status_code=400)
        )
        with mock.patch("helmetpay.payments.mpesa.httpx.AsyncClient", return_value=client_manager):
            self.assertIsNone(await self.client.acquire_access_token())

    async def test_access_token_network_error_returns_none(self):
        client_manager, _ = _client_manager("get", side_effect=httpx.ConnectError("connection refused"))
        with mock.patch("helmetpay.payments.mpesa.httpx.AsyncClient", return_value=client_manager):
            self.assertIsNone(await self.client.acquire_access_token())

    async def test_request_push_sends_daraja_payload(self):
        acknowledgment = {
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": "ws_CO_191220191020363925",
            "ResponseCode": "0",
            "ResponseDescription": "Success. Request accepted for processing",
            "CustomerMessage": "Success. Request accepted for processing",
        }
        client_manager, client_instance = _client_manager("post", return_value=_response(acknowledgment))
        with mock.patch("helmetpay.payments.mpesa.httpx.AsyncClient", return_value=client_manager):
            response = await self.client.request_push(
                "tok-123",
                short_code="174379",
                password="cGFzc3dvcmQ=",
                timestamp="20240102030405",
                amount=1500,
                phone_number="254712345678",
                callback_url="https://example.com/v1/mpesa/callback",
                account_reference="254712345678",
                description="Campaign Payment",
            )

        self.assertEqual(response, acknowledgment)
        args, kwargs = client_instance.post.call_args
        self.assertEqual(args[0], "https://sandbox.safaricom.co.ke/mpesa/stkpush/v1/processrequest")
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer tok-123")
        self.assertEqual(
            kwargs["json"],
            {
                "BusinessShortCode": "174379",
                "Password": "cGFzc3dvcmQ=",
                "Timestamp": "20240102030405",
                "TransactionType": "CustomerPayBillOnline",
                "Amount": 1500,
                "PartyA": "254712345678",
                "PartyB": "174379",
                "PhoneNumber": "254712345678",
                "CallBackURL": "https://example.com/v1/mpesa/callback",
                "AccountReference": "254712345678",
                "TransactionDesc": "Campaign Payment",
            },
        )

    async def test_provider_error_body_is_returned_verbatim(self):
        error_body = {"requestId": "1", "errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid Amount"}
        client_manager, _ = _client_manager("post", return_value=_response(error_body, status_code=400))
        with mock.patch("helmetpay.payments.mpesa.httpx.AsyncClient", return_value=client_manager):
            response = await self.client.query_status(
                "tok-123",
                short_code="174379",
                password="pw",
                timestamp="20240102030405",
                checkout_request_id="ws_CO_1",
            )
        self.assertEqual(response, error_body)

    async def test_timeout_becomes_failure_result(self):
        client_manager, _ = _client_manager("post", side_effect=httpx.ReadTimeout("read timed out"))
        with mock.patch("helmetpay.payments.mpesa.httpx.AsyncClient", return_value=client_manager):
            response = await self.client.query_status(
                "tok-123",
                short_code="174379",
                password="pw",
                timestamp="20240102030405",
                checkout_request_id="ws_CO_1",
            )
        self.assertFalse(response["success"])
        self.assertTrue(response["message"].startswith("M-Pesa request timed out"))

    async def test_non_json_body_becomes_failure_result(self):
        client_manager, _ = _client_manager("post", return_value=_response(ValueError("no json"), status_code=502))
        with mock.patch("helmetpay.payments.mpesa.httpx.AsyncClient", return_value=client_manager):
            response = await self.client.query_status(
                "tok-123",
                short_code="174379",
                password="pw",
                timestamp="20240102030405",
                checkout_request_id="ws_CO_1",
            )
        self.assertEqual(
            response,
            {"success": False, "message": "Unexpected response from M-Pesa", "status_code": 502},
        )


if __name__ == "__main__":
    unittest.main()
