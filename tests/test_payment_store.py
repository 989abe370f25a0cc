from __future__ import annotations

import unittest
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from unittest import IsolatedAsyncioTestCase

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from helmetpay.models import Base, Payment, PaymentStatus
from helmetpay.payments.errors import DuplicateCheckoutId, DuplicateReceipt
from helmetpay.services.payment_store import (
    create_payment,
    get_payment,
    get_payment_by_checkout_id,
    get_payment_by_reference,
    get_payment_stats,
    list_payments,
    merge_details,
    receipt_in_use,
    transition_payment,
)


def make_payment(**overrides) -> Payment:
    values = dict(
        payment_reference=f"HLM-{uuid.uuid4().hex[:12].upper()}",
        advertiser_id=7,
        amount=Decimal("100.00"),
        currency="KES",
        phone_number="254712345678",
        status=PaymentStatus.PENDING,
        initiated_at=datetime(2026, 10, 1, 9, 0, tzinfo=timezone.utc),
        payment_details={},
    )
    values.update(overrides)
    return Payment(**values)


class PaymentStoreTestCase(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self.Session = async_sessionmaker(self.engine, expire_on_commit=False)

    async def asyncTearDown(self):
        await self.engine.dispose()

    async def test_transition_only_from_allowed_states(self):
        async with self.Session() as session:
            payment = await create_payment(session, make_payment())
            payment_id = payment.id

            self.assertFalse(
                await transition_payment(session, payment_id, PaymentStatus.COMPLETED, {"status_message": "x"})
            )
            self.assertTrue(
                await transition_payment(
                    session, payment_id, PaymentStatus.PROCESSING, {"gateway_transaction_id": "ws_CO_1"}
                )
            )
            self.assertTrue(
                await transition_payment(session, payment_id, PaymentStatus.COMPLETED, {"mpesa_receipt_number": "SH12ABC34"})
            )
            self.assertFalse(await transition_payment(session, payment_id, PaymentStatus.FAILED, {}))

            stored = await get_payment(session, payment_id)
            self.assertEqual(stored.status, PaymentStatus.COMPLETED)
            self.assertEqual(stored.gateway_transaction_id, "ws_CO_1")

    async def test_transition_into_unknown_status_is_an_error(self):
        async with self.Session() as session:
            payment = await create_payment(session, make_payment())
            with self.assertRaises(ValueError):
                await transition_payment(session, payment.id, PaymentStatus.PENDING, {})
            with self.assertRaises(ValueError):
                await transition_payment(
                    session, payment.id, PaymentStatus.COMPLETED, {}, sources={PaymentStatus.PENDING}
                )

    async def test_checkout_id_is_unique_across_payments(self):
        async with self.Session() as session:
            first = await create_payment(session, make_payment())
            second = await create_payment(session, make_payment())
            first_id, second_id = first.id, second.id
            await transition_payment(session, first_id, PaymentStatus.PROCESSING, {"gateway_transaction_id": "ws_CO_1"})

            with self.assertRaises(DuplicateCheckoutId):
                await transition_payment(
                    session, second_id, PaymentStatus.PROCESSING, {"gateway_transaction_id": "ws_CO_1"}
                )

            found = await get_payment_by_checkout_id(session, "ws_CO_1")
            self.assertEqual(found.id, first_id)
            self.assertIsNone(await get_payment_by_checkout_id(session, "ws_CO_1", advertiser_id=99))

    async def test_receipt_is_unique_across_payments(self):
        async with self.Session() as session:
            first = await create_payment(session, make_payment(status=PaymentStatus.PENDING_VERIFICATION))
            second = await create_payment(session, make_payment(status=PaymentStatus.PENDING_VERIFICATION, advertiser_id=8))
            first_id, second_id = first.id, second.id

            self.assertFalse(await receipt_in_use(session, "SH12ABC34"))
            await transition_payment(session, first_id, PaymentStatus.COMPLETED, {"mpesa_receipt_number": "SH12ABC34"})
            self.assertTrue(await receipt_in_use(session, "SH12ABC34"))

            with self.assertRaises(DuplicateReceipt):
                await transition_payment(
                    session, second_id, PaymentStatus.COMPLETED, {"mpesa_receipt_number": "SH12ABC34"}
                )
            stored = await get_payment(session, second_id)
            self.assertEqual(stored.status, PaymentStatus.PENDING_VERIFICATION)

    async def test_lookup_by_reference_is_tenant_scoped(self):
        async with self.Session() as session:
            payment = await create_payment(session, make_payment(payment_reference="HLM-REF-1"))
            self.assertEqual((await get_payment_by_reference(session, "HLM-REF-1")).id, payment.id)
            self.assertIsNotNone(await get_payment_by_reference(session, "HLM-REF-1", advertiser_id=7))
            self.assertIsNone(await get_payment_by_reference(session, "HLM-REF-1", advertiser_id=8))

    async def test_list_payments_filters_and_paginates(self):
        async with self.Session() as session:
            for day in range(1, 6):
                await create_payment(
                    session,
                    make_payment(
                        campaign_id=3 if day % 2 else 4,
                        status=PaymentStatus.COMPLETED if day < 3 else PaymentStatus.PENDING,
                        initiated_at=datetime(2026, 10, day, 12, 0, tzinfo=timezone.utc),
                    ),
                )
            await create_payment(session, make_payment(advertiser_id=8))

            page = await list_payments(session, 7, page=1, per_page=2)
            self.assertTrue(page["success"])
            self.assertEqual(len(page["payments"]), 2)
            self.assertEqual(
                page["pagination"],
                {"total": 5, "per_page": 2, "current_page": 1, "last_page": 3, "from": 1, "to": 2},
            )
            # newest first
            self.assertTrue(page["payments"][0]["initiated_at"].startswith("2026-10-05"))

            last = await list_payments(session, 7, page=3, per_page=2)
            self.assertEqual(len(last["payments"]), 1)
            self.assertEqual(last["pagination"]["from"], 5)
            self.assertEqual(last["pagination"]["to"], 5)

            completed = await list_payments(session, 7, status=PaymentStatus.COMPLETED)
            self.assertEqual(completed["pagination"]["total"], 2)

            by_campaign = await list_payments(session, 7, campaign_id=4)
            self.assertEqual(by_campaign["pagination"]["total"], 2)

            window = await list_payments(session, 7, from_date=date(2026, 10, 2), to_date=date(2026, 10, 3))
            self.assertEqual(window["pagination"]["total"], 2)

            empty = await list_payments(session, 99)
            self.assertEqual(empty["payments"], [])
            self.assertEqual(empty["pagination"]["last_page"], 1)
            self.assertIsNone(empty["pagination"]["from"])

    async def test_stats_are_tenant_scoped(self):
        async with self.Session() as session:
            await create_payment(session, make_payment(status=PaymentStatus.COMPLETED, amount=Decimal("1500.00")))
            await create_payment(session, make_payment(status=PaymentStatus.COMPLETED, amount=Decimal("250.50")))
            await create_payment(session, make_payment(status=PaymentStatus.PROCESSING, amount=Decimal("300.00")))
            await create_payment(session, make_payment(status=PaymentStatus.PENDING_VERIFICATION))
            await create_payment(session, make_payment(status=PaymentStatus.FAILED))
            await create_payment(session, make_payment(status=PaymentStatus.COMPLETED, advertiser_id=8))

            stats = await get_payment_stats(session, 7)

        self.assertEqual(
            stats,
            {
                "total_payments": 5,
                "completed_payments": 2,
                "pending_payments": 1,
                "awaiting_verification": 1,
                "failed_payments": 1,
                "total_amount_paid": "1750.50",
                "total_pending_amount": "300.00",
            },
        )

    def test_merge_details_returns_new_dict(self):
        existing = {"stk_push": {"ResponseCode": "0"}}
        merged = merge_details(existing, {"callback": {"ResultCode": 0}})
        self.assertIsNot(merged, existing)
        self.assertEqual(set(merged), {"stk_push", "callback"})
        self.assertEqual(merge_details(None, {"a": 1}), {"a": 1})


if __name__ == "__main__":
    unittest.main()
