"""Payment state-change notifications.

The orchestrator only depends on the ``PaymentPublisher`` protocol; delivery to
browsers (websockets, push) happens downstream of the Redis channel.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

from .redis_util import get_redis

logger = logging.getLogger(__name__)

EVENT_NAME = "payment.status.updated"


class PaymentOutcome:
    SUCCESS = "success"
    FAILED = "failed"


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class PaymentEvent:
    payment_id: str
    advertiser_id: int
    reference: str
    outcome: str
    amount: str
    currency: str
    message: str
    mpesa_receipt: Optional[str] = None
    timestamp: str = field(default_factory=_utcnow_iso)

    @property
    def channel(self) -> str:
        return f"payment.{self.advertiser_id}"

    @property
    def show_fallback_options(self) -> bool:
        return self.outcome == PaymentOutcome.FAILED

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["event"] = EVENT_NAME
        payload["show_fallback_options"] = self.show_fallback_options
        return payload


class PaymentPublisher(Protocol):
    async def publish(self, event: PaymentEvent) -> None: ...


class LoggingPaymentPublisher:
    """Used when no broker is configured; keeps the event visible in the logs."""

    async def publish(self, event: PaymentEvent) -> None:
        logger.info(
            "Payment event (no broker configured)",
            extra={"channel": event.channel, "payment_id": event.payment_id, "outcome": event.outcome},
        )


class RedisPaymentPublisher:
    def __init__(self, client) -> None:
        self._client = client

    async def publish(self, event: PaymentEvent) -> None:
        receivers = await self._client.publish(event.channel, json.dumps(event.to_payload()))
        logger.info(
            "Payment event published",
            extra={
                "channel": event.channel,
                "payment_id": event.payment_id,
                "outcome": event.outcome,
                "receivers": receivers,
            },
        )


def build_publisher() -> PaymentPublisher:
    client = get_redis()
    if client is None:
        return LoggingPaymentPublisher()
    return RedisPaymentPublisher(client)
