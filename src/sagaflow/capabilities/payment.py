import asyncio
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

import structlog

from sagaflow.capabilities.base import CapabilityResult, RecordStore

log = structlog.get_logger()

CHARGED = "CHARGED"
REFUNDED = "REFUNDED"


class PaymentCapability(Protocol):
    async def charge(
        self, customer_id: str, amount: Decimal, idempotency_key: str | None = None
    ) -> CapabilityResult: ...

    async def refund(self, transaction_id: str) -> None: ...


@dataclass
class PaymentRecord:
    transaction_id: str
    customer_id: str
    amount: Decimal
    status: str


class LedgerPaymentService:
    """In-process payment ledger. Declines charges that exceed a customer's credit."""

    def __init__(
        self,
        credit_limits: dict[str, Decimal] | None = None,
        default_limit: Decimal = Decimal("10000"),
        latency_seconds: float = 0.0,
    ) -> None:
        self._credit_limits = dict(credit_limits or {})
        self._default_limit = default_limit
        self._latency = latency_seconds
        self._store: RecordStore[PaymentRecord] = RecordStore()
        self._by_key: dict[str, str] = {}

    def get(self, transaction_id: str) -> PaymentRecord | None:
        return self._store.get(transaction_id)

    async def charge(
        self, customer_id: str, amount: Decimal, idempotency_key: str | None = None
    ) -> CapabilityResult:
        if self._latency:
            await asyncio.sleep(self._latency)

        async with self._store.lock:
            if idempotency_key and idempotency_key in self._by_key:
                existing = self._by_key[idempotency_key]
                log.info("payment_charge_replayed", transaction_id=existing)
                return CapabilityResult.ok(existing, "Payment already processed")

            limit = self._credit_limits.get(customer_id, self._default_limit)
            if amount <= 0:
                return CapabilityResult.rejected("Payment amount must be positive")
            if amount > limit:
                log.warning("payment_declined", customer_id=customer_id, amount=str(amount))
                return CapabilityResult.rejected("Payment declined - insufficient funds")

            transaction_id = f"TXN-{uuid.uuid4()}"
            self._store.put(
                transaction_id,
                PaymentRecord(transaction_id, customer_id, amount, CHARGED),
            )
            if idempotency_key:
                self._by_key[idempotency_key] = transaction_id

        log.info(
            "payment_charged",
            transaction_id=transaction_id,
            customer_id=customer_id,
            amount=str(amount),
        )
        return CapabilityResult.ok(transaction_id, "Payment processed successfully")

    async def refund(self, transaction_id: str) -> None:
        async with self._store.lock:
            record = self._store.get(transaction_id)
            if record is None:
                log.warning("payment_refund_unknown_transaction", transaction_id=transaction_id)
                return
            if record.status == REFUNDED:
                log.info("payment_already_refunded", transaction_id=transaction_id)
                return
            record.status = REFUNDED
        log.info("payment_refunded", transaction_id=transaction_id)
