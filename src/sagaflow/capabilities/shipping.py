import uuid
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Protocol

import structlog

from sagaflow.capabilities.base import CapabilityResult, RecordStore

log = structlog.get_logger()

SCHEDULED = "SCHEDULED"
CANCELLED = "CANCELLED"


class ShippingCapability(Protocol):
    async def schedule(
        self, order_id: str, address: str, idempotency_key: str | None = None
    ) -> CapabilityResult: ...

    async def cancel(self, tracking_number: str) -> None: ...


@dataclass
class Shipment:
    tracking_number: str
    order_id: str
    address: str
    status: str
    estimated_delivery: date


class CarrierShippingService:
    def __init__(self, blocked_regions: set[str] | None = None, transit_days: int = 3) -> None:
        self._blocked = {r.lower() for r in (blocked_regions or set())}
        self._transit_days = transit_days
        self._store: RecordStore[Shipment] = RecordStore()
        self._by_order: dict[str, str] = {}

    def get(self, tracking_number: str) -> Shipment | None:
        return self._store.get(tracking_number)

    async def schedule(
        self, order_id: str, address: str, idempotency_key: str | None = None
    ) -> CapabilityResult:
        key = idempotency_key or order_id
        async with self._store.lock:
            if key in self._by_order:
                return CapabilityResult.ok(self._by_order[key], "Shipping already scheduled")

            if not address or not address.strip():
                return CapabilityResult.rejected("Shipping address is required")
            lowered = address.lower()
            if any(region in lowered for region in self._blocked):
                log.warning("shipping_region_unavailable", order_id=order_id)
                return CapabilityResult.rejected("Shipping service unavailable for address")

            tracking_number = "TRACK-" + uuid.uuid4().hex[:10].upper()
            eta = date.today() + timedelta(days=self._transit_days)
            self._store.put(
                tracking_number,
                Shipment(tracking_number, order_id, address, SCHEDULED, eta),
            )
            self._by_order[key] = tracking_number

        log.info("shipping_scheduled", order_id=order_id, tracking_number=tracking_number)
        return CapabilityResult.ok(
            tracking_number,
            "Shipping scheduled successfully",
            estimated_delivery=eta.isoformat(),
        )

    async def cancel(self, tracking_number: str) -> None:
        async with self._store.lock:
            shipment = self._store.get(tracking_number)
            if shipment is None:
                log.warning("shipping_cancel_unknown", tracking_number=tracking_number)
                return
            if shipment.status == CANCELLED:
                log.info("shipping_already_cancelled", tracking_number=tracking_number)
                return
            shipment.status = CANCELLED
        log.info("shipping_cancelled", tracking_number=tracking_number)
