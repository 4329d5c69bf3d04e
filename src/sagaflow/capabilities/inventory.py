import uuid
from dataclasses import dataclass
from typing import Protocol

import structlog

from sagaflow.capabilities.base import CapabilityResult, RecordStore

log = structlog.get_logger()

RESERVED = "RESERVED"
RELEASED = "RELEASED"

# Stock assumed for products the service has never seen
DEFAULT_STOCK = 10


@dataclass(frozen=True)
class ItemLine:
    product_id: str
    quantity: int


class InventoryCapability(Protocol):
    async def reserve(
        self, items: list[ItemLine], idempotency_key: str | None = None
    ) -> CapabilityResult: ...

    async def release(self, reservation_id: str) -> None: ...


@dataclass
class Reservation:
    reservation_id: str
    items: list[ItemLine]
    status: str


class StockInventoryService:
    """Owns the stock counters; reservations are all-or-nothing."""

    def __init__(self, stock: dict[str, int] | None = None) -> None:
        self._stock: dict[str, int] = dict(stock or {})
        self._store: RecordStore[Reservation] = RecordStore()
        self._by_key: dict[str, str] = {}

    def available(self, product_id: str) -> int:
        return self._stock.get(product_id, DEFAULT_STOCK)

    def get(self, reservation_id: str) -> Reservation | None:
        return self._store.get(reservation_id)

    async def reserve(
        self, items: list[ItemLine], idempotency_key: str | None = None
    ) -> CapabilityResult:
        async with self._store.lock:
            if idempotency_key and idempotency_key in self._by_key:
                return CapabilityResult.ok(
                    self._by_key[idempotency_key], "Inventory already reserved"
                )

            if not items:
                return CapabilityResult.rejected("No items to reserve")

            for item in items:
                available = self.available(item.product_id)
                if available < item.quantity:
                    log.warning(
                        "inventory_out_of_stock",
                        product_id=item.product_id,
                        available=available,
                        requested=item.quantity,
                    )
                    return CapabilityResult.rejected(
                        f"Product {item.product_id} out of stock"
                    )

            for item in items:
                self._stock[item.product_id] = self.available(item.product_id) - item.quantity

            reservation_id = f"RES-{uuid.uuid4()}"
            self._store.put(reservation_id, Reservation(reservation_id, list(items), RESERVED))
            if idempotency_key:
                self._by_key[idempotency_key] = reservation_id

        log.info("inventory_reserved", reservation_id=reservation_id, items=len(items))
        return CapabilityResult.ok(reservation_id, "Inventory reserved successfully")

    async def release(self, reservation_id: str) -> None:
        async with self._store.lock:
            reservation = self._store.get(reservation_id)
            if reservation is None:
                log.warning("inventory_release_unknown", reservation_id=reservation_id)
                return
            if reservation.status == RELEASED:
                log.info("inventory_already_released", reservation_id=reservation_id)
                return
            for item in reservation.items:
                self._stock[item.product_id] = self.available(item.product_id) + item.quantity
            reservation.status = RELEASED
        log.info("inventory_released", reservation_id=reservation_id)
