from decimal import Decimal

from pydantic import BaseModel, Field


class OrderItem(BaseModel):
    product_id: str = Field(min_length=1, max_length=100)
    quantity: int = Field(ge=1)
    price: Decimal = Field(ge=0)


class CreateOrderRequest(BaseModel):
    customer_id: str = Field(min_length=1, max_length=100)
    items: list[OrderItem] = Field(min_length=1)
    total_amount: Decimal
    shipping_address: str = Field(max_length=500)
    fault_injection: bool | None = None

    def to_request(self) -> dict:
        return self.model_dump(mode="json", exclude={"fault_injection"})
