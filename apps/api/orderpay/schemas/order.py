from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from orderpay.models.order import PaymentMethod


class OrderItemCreate(BaseModel):
    product_name: str = Field(min_length=1, max_length=255)
    price: Decimal = Field(ge=0, max_digits=10, decimal_places=2)
    quantity: int = Field(ge=1)


class OrderCreate(BaseModel):
    # buyer fields and the method are checked by the order service so every
    # problem with them is reported as a single {field, message} error
    name: str = Field(default="", max_length=255)
    email: str = Field(default="", max_length=255)
    phone: str = Field(default="", max_length=50)
    address: str = Field(default="", max_length=2000)
    payment_method: str = Field(default="", max_length=20)
    items: list[OrderItemCreate] = Field(default_factory=list)

    @field_validator("name", "email", "phone", "address", "payment_method")
    @classmethod
    def strip_strings(cls, value: str) -> str:
        return value.strip()


class OrderPlacementResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order_token: str
    payment_method: PaymentMethod
    status: Literal["placed", "awaiting_payment"]
    payment_expires_at: datetime | None = None


class OrderValidationErrorResponse(BaseModel):
    field: str
    message: str
