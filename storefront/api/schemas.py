from decimal import Decimal
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field

class OrderLineIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    product_id: int = Field(alias="productId")
    size_id: int = Field(alias="sizeId")
    quantity: int = Field(gt=0)
    discount: Decimal = Field(default=Decimal("0"), ge=0)

class CreateOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    address_id: Optional[int] = Field(default=None, alias="addressId")
    payment_mode: str = Field(default="PREPAID", alias="paymentMode")
    subtotal: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    total: Decimal = Decimal("0")
    shipping: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")
    grand_total: Optional[Decimal] = None
    products: List[OrderLineIn] = []

class CreateOrderResponse(BaseModel):
    success: bool = True
    redirectUrl: str
    merchantOrderId: str

class CreateShipmentRequest(BaseModel):
    orderId: Optional[str] = None

class OrderUpdate(BaseModel):
    status: Optional[str] = None
    payment_status: Optional[str] = None
    delivery_status: Optional[str] = None
    transaction_id: Optional[str] = None
    invoice_link: Optional[str] = None

class WebhookOrder(BaseModel):
    model_config = ConfigDict(extra="allow")
    merchantOrderId: Optional[str] = None

class WebhookPayload(BaseModel):
    model_config = ConfigDict(extra="allow")
    event: Optional[str] = None
    payload: WebhookOrder = WebhookOrder()

class ActivityIn(BaseModel):
    user_id: Optional[int] = None
    product_ids: Optional[List[int]] = None
    current_step: Optional[str] = None
