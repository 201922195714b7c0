from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List
from datetime import datetime
from decimal import Decimal

from afyabora.models import OrderStatus, PaymentMethod, Role, TransactionStatus


class WireModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class Identity(BaseModel):
    id: str
    role: Role


class Product(WireModel):
    id: str
    name: str
    category: str
    price: float
    description: str = ""
    image_url: str = Field("", alias="imageUrl")
    stock: int = 0
    requires_prescription: bool = Field(False, alias="requiresPrescription")
    dosage: Optional[str] = None
    side_effects: Optional[str] = Field(None, alias="sideEffects")
    manufacturer: Optional[str] = None


class LineItem(WireModel):
    """Snapshot of a product taken when it was put in the cart."""
    id: str
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., gt=0)
    category: Optional[str] = None
    image_url: Optional[str] = Field(None, alias="imageUrl")
    requires_prescription: bool = Field(False, alias="requiresPrescription")

    @property
    def subtotal(self) -> Decimal:
        return Decimal(str(self.price)) * self.quantity


class CartItemCreate(WireModel):
    product_id: str = Field(..., alias="productId")
    quantity: int = Field(1, gt=0)


class WishlistToggleRequest(WireModel):
    product_id: str = Field(..., alias="productId")


class OrderRead(WireModel):
    id: str
    user_id: str = Field(..., alias="userId")
    items: List[LineItem]
    total_amount: float = Field(..., alias="totalAmount")
    status: OrderStatus
    date: datetime
    payment_method: PaymentMethod = Field(..., alias="paymentMethod")
    shipping_address: str = Field(..., alias="shippingAddress")
    notes: Optional[str] = None
    prescription_image: Optional[str] = Field(None, alias="prescriptionImage")
    delivery_agent_id: Optional[str] = Field(None, alias="deliveryAgentId")
    checkout_request_id: Optional[str] = Field(None, alias="checkoutRequestId")


class OrderStatusUpdate(WireModel):
    status: OrderStatus


class AgentAssignRequest(WireModel):
    agent_id: str = Field(..., min_length=1, alias="agentId")


class StkPushRequest(WireModel):
    phone_number: str = Field(..., min_length=1, alias="phoneNumber")
    amount: float = Field(..., gt=0, description="Amount to charge in KSh")


class StkPushResponse(WireModel):
    success: bool = True
    message: str = "CustomerMpesaToBusiness STK Push initiated"
    checkout_request_id: str = Field(..., alias="checkoutRequestId")


class TransactionStatusRead(WireModel):
    status: TransactionStatus
