import enum
import uuid
from sqlalchemy import Column, DECIMAL, Integer, JSON, String, Text, TIMESTAMP, Boolean, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from afyabora.db import Base

JsonDoc = JSON().with_variant(JSONB, "postgresql")


class Role(str, enum.Enum):
    CUSTOMER = "CUSTOMER"
    ADMIN = "ADMIN"
    DELIVERY_AGENT = "DELIVERY_AGENT"


class OrderStatus(str, enum.Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


class TransactionStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class PaymentMethod(str, enum.Enum):
    MPESA = "MPESA"
    CASH = "CASH"


def new_order_id() -> str:
    return f"ord_{uuid.uuid4().hex[:12]}"


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(64), primary_key=True, default=new_order_id)
    user_id = Column("userId", String(64), nullable=False, index=True)
    items = Column(JsonDoc, nullable=False)
    total_amount = Column("totalAmount", DECIMAL(18, 2), nullable=False)
    status = Column(String(20), nullable=False, default=OrderStatus.PENDING.value)
    date = Column(TIMESTAMP(timezone=True), nullable=False)
    payment_method = Column("paymentMethod", String(10), nullable=False, default=PaymentMethod.MPESA.value)
    shipping_address = Column("shippingAddress", Text, nullable=False)
    notes = Column(Text, nullable=True)
    prescription_image = Column("prescriptionImage", String(512), nullable=True)
    delivery_agent_id = Column("deliveryAgentId", String(64), nullable=True, index=True)
    checkout_request_id = Column("checkoutRequestId", String(64), nullable=True)


class Transaction(Base):
    __tablename__ = "transactions"

    checkout_request_id = Column("checkoutRequestId", String(64), primary_key=True)
    phone_number = Column("phoneNumber", String(20), nullable=False)
    amount = Column(DECIMAL(18, 2), nullable=False)
    status = Column(String(10), nullable=False, default=TransactionStatus.PENDING.value)
    date = Column(TIMESTAMP(timezone=True), nullable=False)


class CartItem(Base):
    __tablename__ = "cart_items"
    __table_args__ = (UniqueConstraint("userId", "productId"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column("userId", String(64), nullable=False, index=True)
    product_id = Column("productId", String(64), nullable=False)
    name = Column(String(255), nullable=False)
    price = Column(DECIMAL(18, 2), nullable=False)
    quantity = Column(Integer, nullable=False)
    category = Column(String(64), nullable=True)
    image_url = Column("imageUrl", String(512), nullable=True)
    requires_prescription = Column("requiresPrescription", Boolean, nullable=False, default=False)


class WishlistEntry(Base):
    __tablename__ = "wishlist_entries"
    __table_args__ = (UniqueConstraint("userId", "productId"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column("userId", String(64), nullable=False, index=True)
    product_id = Column("productId", String(64), nullable=False)
