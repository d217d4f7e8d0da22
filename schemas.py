"""
Database Schemas for TheRawKing

Each Pydantic model represents a MongoDB collection or an embedded document.
Collection name is the lowercase of the class name (product, user, order).
Documents are stored with snake_case keys exactly as dumped by these models.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


# --- Stock ledger ---


class Reservation(BaseModel):
    """A time-limited hold on units of a product for one user/session."""

    reservation_id: str = Field(..., description="Batch id shared by every item reserved together")
    user_id: str
    session_id: str
    quantity: int = Field(..., gt=0)
    variant_id: Optional[str] = None
    reserved_at: datetime
    expires_at: datetime


class Variant(BaseModel):
    id: str = Field(..., description="Variant id, unique within the product")
    name: str = Field(..., description="Option name, e.g. 'Size'")
    value: Optional[str] = Field(None, description="Option value, e.g. 'XL'")
    stock: int = Field(0, ge=0, description="Physical units of this variant")
    reserved: int = Field(0, ge=0, description="Units held by live reservations")

    @property
    def available_quantity(self) -> int:
        return self.stock - self.reserved


class Stock(BaseModel):
    """Per-product availability, embedded in Product.stock.

    ``reserved`` always equals the sum of ``reservations[].quantity`` and never
    exceeds ``quantity``; the reservation engine keeps both in step.
    """

    quantity: int = Field(0, ge=0, description="Physical units currently owned")
    reserved: int = Field(0, ge=0, description="Units held by unexpired, unconfirmed reservations")
    track_quantity: bool = Field(True, description="False means unlimited stock")
    low_stock_threshold: int = Field(10, ge=0)
    reservations: List[Reservation] = Field(default_factory=list)
    last_updated: Optional[datetime] = None

    @property
    def available_quantity(self) -> int:
        return self.quantity - self.reserved

    @property
    def status_label(self) -> str:
        if not self.track_quantity:
            return "in-stock"
        available = self.available_quantity
        if available <= 0:
            return "out-of-stock"
        if available <= self.low_stock_threshold:
            return "low-stock"
        return "in-stock"


class Product(BaseModel):
    name: str = Field(..., description="Product name")
    sku: str = Field(..., description="Stock keeping unit")
    description: Optional[str] = Field(None, description="Product description")
    price: float = Field(..., ge=0, description="Price in dollars")
    currency: str = Field("usd", description="ISO currency code")
    images: List[str] = Field(default_factory=list, description="Image URLs")
    featured: bool = Field(False, description="Featured on home page")
    color: Optional[str] = Field(None, description="Color variant")
    tag: Optional[str] = Field(None, description="Tag label like 'New' or 'Limited'")
    status: str = Field("active", description="draft | active | archived")
    stock: Stock = Field(default_factory=Stock)
    variants: List[Variant] = Field(default_factory=list)


class User(BaseModel):
    email: str
    first_name: str = ""
    last_name: str = ""
    stripe_customer_id: Optional[str] = None


# --- Orders ---


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    PAYMENT_FAILED = "payment_failed"
    REFUNDED = "refunded"


class Address(BaseModel):
    first_name: str
    last_name: str
    address: str
    city: str
    postcode: str
    country: str
    apartment: Optional[str] = None
    phone: Optional[str] = None


class OrderItem(BaseModel):
    """Line item; name, sku and price are snapshotted when the order is created."""

    product_id: str = Field(..., description="Referenced product id")
    name: str
    sku: str
    price: float
    quantity: int = Field(ge=1, default=1)
    total: float
    variant_id: Optional[str] = None


class StatusEntry(BaseModel):
    status: OrderStatus
    timestamp: datetime
    notes: str = ""
    updated_by: Optional[str] = None

    model_config = ConfigDict(use_enum_values=True)


class PaymentInfo(BaseModel):
    method: str = Field(..., description="Gateway payment method id")
    status: str = Field("pending", description="pending | completed | failed | refunded")
    amount: float
    currency: str = "usd"
    reference: Optional[str] = Field(None, description="Gateway charge reference")
    paid_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


class ShippingInfo(BaseModel):
    method: str = "standard"
    status: str = "pending"
    estimated_delivery: Optional[datetime] = None
    tracking_number: Optional[str] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None


class OrderMetadata(BaseModel):
    stock_reservation_id: Optional[str] = None
    source: str = "web"


class Order(BaseModel):
    order_number: str
    user_id: str
    items: List[OrderItem]
    subtotal: float
    tax: float
    shipping_cost: float
    total: float
    shipping_address: Address
    billing_address: Optional[Address] = None
    status: OrderStatus = OrderStatus.PENDING
    status_history: List[StatusEntry] = Field(default_factory=list)
    payment: PaymentInfo
    shipping: ShippingInfo
    notes: str = ""
    metadata: OrderMetadata = Field(default_factory=OrderMetadata)
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(use_enum_values=True)
