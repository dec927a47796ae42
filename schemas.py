"""
Artify Database Schemas

Each Pydantic model below represents one MongoDB collection. The collection name is the lowercase
class name. Example: class Cart -> collection "cart". Nested models are embedded documents.

These schemas are used for validation before inserting/updating documents.
"""
from datetime import datetime, timezone
from typing import List, Optional, Literal

from pydantic import BaseModel, Field, EmailStr, field_validator

ProductStatus = Literal["draft", "active", "inactive"]
DiscountType = Literal["percentage", "fixed"]
PaymentStatus = Literal["pending", "succeeded", "failed", "refunded"]
OrderStatus = Literal["processing", "designed", "delivered", "cancelled"]


class User(BaseModel):
    firstName: str
    lastName: str = ""
    email: EmailStr
    password_hash: str
    phone: Optional[str] = None
    role: str = Field("user", description="user | admin")
    is_active: bool = True


class ProductImage(BaseModel):
    url: str
    filename: str
    format: str


class Product(BaseModel):
    name: str = Field(..., max_length=100)
    description: str
    price: float = Field(..., ge=0)
    originalPrice: Optional[float] = Field(None, ge=0)
    discount: Optional[str] = None  # derived label, e.g. "20% OFF"
    category: str
    subcategory: Optional[str] = None
    images: List[ProductImage] = []
    deliveryTime: Optional[str] = None
    features: List[str] = []
    includes: List[str] = []
    excludes: List[str] = []
    status: ProductStatus = "draft"


class ClientFile(BaseModel):
    name: str
    url: str


class ClientInfo(BaseModel):
    name: str = ""
    phone: str = ""
    gst: str = ""
    driveLink: str = ""
    files: List[ClientFile] = []


class CartItem(BaseModel):
    product: str
    quantity: int = Field(1, ge=1)
    price: float = Field(..., ge=0)  # captured at add-to-cart time
    clientInfo: ClientInfo = Field(default_factory=ClientInfo)


class Cart(BaseModel):
    user: str
    items: List[CartItem] = []
    total: float = 0.0
    version: int = 0


class Coupon(BaseModel):
    code: str
    description: str
    discountType: DiscountType = "percentage"
    discountValue: float = Field(..., ge=0)
    minOrderAmount: float = Field(0.0, ge=0)
    maxDiscountAmount: Optional[float] = Field(None, ge=0)
    startDate: datetime
    endDate: datetime
    maxUses: Optional[int] = Field(None, ge=1)
    currentUses: int = Field(0, ge=0)
    userSpecific: bool = False
    allowedUsers: List[str] = []
    categories: List[str] = []
    products: List[str] = []
    isActive: bool = True

    @field_validator("code")
    @classmethod
    def normalize_code(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("startDate", "endDate")
    @classmethod
    def assume_utc(cls, value: datetime) -> datetime:
        # naive input is taken as UTC
        return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


class OrderItem(BaseModel):
    product: str
    name: Optional[str] = None
    image: Optional[str] = None
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    clientInfo: Optional[ClientInfo] = None


class AppliedCoupon(BaseModel):
    code: str
    discount: float = Field(..., ge=0)


class BillingDetails(BaseModel):
    firstName: str
    lastName: str = ""
    email: EmailStr
    phone: Optional[str] = None
    address: str
    city: str
    state: str
    zipCode: str
    country: str = "IN"
    organizationName: Optional[str] = None
    organizationEmail: Optional[EmailStr] = None
    gstNumber: Optional[str] = None


class ShippingDetails(BaseModel):
    name: str
    address: str
    city: str
    state: str
    zipCode: str
    country: str


class Order(BaseModel):
    user: str
    items: List[OrderItem]
    subtotal: float = Field(..., ge=0)
    gst: float = Field(..., ge=0)
    discount: float = Field(0.0, ge=0)
    total: float = Field(..., ge=0)
    coupon: Optional[AppliedCoupon] = None
    paymentIntentId: str
    paymentStatus: PaymentStatus = "pending"
    orderStatus: OrderStatus = "processing"
    billingDetails: BillingDetails
    shippingDetails: ShippingDetails


class PaymentEvent(BaseModel):
    """A verified gateway outcome that arrived before its order existed."""

    paymentIntentId: str
    outcome: PaymentStatus
    eventType: str
    applied: bool = False
