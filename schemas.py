"""
Database Schemas for the order lifecycle engine

Each Pydantic model corresponds to a MongoDB collection with the lowercase
class name used as the collection name (Product -> "product", Order ->
"order", ...). Nested models are embedded sub-documents.
"""
from datetime import datetime
from typing import Dict, List, Literal, Optional, get_args

from pydantic import BaseModel, ConfigDict, Field

PaymentMethod = Literal['card', 'wallet', 'upi', 'netbanking', 'cod']
PaymentStatus = Literal['initiated', 'paid', 'failed', 'cod']
OrderStatus = Literal[
    'pending_payment', 'confirmed', 'processing', 'packed', 'shipped', 'delivered', 'cancelled'
]
DiscountType = Literal['percentage', 'fixed']
UpdateSource = Literal['system', 'admin', 'simulator']

ORDER_STATUSES: List[str] = list(get_args(OrderStatus))

# External collaborators (read-only for the engine)

class Product(BaseModel):
    id: str = Field(..., description="Catalog product id")
    name: str
    brand: Optional[str] = None
    price: int = Field(..., ge=0, description="Unit price in whole currency units")
    image: Optional[str] = None

class CartItem(BaseModel):
    product_id: str
    size: str = 'M'
    quantity: int = Field(1, ge=1)

class CartCoupon(BaseModel):
    code: str
    discount_amount: int = 0
    discount_type: Optional[DiscountType] = None
    applied_at: Optional[datetime] = None

class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    applied_coupon: Optional[CartCoupon] = None

class User(BaseModel):
    id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: str

# Coupons

class CouponUsage(BaseModel):
    user: str = Field(..., description="User id that consumed the coupon")
    used_at: datetime
    order_value: int
    discount_applied: int

class Coupon(BaseModel):
    code: str = Field(..., description="Unique uppercase code")
    description: str = ''
    discount_type: DiscountType
    discount_value: int = Field(..., ge=0)
    minimum_order_value: int = Field(0, ge=0)
    maximum_discount: Optional[int] = Field(None, description="None means uncapped")
    usage_limit: Optional[int] = Field(None, description="None means unlimited")
    used_count: int = 0
    valid_from: datetime
    valid_to: datetime
    is_active: bool = True
    used_by: List[CouponUsage] = Field(default_factory=list)

class CouponValidation(BaseModel):
    valid: bool
    reason: Optional[str] = None

# Orders

class OrderItem(BaseModel):
    product_id: str
    name: str
    brand: Optional[str] = None
    image: Optional[str] = None
    price: int
    quantity: int = Field(..., gt=0)
    size: Optional[str] = None

class Totals(BaseModel):
    """Priced once at assembly, never recomputed."""
    model_config = ConfigDict(frozen=True)

    subtotal: int
    tax: int
    shipping: int
    cod_charges: int
    coupon_discount: int = 0
    total: int

class AppliedCoupon(BaseModel):
    code: str
    discount_amount: int
    discount_type: DiscountType
    original_total: int
    final_total: int

class ShippingAddress(BaseModel):
    name: str
    address_text: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    line: Optional[str] = None
    area: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    phone: Optional[str] = None
    landmark: Optional[str] = None

class TrackingUpdate(BaseModel):
    status: OrderStatus
    message: str
    location: Optional[str] = None
    timestamp: datetime
    source: UpdateSource = 'system'

class Tracking(BaseModel):
    tracking_number: str
    carrier: str
    estimated_delivery: Optional[datetime] = None
    actual_delivery: Optional[datetime] = None
    current_location: Optional[str] = None
    updates: List[TrackingUpdate] = Field(default_factory=list)
    status_index: Dict[str, datetime] = Field(
        default_factory=dict, description="status -> timestamp of its first update"
    )

    def has_status(self, status: str) -> bool:
        return status in self.status_index

    @property
    def last_update(self) -> Optional[TrackingUpdate]:
        return self.updates[-1] if self.updates else None

class Order(BaseModel):
    id: str = Field(..., description="ZY + 6 digits")
    user_id: str
    items: List[OrderItem]
    totals: Totals
    applied_coupon: Optional[AppliedCoupon] = None
    payment_method: PaymentMethod
    payment_status: PaymentStatus = 'initiated'
    order_status: OrderStatus = 'pending_payment'
    shipping_address: ShippingAddress
    tracking: Optional[Tracking] = None
    idempotency_key: Optional[str] = None
    cart_cleared: bool = Field(False, description="Buyer's cart emptied for this order")
    created_at: datetime
