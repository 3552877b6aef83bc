"""
Database Schemas for the Restaurant Ordering API (MongoDB via Pydantic)

Each stored Pydantic model maps to a MongoDB collection using the lowercase
class name as the collection name.

Collections:
- user
- menucategory
- menuitem
- menuitemvariant
- choicegroup
- order
- ordermodification
- chatmessage
- chatreadstatus
- voucher
- deliveryfee
- sitesetting
- storedfile
- websiteinquiry
- ratelimit
"""
from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from order_status import OrderStatus, Role

OrderType = Literal["dine-in", "takeaway", "delivery", "pre-order"]
PaymentPlan = Literal["full", "downpayment"]
RemainingPaymentMethod = Literal["cash", "online"]
MessageKind = Literal["text", "image"]
ModificationType = Literal[
    "item_added",
    "item_removed",
    "item_quantity_changed",
    "item_price_changed",
    "order_edited",
    "status_changed",
]


# Auth/User
class CurrentUser(BaseModel):
    """The acting identity passed into every store operation."""
    id: str
    role: Role
    display_name: str


class User(BaseModel):
    email: str = Field(..., description="Unique email address")
    first_name: str
    last_name: str
    password_hash: str = Field(..., description="Hashed password")
    role: Role = Field(Role.CUSTOMER)
    phone: Optional[str] = None
    address: Optional[str] = None
    gcash_number: Optional[str] = None
    is_active: bool = Field(True)


# Menu
class MenuCategory(BaseModel):
    name: str
    slug: str
    icon: Optional[str] = None
    position: int = 0


class MenuItem(BaseModel):
    name: str
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    category: str
    image_url: Optional[str] = None
    available: bool = True


class MenuItemVariant(BaseModel):
    menu_item_id: str
    name: str
    price: float = Field(..., ge=0)
    available: bool = True


class Choice(BaseModel):
    name: str
    price: float = Field(0, ge=0)
    available: bool = True


class ChoiceGroup(BaseModel):
    menu_item_id: str
    name: str
    choices: List[Choice] = []


# Orders
class Coordinates(BaseModel):
    lat: float
    lng: float


class OrderItemIn(BaseModel):
    menu_item_id: str
    name: Optional[str] = None
    quantity: int
    variant_id: Optional[str] = None
    # choice group id -> choice name; prices always come from the catalog
    selected_choices: Optional[Dict[str, str]] = None
    unit_price: Optional[float] = None


class OrderItem(BaseModel):
    menu_item_id: str
    name: str
    unit_price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    line_total: float = Field(..., ge=0)
    variant_id: Optional[str] = None
    variant_name: Optional[str] = None
    selected_choices: Optional[Dict[str, Dict[str, object]]] = None


class OrderDraft(BaseModel):
    customer_name: str
    customer_phone: str
    customer_address: Optional[str] = None
    customer_coordinates: Optional[Coordinates] = None
    gcash_number: Optional[str] = None
    items: List[OrderItemIn]
    order_type: OrderType
    pre_order_fulfillment: Optional[Literal["pickup", "delivery"]] = None
    pre_order_scheduled_at: Optional[datetime] = None
    payment_plan: PaymentPlan = "full"
    downpayment_amount: Optional[float] = None
    downpayment_proof_url: Optional[str] = None
    remaining_payment_method: Optional[RemainingPaymentMethod] = None
    payment_screenshot: Optional[str] = None
    voucher_code: Optional[str] = None
    special_instructions: Optional[str] = None
    # Client-side figures; the server recomputes and only checks them
    subtotal: Optional[float] = None
    platform_fee: Optional[float] = None
    delivery_fee: Optional[float] = None
    discount: Optional[float] = None
    total: Optional[float] = None


class Order(BaseModel):
    customer_id: str
    customer_name: str
    customer_phone: str
    customer_address: Optional[str] = None
    customer_coordinates: Optional[Coordinates] = None
    gcash_number: Optional[str] = None
    items: List[OrderItem]
    subtotal: float = Field(..., ge=0)
    platform_fee: float = Field(0, ge=0)
    delivery_fee: float = Field(0, ge=0)
    discount: float = Field(0, ge=0)
    total: float = Field(..., ge=0)
    order_type: OrderType
    pre_order_fulfillment: Optional[Literal["pickup", "delivery"]] = None
    pre_order_scheduled_at: Optional[datetime] = None
    payment_plan: PaymentPlan = "full"
    downpayment_amount: Optional[float] = None
    downpayment_proof_url: Optional[str] = None
    remaining_payment_method: Optional[RemainingPaymentMethod] = None
    remaining_payment_proof_url: Optional[str] = None
    payment_screenshot: Optional[str] = None
    voucher_code: Optional[str] = None
    special_instructions: Optional[str] = None
    status: OrderStatus
    denial_reason: Optional[str] = None
    estimated_prep_time: Optional[int] = None
    allow_chat: bool = True
    allow_customer_images: bool = False


class OrderPatch(BaseModel):
    status: Optional[OrderStatus] = None
    denial_reason: Optional[str] = None
    estimated_prep_time: Optional[int] = Field(None, ge=0)
    allow_chat: Optional[bool] = None
    allow_customer_images: Optional[bool] = None
    remaining_payment_proof_url: Optional[str] = None


class OrderItemsUpdate(BaseModel):
    items: List[OrderItem]
    modification_type: ModificationType = "order_edited"
    item_details: Optional[str] = None


class OrderModification(BaseModel):
    order_id: str
    modified_by: str
    modified_by_name: str
    modification_type: ModificationType
    previous_value: str
    new_value: str
    item_details: Optional[str] = None
    timestamp: datetime


# Chat
class ChatMessageIn(BaseModel):
    message: str
    kind: MessageKind = "text"


class ChatMessage(BaseModel):
    order_id: str
    sender_id: str
    sender_name: str
    sender_role: Role
    message: str
    kind: MessageKind = "text"
    timestamp: datetime


class ChatSummaryRequest(BaseModel):
    order_ids: List[str]


# Vouchers
class Voucher(BaseModel):
    code: str
    type: Literal["percentage", "fixed"]
    value: float = Field(..., ge=0)
    min_order_amount: float = Field(0, ge=0)
    max_discount: Optional[float] = Field(None, ge=0)
    expires_at: datetime
    usage_limit: int = Field(..., ge=0)
    usage_count: int = Field(0, ge=0)
    active: bool = True


class VoucherUpdate(BaseModel):
    """Owner edit; fields left out keep their stored value. Usage is only counted by orders."""
    code: Optional[str] = None
    type: Optional[Literal["percentage", "fixed"]] = None
    value: Optional[float] = Field(None, ge=0)
    min_order_amount: Optional[float] = Field(None, ge=0)
    max_discount: Optional[float] = Field(None, ge=0)
    expires_at: Optional[datetime] = None
    usage_limit: Optional[int] = Field(None, ge=0)
    active: Optional[bool] = None


class VoucherValidation(BaseModel):
    valid: bool
    discount: float = 0
    message: Optional[str] = None


# Delivery
class DeliveryFee(BaseModel):
    barangay: str
    fee: float = Field(..., ge=0)


# Website inquiries
class WebsiteInquiry(BaseModel):
    name: str
    email: str
    company_name: Optional[str] = None
    subject: str
    message: str
    status: Literal["new", "in_review", "responded", "closed"] = "new"


# Site settings
class SiteSetting(BaseModel):
    key: str
    value: dict | str | int | float | bool
    description: Optional[str] = None
