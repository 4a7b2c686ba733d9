"""
Database Schemas for the B2B License Store

Collections:
- User: B2B customers, their branches and back-office staff
- Category: Three level product hierarchy with materialized paths
- Product: Software licenses sold per tenant
- LicenseKey: Single-use activation codes, one per sold unit
- CartItem: Per user, per tenant shopping cart lines
- Order / OrderItem: Checkouts and the keys they consumed
- UserPricing: Customer specific prices and visibility
- SupportTicket / TicketResponse: Customer support threads
"""

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Annotated, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, PlainSerializer

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


# Amounts are stored as two-decimal strings, the same way a numeric(10,2)
# column would come back.
Money = Annotated[
    Decimal,
    Field(ge=0),
    PlainSerializer(lambda v: f"{to_money(v):.2f}", return_type=str),
]

Role = Literal["b2b_user", "admin", "super_admin"]
TenantId = Literal["eur", "km"]
PaymentMethod = Literal["wallet", "credit_card", "bank_transfer", "purchase_order"]
OrderStatus = Literal["pending", "completed", "cancelled"]
PaymentStatus = Literal["pending", "paid", "failed"]
TicketStatus = Literal["open", "in_progress", "pending", "resolved", "closed"]
TicketPriority = Literal["low", "medium", "high", "urgent"]
BranchType = Literal["main_company", "branch"]


# Users
class User(BaseModel):
    username: str = Field(..., min_length=3, description="Login name")
    email: EmailStr = Field(..., description="Email address")
    hashed_password: str = Field(..., description="Password hash")
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company_name: Optional[str] = None
    role: Role = Field("b2b_user", description="User role")
    tenant_id: TenantId = Field("eur", description="Storefront the user buys from")
    is_active: bool = Field(True, description="Is account active")
    branch_type: BranchType = Field("main_company", description="Main company account or one of its branches")
    parent_company_id: Optional[str] = Field(None, description="Owning company for branch accounts")
    branch_name: Optional[str] = None
    branch_code: Optional[str] = None


# Categories
class Category(BaseModel):
    name: str = Field(..., min_length=1)
    slug: str = Field(..., description="URL segment derived from the name")
    description: Optional[str] = None
    parent_id: Optional[str] = Field(None, description="Parent category id, None for roots")
    level: int = Field(..., ge=1, le=3)
    path: str = Field(..., description="Slash separated slugs from the root, e.g. /software/office")
    path_name: str = Field(..., description="Human readable breadcrumb, e.g. Software > Office")
    sort_order: int = 0
    is_active: bool = True


# Products
class Product(BaseModel):
    sku: str = Field(..., min_length=1, description="Stock keeping unit")
    name: str = Field(..., description="Product name")
    description: Optional[str] = None
    price: Money = Field(..., description="EUR storefront price")
    price_km: Optional[Money] = Field(None, description="KM storefront price")
    purchase_price: Optional[Money] = None
    b2b_price: Optional[Money] = None
    retail_price: Optional[Money] = None
    category_id: Optional[str] = None
    region: str = Field("Global", description="Global, EU, US, ...")
    platform: str = Field("Windows", description="Windows, Mac, Both, ...")
    image_url: Optional[str] = None
    warranty: Optional[str] = None
    is_active: bool = True


# License keys
class LicenseKey(BaseModel):
    product_id: str
    key_value: str = Field(..., min_length=1)
    is_used: bool = False
    used_by: Optional[str] = None
    used_at: Optional[datetime] = None
    order_id: Optional[str] = None


# Cart
class CartItem(BaseModel):
    user_id: str
    tenant_id: TenantId
    product_id: str
    quantity: int = Field(..., ge=1)


# Orders
class BillingInfo(BaseModel):
    company_name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None


class Order(BaseModel):
    order_number: str = Field(..., description="Sequential number, ORD-000001")
    user_id: str
    tenant_id: TenantId
    currency: Literal["EUR", "KM"] = "EUR"
    total_amount: Money
    tax_amount: Money
    final_amount: Money
    status: OrderStatus = "pending"
    payment_method: PaymentMethod = "wallet"
    payment_status: PaymentStatus = "pending"
    billing: BillingInfo = Field(default_factory=BillingInfo)


class OrderItem(BaseModel):
    order_id: str
    product_id: str
    license_key_id: str
    quantity: int = Field(1, ge=1)
    unit_price: Money
    total_price: Money


# Customer specific pricing
class UserPricing(BaseModel):
    user_id: str
    product_id: str
    custom_price: Optional[Money] = None
    is_visible: bool = True


# Support
class SupportTicket(BaseModel):
    ticket_number: str
    user_id: str
    tenant_id: TenantId
    subject: str = Field(..., min_length=3)
    description: str = Field(..., min_length=1)
    category: str = "general"
    priority: TicketPriority = "medium"
    status: TicketStatus = "open"
    assigned_to_id: Optional[str] = None
    resolved_at: Optional[datetime] = None


class TicketResponse(BaseModel):
    ticket_id: str
    user_id: str
    message: str = Field(..., min_length=1)
    is_staff: bool = False
