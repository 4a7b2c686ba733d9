"""Back-office routes, mounted under /api/admin and restricted to admins."""

from decimal import Decimal
from typing import List, Optional, Union

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

import accounts
import catalog
import categories
import config
import orders
import support
import wallet
from cache import ResponseCache, get_cache, user_tags
from database import get_db
from schemas import (
    Money,
    OrderStatus,
    PaymentStatus,
    Role,
    TenantId,
    TicketPriority,
    TicketStatus,
    to_money,
)
from security import require_admin
from tenancy import CURRENCIES, TenantContext, get_tenant

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)])


# Dashboard
@router.get("/dashboard")
def dashboard(db=Depends(get_db)):
    completed = db["order"].find({"status": "completed"}, {"final_amount": 1, "currency": 1})
    sales = {}
    for order in completed:
        currency = order.get("currency", "EUR")
        sales[currency] = sales.get(currency, Decimal("0")) + to_money(order["final_amount"])
    return {
        "total_users": db["user"].count_documents({}),
        "total_products": db["product"].count_documents({"is_active": True}),
        "available_keys": db["license_key"].count_documents({"is_used": False}),
        "total_orders": db["order"].count_documents({}),
        "total_sales": {currency: f"{amount:.2f}" for currency, amount in sales.items()},
    }


# Products
class ProductPayload(BaseModel):
    sku: str = Field(..., min_length=1)
    name: str
    description: Optional[str] = None
    price: Money
    price_km: Optional[Money] = None
    purchase_price: Optional[Money] = None
    b2b_price: Optional[Money] = None
    retail_price: Optional[Money] = None
    category_id: Optional[str] = None
    region: str = "Global"
    platform: str = "Windows"
    image_url: Optional[str] = None
    warranty: Optional[str] = None
    is_active: bool = True


class ProductUpdate(BaseModel):
    sku: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    category_id: Optional[str] = None
    region: Optional[str] = None
    platform: Optional[str] = None
    image_url: Optional[str] = None
    warranty: Optional[str] = None


class PricingUpdate(BaseModel):
    price: Optional[Money] = None
    price_km: Optional[Money] = None
    purchase_price: Optional[Money] = None
    b2b_price: Optional[Money] = None
    retail_price: Optional[Money] = None


@router.get("/products")
def list_products(include_inactive: bool = True, db=Depends(get_db)):
    return catalog.admin_list_products(db, include_inactive=include_inactive)


@router.get("/products/{product_id}")
def get_product(product_id: str, db=Depends(get_db)):
    return catalog.get_product(db, product_id)


@router.post("/products", status_code=201)
def create_product(payload: ProductPayload, db=Depends(get_db),
                   cache: ResponseCache = Depends(get_cache)):
    product = catalog.create_product(db, payload.model_dump())
    cache.invalidate("products", "categories")
    return product


@router.put("/products/{product_id}")
def update_product(product_id: str, payload: ProductUpdate, db=Depends(get_db),
                   cache: ResponseCache = Depends(get_cache)):
    product = catalog.update_product(db, product_id, payload.model_dump(exclude_unset=True))
    cache.invalidate("products", "categories")
    return product


@router.patch("/products/{product_id}/pricing")
def update_pricing(product_id: str, payload: PricingUpdate, db=Depends(get_db),
                   cache: ResponseCache = Depends(get_cache)):
    product = catalog.update_pricing(db, product_id, payload.model_dump(exclude_unset=True))
    cache.invalidate("products")
    return product


@router.patch("/products/{product_id}/toggle-status")
def toggle_product(product_id: str, db=Depends(get_db),
                   cache: ResponseCache = Depends(get_cache)):
    product = catalog.toggle_status(db, product_id)
    cache.invalidate("products", "categories")
    return product


@router.delete("/products/{product_id}")
def delete_product(product_id: str, db=Depends(get_db),
                   cache: ResponseCache = Depends(get_cache)):
    catalog.delete_product(db, product_id)
    cache.invalidate("products", "categories")
    return {"success": True}


# License keys
class KeyImport(BaseModel):
    keys: Union[str, List[str]] = Field(..., description="Newline separated text or a list of keys")
    ignore_duplicates: bool = False


@router.get("/license-keys")
def all_keys(product_id: Optional[str] = None, is_used: Optional[bool] = None,
             limit: int = Query(500, ge=1, le=5000), db=Depends(get_db)):
    return catalog.list_keys(db, product_id=product_id, is_used=is_used, limit=limit)


@router.get("/license-keys/{product_id}/stats")
def key_stats(product_id: str, db=Depends(get_db)):
    return catalog.key_stats(db, product_id)


@router.post("/license-keys/{product_id}", status_code=201)
def add_keys(product_id: str, payload: KeyImport, db=Depends(get_db),
             cache: ResponseCache = Depends(get_cache)):
    result = catalog.add_keys(db, product_id, payload.keys, payload.ignore_duplicates)
    cache.invalidate("products")
    return {"data": result}


@router.delete("/license-keys/key/{key_id}")
def remove_key(key_id: str, db=Depends(get_db), cache: ResponseCache = Depends(get_cache)):
    catalog.remove_key(db, key_id)
    cache.invalidate("products")
    return {"success": True}


# Users
class UserUpdate(BaseModel):
    role: Optional[Role] = None
    tenant_id: Optional[TenantId] = None
    is_active: Optional[bool] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company_name: Optional[str] = None


class RoleUpdate(BaseModel):
    role: Role


@router.get("/users")
def list_users(tenant_id: Optional[TenantId] = None, role: Optional[Role] = None,
               db=Depends(get_db)):
    return accounts.list_users(db, tenant_id=tenant_id, role=role)


@router.get("/users/{user_id}")
def get_user(user_id: str, db=Depends(get_db)):
    return accounts.get_user(db, user_id)


@router.patch("/users/{user_id}")
def update_user(user_id: str, payload: UserUpdate, db=Depends(get_db),
                cache: ResponseCache = Depends(get_cache)):
    user = accounts.update_user(db, user_id, **payload.model_dump(exclude_unset=True))
    cache.invalidate(*user_tags(user_id))
    return user


@router.put("/users/{user_id}/role")
def update_role(user_id: str, payload: RoleUpdate, db=Depends(get_db),
                cache: ResponseCache = Depends(get_cache)):
    user = accounts.update_user(db, user_id, role=payload.role)
    cache.invalidate(*user_tags(user_id))
    return user


@router.get("/users/{user_id}/wallet")
def user_wallet(user_id: str, tenant: Optional[TenantId] = None, db=Depends(get_db)):
    """Wallet in the customer's own tenant unless `?tenant=` names another."""
    user = accounts.get_user(db, user_id)
    tenant_id = tenant or user.get("tenant_id") or config.DEFAULT_TENANT
    return {
        "data": {
            **wallet.get_wallet(db, user_id, tenant_id),
            "currency": CURRENCIES[tenant_id],
            "transactions": wallet.transactions(db, user_id, tenant_id),
        }
    }


# Customer pricing
class UserPricingPayload(BaseModel):
    custom_price: Optional[Money] = None
    is_visible: bool = True


@router.get("/users/{user_id}/pricing")
def list_user_pricing(user_id: str, db=Depends(get_db)):
    return catalog.list_user_pricing(db, user_id)


@router.put("/users/{user_id}/pricing/{product_id}")
def set_user_pricing(user_id: str, product_id: str, payload: UserPricingPayload,
                     db=Depends(get_db), cache: ResponseCache = Depends(get_cache)):
    accounts.get_user(db, user_id)
    entry = catalog.set_user_pricing(db, user_id, product_id, payload.custom_price, payload.is_visible)
    cache.invalidate("products", *user_tags(user_id, "cart"))
    return entry


@router.delete("/users/{user_id}/pricing/{product_id}")
def delete_user_pricing(user_id: str, product_id: str, db=Depends(get_db),
                        cache: ResponseCache = Depends(get_cache)):
    catalog.delete_user_pricing(db, user_id, product_id)
    cache.invalidate("products", *user_tags(user_id, "cart"))
    return {"success": True}


# Orders
class OrderStatusUpdate(BaseModel):
    status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None


@router.get("/orders")
def all_orders(tenant_id: Optional[TenantId] = None, status: Optional[OrderStatus] = None,
               db=Depends(get_db)):
    return orders.list_all_orders(db, tenant_id=tenant_id, status=status)


@router.patch("/orders/{order_id}/status")
def update_order_status(order_id: str, payload: OrderStatusUpdate, db=Depends(get_db),
                        cache: ResponseCache = Depends(get_cache)):
    order = orders.update_status(db, order_id, payload.status, payload.payment_status)
    cache.invalidate(*user_tags(order["user_id"], "orders", "wallet"))
    return order


# Categories
class CategoryPayload(BaseModel):
    name: str = Field(..., min_length=1)
    parent_id: Optional[str] = None
    description: Optional[str] = None
    sort_order: int = 0


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    parent_id: Optional[str] = None
    description: Optional[str] = None
    sort_order: Optional[int] = None


@router.post("/categories", status_code=201)
def create_category(payload: CategoryPayload, db=Depends(get_db),
                    cache: ResponseCache = Depends(get_cache)):
    category = categories.create_category(db, **payload.model_dump())
    cache.invalidate("categories")
    return category


@router.put("/categories/{category_id}")
def update_category(category_id: str, payload: CategoryUpdate, db=Depends(get_db),
                    cache: ResponseCache = Depends(get_cache)):
    changes = payload.model_dump(exclude_unset=True)
    category = categories.update_category(db, category_id, **changes)
    cache.invalidate("categories", "products")
    return category


@router.delete("/categories/{category_id}")
def delete_category(category_id: str, db=Depends(get_db),
                    cache: ResponseCache = Depends(get_cache)):
    categories.delete_category(db, category_id)
    cache.invalidate("categories", "products")
    return {"success": True}


# Support
class TicketUpdate(BaseModel):
    status: Optional[TicketStatus] = None
    priority: Optional[TicketPriority] = None
    assigned_to_id: Optional[str] = None


@router.get("/support/tickets")
def all_tickets(status: Optional[TicketStatus] = None,
                tenant: TenantContext = Depends(get_tenant), db=Depends(get_db)):
    return {"data": support.list_tickets(db, tenant, status=status)}


@router.put("/support/tickets/{ticket_id}")
def update_ticket(ticket_id: str, payload: TicketUpdate,
                  tenant: TenantContext = Depends(get_tenant), db=Depends(get_db)):
    return {"data": support.update_ticket(db, ticket_id, tenant, **payload.model_dump())}
