import logging
import os
import secrets
import time
from collections import Counter
from decimal import Decimal
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import BaseModel, EmailStr, Field
from pydantic import ValidationError as SchemaValidationError

import accounts
import cart
import catalog
import categories
import config
import database
import orders
import support
import wallet
from admin import router as admin_router
from cache import ResponseCache, get_cache, user_tags
from database import get_db, optional_db, serialize
from errors import ServiceError
from schemas import BillingInfo, PaymentMethod, TenantId, TicketPriority
from security import (
    Token,
    create_access_token,
    get_current_user,
    get_user_by_login,
    verify_password,
)
from tenancy import TenantContext, get_tenant

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

START_TIME = time.time()
REQUEST_COUNTS: Counter = Counter()

# App and CORS
app = FastAPI(title="B2B License Store API", version=config.APP_VERSION)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(admin_router)


@app.middleware("http")
async def count_requests(request: Request, call_next):
    response = await call_next(request)
    route = request.scope.get("route")
    REQUEST_COUNTS[f"{request.method} {getattr(route, 'path', request.url.path)}"] += 1
    return response


# Error handling
@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, **exc.extra})


@app.exception_handler(SchemaValidationError)
async def schema_error_handler(request: Request, exc: SchemaValidationError):
    errors = exc.errors(include_url=False, include_context=False)
    return JSONResponse(status_code=422, content={"detail": jsonable_encoder(errors)})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def cached_response(response: Response, cache: ResponseCache, key: str, producer, ttl=None):
    value, hit = cache.remember(key, producer, ttl)
    response.headers["X-Cache"] = "HIT" if hit else "MISS"
    return value


# Startup: indexes, first admin and seed data
@app.on_event("startup")
def prepare_database():
    if database.db is None:
        logger.warning("DATABASE_URL / DATABASE_NAME not set, running without a database")
        return
    database.ensure_indexes(database.db)
    admin_username = os.getenv("ADMIN_USERNAME")
    admin_password = os.getenv("ADMIN_PASSWORD")
    if admin_username and admin_password and database.db["user"].count_documents({"role": "super_admin"}) == 0:
        accounts.register_user(
            database.db,
            username=admin_username,
            email=os.getenv("ADMIN_EMAIL", f"{admin_username}@example.com"),
            password=admin_password,
            role="super_admin",
        )
    if database.db["product"].count_documents({}) == 0:
        seed_catalog(database.db)


def seed_catalog(db):
    software = categories.create_category(db, "Software")
    office = categories.create_category(db, "Office", parent_id=software["id"])
    systems = categories.create_category(db, "Operating Systems", parent_id=software["id"])
    samples = [
        dict(sku="MS-OFF-2021-PP", name="Office 2021 Professional Plus", price="49.00",
             price_km="95.00", b2b_price="39.00", retail_price="79.00",
             category_id=office["id"], region="Global", platform="Windows"),
        dict(sku="MS-WIN-11-PRO", name="Windows 11 Pro", price="29.00", price_km="57.00",
             b2b_price="22.00", retail_price="59.00", category_id=systems["id"],
             region="EU", platform="Windows"),
    ]
    for sample in samples:
        product = catalog.create_product(db, sample)
        catalog.add_keys(db, product["id"], [secrets.token_hex(10).upper() for _ in range(5)])
    logger.info("Seeded %d sample products", len(samples))


# Routes
@app.get("/")
def root():
    return {"message": "B2B License Store API is running"}


@app.get("/health")
def health(db=Depends(optional_db)):
    body = {
        "timestamp": time.time(),
        "uptime": round(time.time() - START_TIME, 3),
        "version": config.APP_VERSION,
    }
    try:
        if db is None:
            raise RuntimeError("Database not configured")
        db.list_collection_names()
    except Exception as e:
        logger.warning("Health check failed: %s", e)
        return JSONResponse(status_code=503, content={**body, "status": "unhealthy", "error": str(e)})
    return {**body, "status": "healthy"}


@app.get("/ready")
def ready(db=Depends(optional_db), cache: ResponseCache = Depends(get_cache)):
    try:
        if db is None:
            raise RuntimeError("Database not configured")
        db.list_collection_names()
        database_state = "connected"
    except Exception as e:
        logger.warning("Readiness check failed: %s", e)
        database_state = "disconnected"
    body = {
        "status": "ready" if database_state == "connected" else "not_ready",
        "services": {"database": database_state, "cache": cache.backend, "application": "running"},
    }
    return JSONResponse(status_code=200 if database_state == "connected" else 503, content=body)


@app.get("/metrics")
def metrics(cache: ResponseCache = Depends(get_cache)):
    return {
        "uptime": round(time.time() - START_TIME, 3),
        "version": config.APP_VERSION,
        "cache_backend": cache.backend,
        "requests": dict(REQUEST_COUNTS),
        "total_requests": sum(REQUEST_COUNTS.values()),
    }


# Auth
class RegisterPayload(BaseModel):
    username: str = Field(..., min_length=3)
    email: EmailStr
    password: str = Field(..., min_length=8)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company_name: Optional[str] = None
    tenant_id: TenantId = "eur"


@app.post("/auth/register", status_code=201)
def register(payload: RegisterPayload, db=Depends(get_db)):
    data = payload.model_dump()
    return accounts.register_user(db, **data)


@app.post("/auth/login", response_model=Token)
def login(form_data: OAuth2PasswordRequestForm = Depends(), db=Depends(get_db)):
    user = get_user_by_login(db, form_data.username)
    if not user or not verify_password(form_data.password, user.get("hashed_password", "")):
        raise HTTPException(status_code=400, detail="Incorrect username or password")
    if not user.get("is_active", True):
        raise HTTPException(status_code=403, detail="Account is disabled")

    access_token = create_access_token(data={"sub": str(user["_id"])})
    return Token(access_token=access_token)


@app.get("/auth/me")
def me(current_user: dict = Depends(get_current_user)):
    return serialize(current_user)


@app.get("/api/user")
def api_user(current_user: dict = Depends(get_current_user),
             tenant: TenantContext = Depends(get_tenant)):
    return {**serialize(current_user), "currency": tenant.currency}


class BranchCreate(BaseModel):
    username: str = Field(..., min_length=3)
    email: EmailStr
    password: str = Field(..., min_length=8)
    branch_name: str = Field(..., min_length=1)
    branch_code: Optional[str] = None
    company_name: Optional[str] = None


@app.get("/api/users/{company_id}/branches")
def company_branches(company_id: str, current_user: dict = Depends(get_current_user),
                     db=Depends(get_db)):
    return {"data": accounts.list_branches(db, current_user, company_id)}


@app.post("/api/users/{company_id}/branches", status_code=201)
def create_branch(company_id: str, payload: BranchCreate,
                  current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    return {"data": accounts.create_branch(db, current_user, company_id, **payload.model_dump())}


# Products
@app.get("/api/products")
def list_products(
    request: Request,
    response: Response,
    region: Optional[str] = None,
    platform: Optional[str] = None,
    category_id: Optional[str] = None,
    search: Optional[str] = None,
    price_min: Optional[Decimal] = Query(None, ge=0),
    price_max: Optional[Decimal] = Query(None, ge=0),
    limit: Optional[int] = Query(None, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    current_user: dict = Depends(get_current_user),
    tenant: TenantContext = Depends(get_tenant),
    db=Depends(get_db),
    cache: ResponseCache = Depends(get_cache),
):
    user_id = str(current_user["_id"])
    query = "&".join(f"{k}={v}" for k, v in sorted(request.query_params.items()))
    key = ResponseCache.key("products", tenant.tenant_id, user_id, query)

    def load():
        category_ids = categories.subtree_ids(db, category_id) if category_id else None
        return catalog.list_products(
            db, tenant.tenant_id, tenant.currency, user_id=user_id, region=region,
            platform=platform, category_ids=category_ids, search=search,
            price_min=price_min, price_max=price_max, limit=limit, offset=offset,
        )

    return cached_response(response, cache, key, load)


@app.get("/api/products/{product_id}")
def get_product(product_id: str, current_user: dict = Depends(get_current_user),
                tenant: TenantContext = Depends(get_tenant), db=Depends(get_db)):
    return catalog.get_storefront_product(
        db, product_id, tenant.tenant_id, tenant.currency, user_id=str(current_user["_id"])
    )


# Categories
@app.get("/api/categories")
def list_categories(db=Depends(get_db)):
    return categories.list_categories(db)


@app.get("/api/categories/hierarchy")
def category_hierarchy(response: Response, db=Depends(get_db),
                       cache: ResponseCache = Depends(get_cache)):
    return cached_response(response, cache, "categories:hierarchy", lambda: categories.hierarchy(db))


@app.get("/api/categories/level/{level}")
def categories_by_level(level: int, db=Depends(get_db)):
    return categories.by_level(db, level)


@app.get("/api/categories/{category_id}")
def get_category(category_id: str, db=Depends(get_db)):
    return categories.get_category(db, category_id)


@app.get("/api/categories/{category_id}/children")
def category_children(category_id: str, db=Depends(get_db)):
    return categories.children(db, category_id)


@app.get("/api/categories/{category_id}/path")
def category_path(category_id: str, db=Depends(get_db)):
    return categories.category_path(db, category_id)


@app.get("/api/categories/{category_id}/breadcrumbs")
def category_breadcrumbs(category_id: str, db=Depends(get_db)):
    return categories.breadcrumbs(db, category_id)


# Cart
class CartAdd(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class CartUpdate(BaseModel):
    quantity: int


@app.get("/api/cart")
def get_cart(current_user: dict = Depends(get_current_user),
             tenant: TenantContext = Depends(get_tenant), db=Depends(get_db)):
    return cart.list_items(db, str(current_user["_id"]), tenant.tenant_id, tenant.currency)


@app.post("/api/cart", status_code=201)
def add_to_cart(payload: CartAdd, current_user: dict = Depends(get_current_user),
                tenant: TenantContext = Depends(get_tenant), db=Depends(get_db),
                cache: ResponseCache = Depends(get_cache)):
    user_id = str(current_user["_id"])
    item = cart.add_item(db, user_id, tenant.tenant_id, payload.product_id, payload.quantity)
    cache.invalidate(*user_tags(user_id, "cart"))
    return item


@app.get("/api/cart/summary")
def cart_summary(response: Response, current_user: dict = Depends(get_current_user),
                 tenant: TenantContext = Depends(get_tenant), db=Depends(get_db),
                 cache: ResponseCache = Depends(get_cache)):
    user_id = str(current_user["_id"])
    key = ResponseCache.key(f"cart:{user_id}", tenant.tenant_id, "summary")
    return cached_response(
        response, cache, key,
        lambda: cart.summary(db, user_id, tenant.tenant_id, tenant.currency), ttl=120,
    )


@app.patch("/api/cart/{item_id}")
def update_cart_item(item_id: str, payload: CartUpdate,
                     current_user: dict = Depends(get_current_user),
                     tenant: TenantContext = Depends(get_tenant), db=Depends(get_db),
                     cache: ResponseCache = Depends(get_cache)):
    user_id = str(current_user["_id"])
    item = cart.update_quantity(db, user_id, tenant.tenant_id, item_id, payload.quantity)
    cache.invalidate(*user_tags(user_id, "cart"))
    return {"success": True, "item": item}


@app.delete("/api/cart/{item_id}")
def remove_cart_item(item_id: str, current_user: dict = Depends(get_current_user),
                     tenant: TenantContext = Depends(get_tenant), db=Depends(get_db),
                     cache: ResponseCache = Depends(get_cache)):
    user_id = str(current_user["_id"])
    cart.remove_item(db, user_id, tenant.tenant_id, item_id)
    cache.invalidate(*user_tags(user_id, "cart"))
    return {"success": True, "message": "Item removed from cart"}


@app.delete("/api/cart")
def clear_cart(current_user: dict = Depends(get_current_user),
               tenant: TenantContext = Depends(get_tenant), db=Depends(get_db),
               cache: ResponseCache = Depends(get_cache)):
    user_id = str(current_user["_id"])
    removed = cart.clear(db, user_id, tenant.tenant_id)
    cache.invalidate(*user_tags(user_id, "cart"))
    return {"success": True, "items_removed": removed}


# Orders
class OrderCreate(BaseModel):
    billing_info: BillingInfo = Field(default_factory=BillingInfo)
    payment_method: PaymentMethod = "wallet"


@app.post("/api/orders", status_code=201)
def create_order(payload: OrderCreate, current_user: dict = Depends(get_current_user),
                 tenant: TenantContext = Depends(get_tenant), db=Depends(get_db),
                 cache: ResponseCache = Depends(get_cache)):
    order = orders.checkout(db, current_user, tenant, payload.billing_info, payload.payment_method)
    cache.invalidate("products", *user_tags(str(current_user["_id"])))
    return order


@app.get("/api/orders")
def my_orders(response: Response, current_user: dict = Depends(get_current_user),
              tenant: TenantContext = Depends(get_tenant), db=Depends(get_db),
              cache: ResponseCache = Depends(get_cache)):
    user_id = str(current_user["_id"])
    key = ResponseCache.key(f"orders:{user_id}", tenant.tenant_id)
    return cached_response(
        response, cache, key, lambda: orders.list_orders(db, user_id, tenant.tenant_id)
    )


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, current_user: dict = Depends(get_current_user),
              tenant: TenantContext = Depends(get_tenant), db=Depends(get_db)):
    return orders.get_order(db, order_id, user=current_user, tenant=tenant)


# Wallet
@app.get("/api/wallet")
def my_wallet(response: Response, current_user: dict = Depends(get_current_user),
              tenant: TenantContext = Depends(get_tenant), db=Depends(get_db),
              cache: ResponseCache = Depends(get_cache)):
    user_id = str(current_user["_id"])
    key = ResponseCache.key(f"wallet:{user_id}", tenant.tenant_id)
    data = cached_response(
        response, cache, key, lambda: wallet.get_wallet(db, user_id, tenant.tenant_id), ttl=60
    )
    return {"data": {**data, "currency": tenant.currency}}


@app.get("/api/wallet/transactions")
def my_wallet_transactions(limit: int = Query(50, ge=1, le=500),
                           current_user: dict = Depends(get_current_user),
                           tenant: TenantContext = Depends(get_tenant), db=Depends(get_db)):
    return {"data": wallet.transactions(db, str(current_user["_id"]), tenant.tenant_id, limit)}


# Support
class TicketCreate(BaseModel):
    subject: str = Field(..., min_length=3)
    description: str = Field(..., min_length=1)
    category: str = "general"
    priority: TicketPriority = "medium"


class TicketReply(BaseModel):
    message: str = Field(..., min_length=1)


@app.post("/api/support/tickets", status_code=201)
def open_ticket(payload: TicketCreate, current_user: dict = Depends(get_current_user),
                tenant: TenantContext = Depends(get_tenant), db=Depends(get_db)):
    return {"data": support.create_ticket(db, current_user, tenant, **payload.model_dump())}


@app.get("/api/support/tickets")
def my_tickets(status: Optional[str] = None, current_user: dict = Depends(get_current_user),
               tenant: TenantContext = Depends(get_tenant), db=Depends(get_db)):
    return {"data": support.list_tickets(db, tenant, user=current_user, status=status)}


@app.get("/api/support/tickets/{ticket_id}")
def view_ticket(ticket_id: str, current_user: dict = Depends(get_current_user),
                tenant: TenantContext = Depends(get_tenant), db=Depends(get_db)):
    return {"data": support.get_ticket(db, ticket_id, current_user, tenant)}


@app.post("/api/support/tickets/{ticket_id}/responses", status_code=201)
def reply_to_ticket(ticket_id: str, payload: TicketReply,
                    current_user: dict = Depends(get_current_user),
                    tenant: TenantContext = Depends(get_tenant), db=Depends(get_db)):
    return {"data": support.add_response(db, ticket_id, current_user, tenant, payload.message)}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
