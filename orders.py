"""
Order checkout.

A checkout turns the user's cart into one order with one order item per
purchased unit, each item holding its own license key. Keys are claimed
atomically one by one; if any step fails, every key claimed so far is
released and the order and its items are removed before the error is
re-raised, so a failed checkout leaves no trace besides a skipped order
number.
"""

import logging
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from bson import ObjectId

import cart
import config
import wallet
from catalog import claim_key, release_key
from database import create_document, next_sequence, serialize, to_object_id, utcnow
from errors import NotFoundError, OutOfStockError, PermissionDenied, ValidationError
from schemas import BillingInfo, Order, OrderItem, to_money
from tenancy import TenantContext

logger = logging.getLogger(__name__)

IMMEDIATE_PAYMENT_METHODS = ("wallet", "credit_card")


def compute_totals(lines: Iterable[Tuple[Decimal, int]],
                   tax_rate: Optional[Decimal] = None) -> Tuple[Decimal, Decimal, Decimal]:
    """(total, tax, final) for (unit_price, quantity) pairs, rounded to cents."""
    tax_rate = config.TAX_RATE if tax_rate is None else tax_rate
    total = to_money(sum((to_money(price) * qty for price, qty in lines), Decimal("0")))
    tax = to_money(total * tax_rate)
    return total, tax, total + tax


def format_order_number(sequence: int) -> str:
    return f"ORD-{sequence:06d}"


class Checkout:
    """One checkout attempt for a user in a tenant."""

    def __init__(self, db, user: dict, tenant: TenantContext):
        self.db = db
        self.user_id = str(user["_id"])
        self.tenant = tenant
        self.order_id: Optional[str] = None
        self.claimed_keys: List[ObjectId] = []

    def run(self, billing: Optional[BillingInfo] = None, payment_method: str = "wallet") -> dict:
        lines = cart.list_items(self.db, self.user_id, self.tenant.tenant_id, self.tenant.currency)
        if not lines:
            raise ValidationError("Cart is empty")

        total, tax, final = compute_totals(
            (Decimal(line["product"]["price"]), line["quantity"]) for line in lines
        )
        if payment_method == "wallet":
            wallet.ensure_can_pay(self.db, self.user_id, self.tenant.tenant_id, final)

        try:
            self._create_order(total, tax, final, billing or BillingInfo(), payment_method)
            for line in lines:
                self._fulfil_line(line)
            self._settle(payment_method, final)
        except Exception:
            self._rollback()
            raise

        cleared = cart.clear(self.db, self.user_id, self.tenant.tenant_id)
        logger.info(
            "Order %s created for user %s in %s: %d items, %s %s via %s (%d cart lines cleared)",
            self.order_id, self.user_id, self.tenant.tenant_id, len(self.claimed_keys),
            f"{final:.2f}", self.tenant.currency, payment_method, cleared,
        )
        return get_order(self.db, self.order_id)

    def _create_order(self, total, tax, final, billing: BillingInfo, payment_method: str):
        order = Order(
            order_number=format_order_number(next_sequence(self.db, "order_number")),
            user_id=self.user_id,
            tenant_id=self.tenant.tenant_id,
            currency=self.tenant.currency,
            total_amount=total,
            tax_amount=tax,
            final_amount=final,
            payment_method=payment_method,
            billing=billing,
        )
        self.order_id = create_document(self.db, "order", order)

    def _fulfil_line(self, line: dict):
        product = line["product"]
        for _ in range(line["quantity"]):
            key = claim_key(self.db, line["product_id"], self.user_id, self.order_id)
            if key is None:
                logger.warning("Checkout for user %s ran out of keys for product %s",
                               self.user_id, line["product_id"])
                raise OutOfStockError(product["name"])
            self.claimed_keys.append(key["_id"])
            create_document(self.db, "order_item", OrderItem(
                order_id=self.order_id,
                product_id=line["product_id"],
                license_key_id=str(key["_id"]),
                quantity=1,
                unit_price=Decimal(product["price"]),
                total_price=Decimal(product["price"]),
            ))

    def _settle(self, payment_method: str, final: Decimal):
        if payment_method not in IMMEDIATE_PAYMENT_METHODS:
            # bank transfer and purchase orders wait for manual approval
            return
        if payment_method == "wallet":
            wallet.ensure_can_pay(self.db, self.user_id, self.tenant.tenant_id, final)
        self.db["order"].update_one(
            {"_id": ObjectId(self.order_id)},
            {"$set": {"status": "completed", "payment_status": "paid", "updated_at": utcnow()}},
        )

    def _rollback(self):
        if self.order_id is None:
            return
        for key_id in self.claimed_keys:
            release_key(self.db, key_id, self.order_id)
        self.db["order_item"].delete_many({"order_id": self.order_id})
        self.db["order"].delete_one({"_id": ObjectId(self.order_id)})
        logger.warning("Rolled back order %s, released %d keys", self.order_id, len(self.claimed_keys))
        self.claimed_keys = []


def checkout(db, user: dict, tenant: TenantContext, billing: Optional[BillingInfo] = None,
             payment_method: str = "wallet") -> dict:
    return Checkout(db, user, tenant).run(billing, payment_method)


def _items_for(db, order_ids: List[str]) -> dict:
    items = list(db["order_item"].find({"order_id": {"$in": order_ids}}))
    products = {
        str(p["_id"]): p
        for p in db["product"].find(
            {"_id": {"$in": list({ObjectId(i["product_id"]) for i in items})}}
        )
    }
    keys = {
        str(k["_id"]): k
        for k in db["license_key"].find(
            {"_id": {"$in": [ObjectId(i["license_key_id"]) for i in items]}}
        )
    }
    grouped = {order_id: [] for order_id in order_ids}
    for item in items:
        view = serialize(item)
        product = products.get(item["product_id"])
        view["product"] = {
            "id": item["product_id"],
            "name": product.get("name", ""),
            "sku": product.get("sku", ""),
            "platform": product.get("platform", ""),
            "region": product.get("region", ""),
        } if product else None
        key = keys.get(item["license_key_id"])
        view["license_key"] = {
            "id": item["license_key_id"],
            "key_value": key["key_value"],
            "used_at": key.get("used_at"),
        } if key else None
        grouped[item["order_id"]].append(view)
    return grouped


def _with_items(db, orders: List[dict]) -> List[dict]:
    if not orders:
        return []
    views = [serialize(o) for o in orders]
    grouped = _items_for(db, [v["id"] for v in views])
    for view in views:
        view["items"] = grouped.get(view["id"], [])
    return views


def get_order(db, order_id: str, user: Optional[dict] = None,
              tenant: Optional[TenantContext] = None) -> dict:
    order = db["order"].find_one({"_id": to_object_id(order_id, "order id")})
    if not order:
        raise NotFoundError("Order not found")
    if user is not None and not (tenant and tenant.is_admin):
        if order["user_id"] != str(user["_id"]) or (tenant and order["tenant_id"] != tenant.tenant_id):
            raise PermissionDenied("Access denied")
    return _with_items(db, [order])[0]


def list_orders(db, user_id: str, tenant_id: str, limit: int = 100) -> List[dict]:
    orders = list(
        db["order"].find({"user_id": user_id, "tenant_id": tenant_id})
        .sort("created_at", -1).limit(limit)
    )
    return _with_items(db, orders)


def list_all_orders(db, tenant_id: Optional[str] = None, status: Optional[str] = None,
                    limit: int = 200) -> List[dict]:
    query = {}
    if tenant_id:
        query["tenant_id"] = tenant_id
    if status:
        query["status"] = status
    orders = list(db["order"].find(query).sort("created_at", -1).limit(limit))
    views = _with_items(db, orders)
    users = {
        str(u["_id"]): u
        for u in db["user"].find({"_id": {"$in": list({ObjectId(o["user_id"]) for o in orders})}})
    }
    for view in views:
        owner = users.get(view["user_id"], {})
        view["username"] = owner.get("username")
        view["user_email"] = owner.get("email")
    return views


def update_status(db, order_id: str, status: Optional[str] = None,
                  payment_status: Optional[str] = None) -> dict:
    """Only status fields change after creation; consumed keys stay consumed."""
    changes = {"updated_at": utcnow()}
    if status is not None:
        changes["status"] = status
    if payment_status is not None:
        changes["payment_status"] = payment_status
    result = db["order"].update_one({"_id": to_object_id(order_id, "order id")}, {"$set": changes})
    if result.matched_count == 0:
        raise NotFoundError("Order not found")
    logger.info("Order %s status updated: %s", order_id, changes)
    return get_order(db, order_id)
