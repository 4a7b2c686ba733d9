from decimal import Decimal
from typing import List

from bson import ObjectId
from pymongo import ReturnDocument

from catalog import storefront_view, stock_counts, user_pricing
from database import serialize, to_object_id, utcnow
from errors import NotFoundError, ValidationError


def add_item(db, user_id: str, tenant_id: str, product_id: str, quantity: int = 1) -> dict:
    """Add a product to the cart; adding it again increases the quantity."""
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    product = db["product"].find_one({"_id": to_object_id(product_id, "product id")})
    if not product:
        raise NotFoundError("Product not found")
    if not product.get("is_active", True):
        raise ValidationError("Product is not available")

    now = utcnow()
    item = db["cart_item"].find_one_and_update(
        {"user_id": user_id, "tenant_id": tenant_id, "product_id": product_id},
        {
            "$inc": {"quantity": quantity},
            "$set": {"updated_at": now},
            "$setOnInsert": {"created_at": now},
        },
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return serialize(item)


def list_items(db, user_id: str, tenant_id: str, currency: str) -> List[dict]:
    """Cart lines for active products, each with the tenant-priced product."""
    items = list(db["cart_item"].find({"user_id": user_id, "tenant_id": tenant_id}).sort("created_at", -1))
    if not items:
        return []
    products = {
        str(p["_id"]): p
        for p in db["product"].find({
            "_id": {"$in": [ObjectId(i["product_id"]) for i in items]},
            "is_active": True,
        })
    }
    stock = stock_counts(db, products.keys())
    pricing = user_pricing(db, user_id)

    lines = []
    for item in items:
        product = products.get(item["product_id"])
        if product is None:
            continue
        line = serialize(item)
        line["product"] = storefront_view(
            product, tenant_id, currency, stock.get(item["product_id"], 0),
            pricing.get(item["product_id"]),
        )
        lines.append(line)
    return lines


def summary(db, user_id: str, tenant_id: str, currency: str) -> dict:
    items = list_items(db, user_id, tenant_id, currency)
    total = sum((Decimal(i["product"]["price"]) * i["quantity"] for i in items), Decimal("0"))
    return {
        "item_count": sum(i["quantity"] for i in items),
        "total_amount": f"{total:.2f}",
        "currency": currency,
        "items": items,
    }


def update_quantity(db, user_id: str, tenant_id: str, item_id: str, quantity: int) -> dict:
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    item = db["cart_item"].find_one_and_update(
        {"_id": to_object_id(item_id, "cart item id"), "user_id": user_id, "tenant_id": tenant_id},
        {"$set": {"quantity": quantity, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not item:
        raise NotFoundError("Cart item not found")
    return serialize(item)


def remove_item(db, user_id: str, tenant_id: str, item_id: str) -> None:
    result = db["cart_item"].delete_one(
        {"_id": to_object_id(item_id, "cart item id"), "user_id": user_id, "tenant_id": tenant_id}
    )
    if result.deleted_count == 0:
        raise NotFoundError("Cart item not found")


def clear(db, user_id: str, tenant_id: str) -> int:
    result = db["cart_item"].delete_many({"user_id": user_id, "tenant_id": tenant_id})
    return result.deleted_count
