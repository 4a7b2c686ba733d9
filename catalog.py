"""
Products, customer pricing and license key inventory.

A product's stock is the number of its unused license keys. Keys are handed
out with a single `find_one_and_update`, so a key can be claimed by exactly
one order item even when checkouts run concurrently.
"""

import logging
import re
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Union

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import BulkWriteError, DuplicateKeyError

from database import create_document, serialize, to_object_id, utcnow
from errors import ConflictError, DuplicateKeysError, NotFoundError, ValidationError
from schemas import LicenseKey, Product, UserPricing, to_money

logger = logging.getLogger(__name__)

PRICING_FIELDS = ("price", "price_km", "purchase_price", "b2b_price", "retail_price")


# Pricing

def tenant_price(product: dict, tenant_id: str, custom_price=None) -> Decimal:
    """Price a customer pays in the given tenant; a custom price wins."""
    if custom_price is not None:
        return to_money(custom_price)
    if tenant_id == "km" and product.get("price_km") is not None:
        return to_money(product["price_km"])
    return to_money(product["price"])


def user_pricing(db, user_id: Optional[str]) -> Dict[str, dict]:
    if not user_id:
        return {}
    return {row["product_id"]: row for row in db["user_pricing"].find({"user_id": user_id})}


def set_user_pricing(db, user_id: str, product_id: str, custom_price=None,
                     is_visible: bool = True) -> dict:
    _get_product(db, product_id)
    entry = UserPricing(
        user_id=user_id, product_id=product_id,
        custom_price=custom_price, is_visible=is_visible,
    ).model_dump()
    now = utcnow()
    db["user_pricing"].update_one(
        {"user_id": user_id, "product_id": product_id},
        {"$set": {**entry, "updated_at": now}, "$setOnInsert": {"created_at": now}},
        upsert=True,
    )
    return serialize(db["user_pricing"].find_one({"user_id": user_id, "product_id": product_id}))


def list_user_pricing(db, user_id: str) -> List[dict]:
    return [serialize(row) for row in db["user_pricing"].find({"user_id": user_id})]


def delete_user_pricing(db, user_id: str, product_id: str) -> None:
    result = db["user_pricing"].delete_one({"user_id": user_id, "product_id": product_id})
    if result.deleted_count == 0:
        raise NotFoundError("Pricing entry not found")


# Products

def _get_product(db, product_id: str) -> dict:
    product = db["product"].find_one({"_id": to_object_id(product_id, "product id")})
    if not product:
        raise NotFoundError("Product not found")
    return product


def stock_counts(db, product_ids: Optional[Iterable[str]] = None) -> Dict[str, int]:
    match = {"is_used": False}
    if product_ids is not None:
        match["product_id"] = {"$in": list(product_ids)}
    rows = db["license_key"].aggregate([
        {"$match": match},
        {"$group": {"_id": "$product_id", "count": {"$sum": 1}}},
    ])
    return {row["_id"]: row["count"] for row in rows}


def product_stock(db, product_id: str) -> int:
    return db["license_key"].count_documents({"product_id": product_id, "is_used": False})


def storefront_view(product: dict, tenant_id: str, currency: str, stock: int,
                    pricing: Optional[dict] = None) -> dict:
    view = serialize(product)
    custom = (pricing or {}).get("custom_price")
    view["price"] = f"{tenant_price(product, tenant_id, custom):.2f}"
    view["currency"] = currency
    view["is_custom_pricing"] = custom is not None
    view["stock_count"] = stock
    for field in ("purchase_price", "price_km"):
        view.pop(field, None)
    return view


def list_products(db, tenant_id: str = "eur", currency: str = "EUR",
                  user_id: Optional[str] = None, region: Optional[str] = None,
                  platform: Optional[str] = None, category_ids: Optional[List[str]] = None,
                  search: Optional[str] = None, price_min: Optional[Decimal] = None,
                  price_max: Optional[Decimal] = None, limit: Optional[int] = None,
                  offset: int = 0) -> List[dict]:
    """Active storefront products with tenant prices and stock counts.

    Every filter runs before `offset` / `limit` are applied, so a page never
    loses matches to products that were filtered out.
    """
    query = {"is_active": True}
    if region and region != "all":
        query["region"] = region
    if platform and platform != "all":
        query["platform"] = platform
    if category_ids is not None:
        query["category_id"] = {"$in": category_ids}
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"description": pattern}, {"sku": pattern}]

    pricing = user_pricing(db, user_id)
    hidden = [ObjectId(pid) for pid, entry in pricing.items() if not entry.get("is_visible", True)]
    if hidden:
        query["_id"] = {"$nin": hidden}

    matches = []
    for p in db["product"].find(query).sort("created_at", -1):
        # custom prices decide the price filter, so it cannot be pushed into the query
        price = tenant_price(p, tenant_id, pricing.get(str(p["_id"]), {}).get("custom_price"))
        if price_min is not None and price < price_min:
            continue
        if price_max is not None and price > price_max:
            continue
        matches.append(p)

    page = matches[offset:offset + limit] if limit is not None else matches[offset:]
    stock = stock_counts(db, [str(p["_id"]) for p in page])
    return [
        storefront_view(p, tenant_id, currency, stock.get(str(p["_id"]), 0), pricing.get(str(p["_id"])))
        for p in page
    ]


def get_storefront_product(db, product_id: str, tenant_id: str, currency: str,
                           user_id: Optional[str] = None) -> dict:
    product = _get_product(db, product_id)
    entry = user_pricing(db, user_id).get(product_id)
    if not product.get("is_active") or (entry is not None and not entry.get("is_visible", True)):
        raise NotFoundError("Product not found")
    return storefront_view(product, tenant_id, currency, product_stock(db, product_id), entry)


def admin_list_products(db, include_inactive: bool = True) -> List[dict]:
    query = {} if include_inactive else {"is_active": True}
    products = list(db["product"].find(query).sort("created_at", -1))
    stock = stock_counts(db)
    results = []
    for p in products:
        view = serialize(p)
        view["stock_count"] = stock.get(view["id"], 0)
        results.append(view)
    return results


def get_product(db, product_id: str) -> dict:
    view = serialize(_get_product(db, product_id))
    view["stock_count"] = product_stock(db, product_id)
    return view


def _check_category(db, category_id: Optional[str]):
    if category_id and not db["category"].find_one(
        {"_id": to_object_id(category_id, "category id"), "is_active": True}
    ):
        raise ValidationError("Category not found")


def create_product(db, data: dict) -> dict:
    product = Product(**data)
    _check_category(db, product.category_id)
    if db["product"].find_one({"sku": product.sku}):
        raise ConflictError(f"Product with SKU {product.sku} already exists")
    try:
        product_id = create_document(db, "product", product)
    except DuplicateKeyError:
        raise ConflictError(f"Product with SKU {product.sku} already exists")
    logger.info("Created product %s (%s)", product_id, product.sku)
    return get_product(db, product_id)


def update_product(db, product_id: str, changes: dict) -> dict:
    current = _get_product(db, product_id)
    merged = {k: v for k, v in current.items() if k in Product.model_fields}
    merged.update(changes)
    product = Product(**merged)
    if product.sku != current["sku"] and db["product"].find_one({"sku": product.sku}):
        raise ConflictError(f"Product with SKU {product.sku} already exists")
    if product.category_id != current.get("category_id"):
        _check_category(db, product.category_id)
    db["product"].update_one(
        {"_id": current["_id"]},
        {"$set": {**product.model_dump(), "updated_at": utcnow()}},
    )
    return get_product(db, product_id)


def update_pricing(db, product_id: str, prices: dict) -> dict:
    unknown = set(prices) - set(PRICING_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown pricing fields: {', '.join(sorted(unknown))}")
    return update_product(db, product_id, prices)


def toggle_status(db, product_id: str) -> dict:
    product = _get_product(db, product_id)
    db["product"].update_one(
        {"_id": product["_id"]},
        {"$set": {"is_active": not product.get("is_active", True), "updated_at": utcnow()}},
    )
    return get_product(db, product_id)


def delete_product(db, product_id: str) -> None:
    product = _get_product(db, product_id)
    db["product"].update_one(
        {"_id": product["_id"]}, {"$set": {"is_active": False, "updated_at": utcnow()}}
    )


# License keys

def parse_keys(raw: Union[str, Iterable[str]]) -> List[str]:
    """Split textarea input into unique, trimmed keys in their original order."""
    lines = raw.splitlines() if isinstance(raw, str) else list(raw)
    seen = set()
    keys = []
    for line in lines:
        key = line.strip()
        if key and key not in seen:
            seen.add(key)
            keys.append(key)
    return keys


def add_keys(db, product_id: str, raw: Union[str, Iterable[str]],
             ignore_duplicates: bool = False) -> dict:
    _get_product(db, product_id)
    keys = parse_keys(raw)
    if not keys:
        raise ValidationError("No license keys provided")

    existing = {k["key_value"] for k in db["license_key"].find({"key_value": {"$in": keys}})}
    duplicates = [k for k in keys if k in existing]
    if duplicates and not ignore_duplicates:
        raise DuplicateKeysError(duplicates)

    now = utcnow()
    fresh = [
        {**LicenseKey(product_id=product_id, key_value=k).model_dump(),
         "created_at": now, "updated_at": now}
        for k in keys if k not in existing
    ]
    if fresh:
        try:
            db["license_key"].insert_many(fresh, ordered=False)
        except BulkWriteError as e:
            raise ConflictError("License keys were added concurrently, retry the import",
                                details=str(e.details.get("writeErrors", [])[:1]))
    logger.info("Added %d license keys to product %s (%d duplicates skipped)",
                len(fresh), product_id, len(duplicates))
    return {"added": len(fresh), "duplicates": duplicates}


def list_keys(db, product_id: Optional[str] = None, is_used: Optional[bool] = None,
              limit: int = 500) -> List[dict]:
    query = {}
    if product_id:
        query["product_id"] = product_id
    if is_used is not None:
        query["is_used"] = is_used
    return [serialize(k) for k in db["license_key"].find(query).sort("created_at", -1).limit(limit)]


def key_stats(db, product_id: str) -> dict:
    _get_product(db, product_id)
    total = db["license_key"].count_documents({"product_id": product_id})
    used = db["license_key"].count_documents({"product_id": product_id, "is_used": True})
    return {"product_id": product_id, "total": total, "used": used, "available": total - used}


def get_available_key(db, product_id: str) -> Optional[dict]:
    return db["license_key"].find_one(
        {"product_id": product_id, "is_used": False}, sort=[("created_at", 1)]
    )


def claim_key(db, product_id: str, user_id: str, order_id: str) -> Optional[dict]:
    """Atomically take one unused key for the product, or None when sold out."""
    return db["license_key"].find_one_and_update(
        {"product_id": product_id, "is_used": False},
        {"$set": {"is_used": True, "used_by": user_id, "used_at": utcnow(), "order_id": order_id}},
        sort=[("created_at", 1)],
        return_document=ReturnDocument.AFTER,
    )


def release_key(db, key_id, order_id: str) -> None:
    db["license_key"].update_one(
        {"_id": key_id, "order_id": order_id},
        {"$set": {"is_used": False, "used_by": None, "used_at": None, "order_id": None}},
    )


def remove_key(db, key_id: str) -> None:
    key = db["license_key"].find_one({"_id": to_object_id(key_id, "key id")})
    if not key:
        raise NotFoundError("License key not found")
    if key.get("is_used"):
        raise ConflictError("Used license keys cannot be removed")
    db["license_key"].delete_one({"_id": key["_id"], "is_used": False})
