"""
Category hierarchy.

Categories form a tree at most three levels deep. Every category stores its
materialized `path` (slugs joined by "/", starting with "/") and
`path_name` (names joined by " > "), so subtree and breadcrumb lookups are
plain prefix queries. Renames and moves rewrite the stored paths of the
node and all of its descendants.
"""

import logging
import re
from typing import List, Optional

from bson import ObjectId

from database import create_document, serialize, to_object_id, utcnow
from errors import ConflictError, NotFoundError, ValidationError
from schemas import Category

logger = logging.getLogger(__name__)

MAX_LEVEL = 3
PATH_SEPARATOR = "/"
NAME_SEPARATOR = " > "

_UNSET = object()


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.strip().lower()).strip("-")
    if not slug:
        raise ValidationError("Category name must contain letters or digits")
    return slug


def _get(db, category_id: str) -> dict:
    category = db["category"].find_one({"_id": to_object_id(category_id, "category id")})
    if not category:
        raise NotFoundError("Category not found")
    return category


def _descendants_filter(path: str) -> dict:
    return {"path": {"$regex": "^" + re.escape(path + PATH_SEPARATOR)}}


def _ensure_unique_path(db, path: str, exclude_id: Optional[ObjectId] = None):
    query = {"path": path, "is_active": True}
    if exclude_id is not None:
        query["_id"] = {"$ne": exclude_id}
    if db["category"].find_one(query):
        raise ConflictError(f"A category already exists at {path}")


def _placement(db, name: str, parent_id: Optional[str]):
    """Level, path and path_name for a category called `name` under `parent_id`."""
    slug = slugify(name)
    if not parent_id:
        return slug, 1, PATH_SEPARATOR + slug, name

    try:
        parent = _get(db, parent_id)
    except NotFoundError:
        raise ValidationError("Parent category not found")
    if not parent.get("is_active", True):
        raise ValidationError("Parent category is inactive")
    level = parent["level"] + 1
    if level > MAX_LEVEL:
        raise ValidationError(f"Maximum category depth of {MAX_LEVEL} levels exceeded")
    return (
        slug,
        level,
        parent["path"] + PATH_SEPARATOR + slug,
        parent["path_name"] + NAME_SEPARATOR + name,
    )


def get_category(db, category_id: str) -> dict:
    return serialize(_get(db, category_id))


def list_categories(db, include_inactive: bool = False) -> List[dict]:
    query = {} if include_inactive else {"is_active": True}
    cursor = db["category"].find(query).sort([("level", 1), ("sort_order", 1), ("name", 1)])
    return [serialize(c) for c in cursor]


def by_level(db, level: int) -> List[dict]:
    if level < 1 or level > MAX_LEVEL:
        raise ValidationError(f"Level must be between 1 and {MAX_LEVEL}")
    cursor = db["category"].find({"level": level, "is_active": True}).sort(
        [("sort_order", 1), ("name", 1)]
    )
    return [serialize(c) for c in cursor]


def children(db, category_id: str) -> List[dict]:
    _get(db, category_id)
    cursor = db["category"].find({"parent_id": category_id, "is_active": True}).sort(
        [("sort_order", 1), ("name", 1)]
    )
    return [serialize(c) for c in cursor]


def category_path(db, category_id: str) -> List[dict]:
    """Categories from the root down to `category_id`, using the stored path."""
    category = _get(db, category_id)
    segments = category["path"].strip(PATH_SEPARATOR).split(PATH_SEPARATOR)
    prefixes = [
        PATH_SEPARATOR + PATH_SEPARATOR.join(segments[:i]) for i in range(1, len(segments))
    ]
    ancestors = list(
        db["category"].find({"path": {"$in": prefixes}, "is_active": True}).sort("level", 1)
    )
    return [serialize(c) for c in ancestors] + [serialize(category)]


def breadcrumbs(db, category_id: str) -> List[str]:
    return [c["name"] for c in category_path(db, category_id)]


def subtree_ids(db, category_id: str) -> List[str]:
    category = _get(db, category_id)
    ids = [str(category["_id"])]
    for doc in db["category"].find(_descendants_filter(category["path"]), {"_id": 1}):
        ids.append(str(doc["_id"]))
    return ids


def _product_counts(db) -> dict:
    rows = db["product"].aggregate([
        {"$match": {"is_active": True}},
        {"$group": {"_id": "$category_id", "count": {"$sum": 1}}},
    ])
    return {row["_id"]: row["count"] for row in rows if row["_id"]}


def hierarchy(db) -> List[dict]:
    """Nested tree of active categories with direct product counts."""
    counts = _product_counts(db)
    nodes = {}
    roots = []
    for category in list_categories(db):
        category["children"] = []
        category["product_count"] = counts.get(category["id"], 0)
        nodes[category["id"]] = category
    for category in nodes.values():
        parent = nodes.get(category.get("parent_id") or "")
        if parent is not None:
            parent["children"].append(category)
        elif category["level"] == 1:
            roots.append(category)
    return roots


def create_category(db, name: str, parent_id: Optional[str] = None,
                    description: Optional[str] = None, sort_order: int = 0) -> dict:
    slug, level, path, path_name = _placement(db, name, parent_id)
    _ensure_unique_path(db, path)
    category = Category(
        name=name,
        slug=slug,
        description=description,
        parent_id=parent_id or None,
        level=level,
        path=path,
        path_name=path_name,
        sort_order=sort_order,
    )
    category_id = create_document(db, "category", category)
    logger.info("Created category %s at %s", category_id, path)
    return get_category(db, category_id)


def update_category(db, category_id: str, name: Optional[str] = None,
                    description: Optional[str] = None, sort_order: Optional[int] = None,
                    parent_id=_UNSET) -> dict:
    """Update a category; renaming or moving re-materializes the whole subtree."""
    category = _get(db, category_id)
    changes = {"updated_at": utcnow()}
    if description is not None:
        changes["description"] = description
    if sort_order is not None:
        changes["sort_order"] = sort_order

    new_name = name if name is not None else category["name"]
    new_parent = category.get("parent_id") if parent_id is _UNSET else (parent_id or None)

    if new_name != category["name"] or new_parent != category.get("parent_id"):
        if new_parent:
            if new_parent == category_id:
                raise ValidationError("A category cannot be its own parent")
            parent = _get(db, new_parent)
            if parent["path"].startswith(category["path"] + PATH_SEPARATOR):
                raise ValidationError("Cannot move a category under its own descendant")

        slug, level, path, path_name = _placement(db, new_name, new_parent)
        descendants = list(db["category"].find(_descendants_filter(category["path"])))
        depth_below = max((d["level"] - category["level"] for d in descendants), default=0)
        if level + depth_below > MAX_LEVEL:
            raise ValidationError(f"Maximum category depth of {MAX_LEVEL} levels exceeded")
        if path != category["path"]:
            _ensure_unique_path(db, path, exclude_id=category["_id"])

        changes.update(
            name=new_name, slug=slug, parent_id=new_parent,
            level=level, path=path, path_name=path_name,
        )
        shift = level - category["level"]
        old_path, old_name = category["path"], category["path_name"]
        for d in descendants:
            db["category"].update_one(
                {"_id": d["_id"]},
                {"$set": {
                    "path": path + d["path"][len(old_path):],
                    "path_name": path_name + d["path_name"][len(old_name):],
                    "level": d["level"] + shift,
                    "updated_at": changes["updated_at"],
                }},
            )
        logger.info("Re-rooted category %s from %s to %s (%d descendants)",
                    category_id, old_path, path, len(descendants))

    db["category"].update_one({"_id": category["_id"]}, {"$set": changes})
    return get_category(db, category_id)


def delete_category(db, category_id: str) -> None:
    """Soft delete; refused while the category still has subcategories or products."""
    category = _get(db, category_id)
    if db["category"].count_documents({"parent_id": category_id, "is_active": True}):
        raise ValidationError("Cannot delete category with subcategories")
    if db["product"].count_documents({"category_id": category_id, "is_active": True}):
        raise ValidationError("Cannot delete category with products")
    db["category"].update_one(
        {"_id": category["_id"]}, {"$set": {"is_active": False, "updated_at": utcnow()}}
    )
