import logging
from typing import List, Optional

from pymongo.errors import DuplicateKeyError

from database import create_document, serialize, to_object_id, utcnow
from errors import ConflictError, NotFoundError, PermissionDenied, ValidationError
from schemas import User
from security import get_password_hash, is_admin

logger = logging.getLogger(__name__)


def register_user(db, username: str, email: str, password: str, tenant_id: str = "eur",
                  role: str = "b2b_user", **profile) -> dict:
    if db["user"].find_one({"$or": [{"username": username}, {"email": email}]}):
        raise ConflictError("Username or email already registered")
    user = User(
        username=username,
        email=email,
        hashed_password=get_password_hash(password),
        role=role,
        tenant_id=tenant_id,
        **profile,
    )
    try:
        user_id = create_document(db, "user", user)
    except DuplicateKeyError:
        raise ConflictError("Username or email already registered")
    logger.info("Registered %s user %s in tenant %s", role, username, tenant_id)
    return get_user(db, user_id)


def get_user(db, user_id: str) -> dict:
    user = db["user"].find_one({"_id": to_object_id(user_id, "user id")})
    if not user:
        raise NotFoundError("User not found")
    return serialize(user)


def list_users(db, tenant_id: Optional[str] = None, role: Optional[str] = None) -> List[dict]:
    query = {}
    if tenant_id:
        query["tenant_id"] = tenant_id
    if role:
        query["role"] = role
    return [serialize(u) for u in db["user"].find(query).sort("created_at", -1)]


def update_user(db, user_id: str, **changes) -> dict:
    """Apply role, tenant, activation or profile changes to a user."""
    changes = {k: v for k, v in changes.items() if v is not None}
    result = db["user"].update_one(
        {"_id": to_object_id(user_id, "user id")},
        {"$set": {**changes, "updated_at": utcnow()}},
    )
    if result.matched_count == 0:
        raise NotFoundError("User not found")
    logger.info("Updated user %s: %s", user_id, sorted(changes))
    return get_user(db, user_id)


# Company branches

def _check_company_access(actor: dict, company_id: str, allow_branches: bool = False):
    if is_admin(actor) or str(actor["_id"]) == company_id:
        return
    if allow_branches and actor.get("parent_company_id") == company_id:
        return
    raise PermissionDenied("You can only access your own company branches")


def create_branch(db, actor: dict, company_id: str, username: str, email: str, password: str,
                  branch_name: str, branch_code: Optional[str] = None,
                  company_name: Optional[str] = None) -> dict:
    """Open a branch account under a main company; only the company or an admin may."""
    _check_company_access(actor, company_id)
    company = get_user(db, company_id)
    if company.get("branch_type") == "branch":
        raise ValidationError("Cannot create branches under a branch user")
    branch = register_user(
        db, username=username, email=email, password=password,
        tenant_id=company["tenant_id"],
        company_name=company_name or company.get("company_name"),
        branch_type="branch",
        parent_company_id=company_id,
        branch_name=branch_name,
        branch_code=branch_code,
    )
    logger.info("Created branch %s for company %s", username, company_id)
    return branch


def list_branches(db, actor: dict, company_id: str) -> List[dict]:
    """Branches of a company, visible to the company, its branches and admins."""
    _check_company_access(actor, company_id, allow_branches=True)
    cursor = db["user"].find({"parent_company_id": company_id, "branch_type": "branch"})
    return [serialize(u) for u in cursor.sort("created_at", 1)]
