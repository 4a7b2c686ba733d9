import logging
from typing import List, Optional

from database import create_document, next_sequence, serialize, to_object_id, utcnow
from errors import NotFoundError, PermissionDenied, ValidationError
from schemas import SupportTicket, TicketResponse
from tenancy import TenantContext

logger = logging.getLogger(__name__)


def _get_ticket(db, ticket_id: str, tenant: TenantContext) -> dict:
    ticket = db["support_ticket"].find_one(
        {"_id": to_object_id(ticket_id, "ticket id"), "tenant_id": tenant.tenant_id}
    )
    if not ticket:
        raise NotFoundError("Ticket not found")
    return ticket


def _check_access(ticket: dict, user: dict, tenant: TenantContext):
    if not tenant.is_admin and ticket["user_id"] != str(user["_id"]):
        raise PermissionDenied("Access denied")


def create_ticket(db, user: dict, tenant: TenantContext, subject: str, description: str,
                  category: str = "general", priority: str = "medium") -> dict:
    ticket = SupportTicket(
        ticket_number=f"SPT-{next_sequence(db, 'ticket_number'):06d}",
        user_id=str(user["_id"]),
        tenant_id=tenant.tenant_id,
        subject=subject,
        description=description,
        category=category,
        priority=priority,
    )
    ticket_id = create_document(db, "support_ticket", ticket)
    logger.info("Support ticket %s opened by %s", ticket.ticket_number, user.get("username"))
    return serialize(db["support_ticket"].find_one({"_id": to_object_id(ticket_id)}))


def list_tickets(db, tenant: TenantContext, user: Optional[dict] = None,
                 status: Optional[str] = None) -> List[dict]:
    query = {"tenant_id": tenant.tenant_id}
    if user is not None:
        query["user_id"] = str(user["_id"])
    if status:
        query["status"] = status
    return [serialize(t) for t in db["support_ticket"].find(query).sort("created_at", -1)]


def get_ticket(db, ticket_id: str, user: dict, tenant: TenantContext) -> dict:
    ticket = _get_ticket(db, ticket_id, tenant)
    _check_access(ticket, user, tenant)
    responses = db["ticket_response"].find({"ticket_id": ticket_id}).sort("created_at", 1)
    return {"ticket": serialize(ticket), "responses": [serialize(r) for r in responses]}


def add_response(db, ticket_id: str, user: dict, tenant: TenantContext, message: str) -> dict:
    ticket = _get_ticket(db, ticket_id, tenant)
    _check_access(ticket, user, tenant)
    if ticket["status"] == "closed":
        raise ValidationError("Ticket is closed")
    response = TicketResponse(
        ticket_id=ticket_id,
        user_id=str(user["_id"]),
        message=message,
        is_staff=tenant.is_admin,
    )
    response_id = create_document(db, "ticket_response", response)
    db["support_ticket"].update_one({"_id": ticket["_id"]}, {"$set": {"updated_at": utcnow()}})
    return serialize(db["ticket_response"].find_one({"_id": to_object_id(response_id)}))


def update_ticket(db, ticket_id: str, tenant: TenantContext, status: Optional[str] = None,
                  priority: Optional[str] = None, assigned_to_id: Optional[str] = None) -> dict:
    ticket = _get_ticket(db, ticket_id, tenant)
    changes = {"updated_at": utcnow()}
    if status is not None:
        changes["status"] = status
        if status == "resolved" and ticket["status"] != "resolved":
            changes["resolved_at"] = changes["updated_at"]
    if priority is not None:
        changes["priority"] = priority
    if assigned_to_id is not None:
        changes["assigned_to_id"] = assigned_to_id
    db["support_ticket"].update_one({"_id": ticket["_id"]}, {"$set": changes})
    return serialize(db["support_ticket"].find_one({"_id": ticket["_id"]}))
