"""
Wallet balances.

There is no wallet collection: a customer's balance is recomputed from
their completed orders in the tenant against a fixed starting deposit, with
spending beyond the deposit drawn from a credit limit. The transaction
history shown to users is synthesized from the same orders.
"""

import logging
from decimal import Decimal
from typing import List, Optional

import config
from errors import InsufficientFundsError
from schemas import to_money

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


def _fmt(amount: Decimal) -> str:
    return f"{to_money(amount):.2f}"


def _completed_orders(db, user_id: str, tenant_id: str):
    return db["order"].find(
        {"user_id": user_id, "tenant_id": tenant_id, "status": "completed"}
    ).sort("created_at", 1)


def total_spent(db, user_id: str, tenant_id: str) -> Decimal:
    return sum(
        (to_money(o["final_amount"]) for o in _completed_orders(db, user_id, tenant_id)), ZERO
    )


def compute_balance(spent: Decimal, starting_balance: Decimal, credit_limit: Decimal) -> dict:
    deposit = max(ZERO, starting_balance - spent)
    credit_used = max(ZERO, spent - starting_balance)
    available_credit = max(ZERO, credit_limit - credit_used)
    return {
        "deposit_balance": _fmt(deposit),
        "credit_limit": _fmt(credit_limit),
        "credit_used": _fmt(credit_used),
        "available_credit": _fmt(available_credit),
        "total_available": _fmt(deposit + available_credit),
        "is_overlimit": credit_used > credit_limit,
    }


def get_wallet(db, user_id: str, tenant_id: str,
               starting_balance: Optional[Decimal] = None,
               credit_limit: Optional[Decimal] = None) -> dict:
    starting_balance = config.WALLET_STARTING_BALANCE if starting_balance is None else starting_balance
    credit_limit = config.WALLET_CREDIT_LIMIT if credit_limit is None else credit_limit
    spent = total_spent(db, user_id, tenant_id)
    balance = compute_balance(spent, starting_balance, credit_limit)
    return {
        "user_id": user_id,
        "tenant_id": tenant_id,
        "total_spent": _fmt(spent),
        "balance": balance,
    }


def ensure_can_pay(db, user_id: str, tenant_id: str, amount: Decimal) -> dict:
    wallet = get_wallet(db, user_id, tenant_id)
    if to_money(amount) > Decimal(wallet["balance"]["total_available"]):
        logger.warning(
            "Wallet payment of %s refused for user %s in %s (available %s)",
            amount, user_id, tenant_id, wallet["balance"]["total_available"],
        )
        raise InsufficientFundsError("Insufficient wallet balance to complete the payment")
    return wallet


def transactions(db, user_id: str, tenant_id: str, limit: int = 50) -> List[dict]:
    """Synthesized history: the opening deposit plus one payment per completed order."""
    starting = config.WALLET_STARTING_BALANCE
    history = [{
        "id": f"opening-{user_id}",
        "type": "deposit",
        "amount": _fmt(starting),
        "description": "Opening balance",
        "balance_after": _fmt(starting),
        "order_id": None,
        "created_at": None,
    }]
    running = starting
    for order in _completed_orders(db, user_id, tenant_id):
        amount = to_money(order["final_amount"])
        running -= amount
        history.append({
            "id": str(order["_id"]),
            "type": "payment",
            "amount": _fmt(-amount),
            "description": f"Payment for order {order['order_number']}",
            "balance_after": _fmt(running),
            "order_id": str(order["_id"]),
            "created_at": order.get("created_at"),
        })
    history.reverse()
    return history[:limit]
