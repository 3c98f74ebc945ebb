"""Shared vocabulary of the store: kinds, categories, roles and statuses,
plus the mapping from stored records (snake_case dicts, identical for every
backend) to the camelCase shape the storefront speaks.
"""
from __future__ import annotations
from typing import Any, Dict, Optional

from ..helpers import to_iso

# order kinds (what was bought)
KIND_UC = "UC"
KIND_BUNDLE = "Bundle"

# product categories
CATEGORY_UC = "uc"
CATEGORY_BUNDLE = "bundle"
CATEGORIES = (CATEGORY_UC, CATEGORY_BUNDLE)

ROLE_USER = "user"
ROLE_ADMIN = "admin"

# Order statuses, stored verbatim as the storefront shows them.
STATUS_AWAITING_PAYMENT = "لم يتم الدفع"
STATUS_PAID = "تم الدفع"
STATUS_CONFIRMED = "تم التأكيد"
STATUS_DELIVERED = "تم التسليم"
STATUS_REJECTED = "مرفوض"
STATUS_CANCELLED = "ملغي"

ORDER_STATUSES = (
    STATUS_AWAITING_PAYMENT, STATUS_PAID, STATUS_CONFIRMED,
    STATUS_DELIVERED, STATUS_REJECTED, STATUS_CANCELLED,
)
TERMINAL_STATUSES = frozenset(
    {STATUS_DELIVERED, STATUS_REJECTED, STATUS_CANCELLED}
)

# awaiting payment -> paid|confirmed -> delivered,
# rejected/cancelled from any non-terminal state
_FORWARD = {
    STATUS_AWAITING_PAYMENT: {STATUS_PAID, STATUS_CONFIRMED},
    STATUS_PAID: {STATUS_CONFIRMED, STATUS_DELIVERED},
    STATUS_CONFIRMED: {STATUS_DELIVERED},
}


def can_transition(current: str, new: str) -> bool:
    if current in TERMINAL_STATUSES or new not in ORDER_STATUSES:
        return False
    if new in (STATUS_REJECTED, STATUS_CANCELLED):
        return True
    return new in _FORWARD.get(current, ())


INQUIRY_PENDING = "قيد الانتظار"
INQUIRY_REPLIED = "تم الرد"


# ----------------------------
# stored record -> wire
# ----------------------------
def _num(v: Any) -> Optional[float]:
    if v is None or v == "":
        return None
    f = float(v)
    return int(f) if f.is_integer() else f


def order_to_api(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "name": row["customer_name"],
        "playerId": row["player_id"],
        "email": row["contact_email"],
        "type": row["kind"],
        "ucAmount": row.get("uc_amount"),
        "bundle": row.get("bundle_name"),
        "productId": row.get("product_id"),
        "totalAmount": row["total_amount"],
        "transactionId": row["transaction_id"],
        "screenshot": row.get("attachment"),
        "status": row["status"],
        "ownerId": row.get("owner_id"),
        "createdAt": to_iso(row.get("created_at")),
    }


def product_to_api(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "name": row["name"],
        "category": row["category"],
        "amount": (
            int(row["amount"]) if row.get("amount") not in (None, "")
            else None
        ),
        "price": _num(row["price"]),
        "imageUrl": row.get("image_url"),
        "createdAt": to_iso(row.get("created_at")),
    }


def uc_option_to_api(row: Dict[str, Any]) -> Dict[str, Any]:
    # shape of the original uc_options table
    p = product_to_api(row)
    return {
        "id": p["id"],
        "uc_amount": p["amount"],
        "price": p["price"],
        "image_url": p["imageUrl"],
    }


def inquiry_to_api(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "name": row.get("name"),
        "email": row["email"],
        "message": row["message"],
        "status": row["status"],
        "reply": row.get("reply"),
        "createdAt": to_iso(row.get("created_at")),
    }


def suggestion_to_api(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "name": row["name"],
        "contact": row["contact"],
        "message": row["message"],
        "createdAt": to_iso(row.get("created_at")),
    }
