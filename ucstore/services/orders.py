"""Order lifecycle.

Orders are written once and afterwards only their status moves. Who may do
what is decided by ``require_role`` before any storage call.
"""
from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from ..auth import Requester, require_role
from ..errors import NotFound, ValidationError
from ..helpers import as_positive_int, clean, is_valid_email
from ..model.domain import (
    CATEGORY_UC, KIND_BUNDLE, KIND_UC, ROLE_ADMIN, ROLE_USER,
    STATUS_AWAITING_PAYMENT, can_transition, order_to_api,
)
from .notices import Notices

log = logging.getLogger(__name__)

# wire name -> stored name
REQUIRED_FIELDS = (
    ("name", "customer_name"),
    ("playerId", "player_id"),
    ("email", "contact_email"),
    ("transactionId", "transaction_id"),
    ("totalAmount", "total_amount"),
)


# ----------------------------
# Product resolution
# ----------------------------
class ProductResolution(ABC):
    """Turns what the client picked into kind/uc_amount/bundle_name."""
    name: str

    @abstractmethod
    async def resolve(self, store,
                      fields: Mapping[str, Any]) -> Dict[str, Any]: ...


class InlineResolution(ProductResolution):
    """The client names the UC amount or the bundle itself."""
    name = "inline"

    async def resolve(self, store, fields):
        uc = clean(fields.get("ucAmount"))
        bundle = clean(fields.get("bundle"))
        if uc and bundle:
            raise ValidationError("send either ucAmount or bundle, not both")
        if not uc and not bundle:
            raise ValidationError("ucAmount or bundle is required")
        if uc:
            amount = as_positive_int(uc)
            if amount is None:
                raise ValidationError("ucAmount must be a positive integer")
            return {"kind": KIND_UC, "uc_amount": amount,
                    "bundle_name": None, "product_id": None}
        return {"kind": KIND_BUNDLE, "uc_amount": None,
                "bundle_name": bundle, "product_id": None}


class ReferenceResolution(ProductResolution):
    """The client sends a catalog id; the catalog is the source of truth."""
    name = "reference"

    async def resolve(self, store, fields):
        pid = clean(fields.get("selectedProductId") or fields.get("productId"))
        if not pid:
            raise ValidationError("selectedProductId is required")
        product = await store.get_product(pid)
        if product is None:
            raise NotFound("product not found")
        if product["category"] == CATEGORY_UC:
            return {"kind": KIND_UC, "uc_amount": product["amount"],
                    "bundle_name": None, "product_id": str(product["id"])}
        return {"kind": KIND_BUNDLE, "uc_amount": None,
                "bundle_name": product["name"],
                "product_id": str(product["id"])}


RESOLUTIONS = {r.name: r for r in (InlineResolution(), ReferenceResolution())}


def resolution_for(name: str) -> ProductResolution:
    try:
        return RESOLUTIONS[name]
    except KeyError:
        raise ValueError(f"unknown product resolution {name!r}") from None


@dataclass(frozen=True)
class OrderPolicy:
    """Per-deployment choices, fixed at startup."""
    resolution: ProductResolution
    # token deployments tie orders to their submitter
    owner_scoped: bool = False
    strict_transitions: bool = False


# ----------------------------
# Operations
# ----------------------------
async def create_order(store, policy: OrderPolicy, fields: Mapping[str, Any],
                       requester: Requester, *,
                       attachment: Optional[str] = None,
                       notices: Optional[Notices] = None) -> Dict[str, Any]:
    if policy.owner_scoped:
        require_role(requester, ROLE_USER)

    record: Dict[str, Any] = {}
    missing = []
    for wire, stored in REQUIRED_FIELDS:
        value = clean(fields.get(wire))
        if value is None:
            missing.append(wire)
        record[stored] = value
    if missing:
        raise ValidationError(
            f"missing required fields: {', '.join(missing)}"
        )
    if not is_valid_email(record["contact_email"]):
        raise ValidationError("email must be a valid email address")

    record.update(await policy.resolution.resolve(store, fields))
    record["attachment"] = attachment
    record["status"] = STATUS_AWAITING_PAYMENT
    record["owner_id"] = (
        str(requester.subject_id) if policy.owner_scoped else None
    )

    row = await store.insert_order(record)
    order = order_to_api(row)
    if notices is not None:
        notices.announce_order(order)
    return order


async def list_orders(store, policy: OrderPolicy,
                      requester: Requester) -> List[Dict[str, Any]]:
    if requester.is_admin:
        rows = await store.list_orders()
    elif policy.owner_scoped:
        require_role(requester, ROLE_USER)
        rows = await store.list_orders(owner_id=requester.subject_id)
    else:
        # session deployments have no customer accounts to scope by
        require_role(requester, ROLE_ADMIN)
        rows = []
    return [order_to_api(r) for r in rows]


async def get_order(store, policy: OrderPolicy, order_id,
                    requester: Requester) -> Dict[str, Any]:
    require_role(requester, ROLE_USER if policy.owner_scoped else ROLE_ADMIN)
    row = await store.get_order(order_id)
    if row is None:
        raise NotFound("order not found")
    # someone else's order looks exactly like a missing one
    if not requester.is_admin and row.get("owner_id") != requester.subject_id:
        raise NotFound("order not found")
    return order_to_api(row)


async def update_status(store, policy: OrderPolicy, order_id, status: Any,
                        requester: Requester) -> Dict[str, Any]:
    require_role(requester, ROLE_ADMIN)
    status = clean(status)
    if status is None:
        raise ValidationError("status is required")

    if policy.strict_transitions:
        current = await store.get_order(order_id)
        if current is None:
            raise NotFound("order not found")
        if not can_transition(current["status"], status):
            raise ValidationError(
                f"order cannot move from {current['status']!r} "
                f"to {status!r}"
            )

    if not await store.update_order_status(order_id, status):
        raise NotFound("order not found")
    log.info("order %s -> %r by %s", order_id, status, requester.subject_id)
    return {"id": order_id, "status": status}


async def delete_order(store, order_id, requester: Requester) -> None:
    require_role(requester, ROLE_ADMIN)
    if not await store.delete_order(order_id):
        raise NotFound("order not found")
    log.info("order %s deleted by %s", order_id, requester.subject_id)
