from __future__ import annotations
import logging
from typing import Any, Dict, List, Mapping, Optional

from ..auth import Requester, require_role
from ..errors import NotFound, ValidationError
from ..helpers import as_positive_int, as_positive_number, clean
from ..model.domain import (
    CATEGORIES, CATEGORY_UC, ROLE_ADMIN, product_to_api,
)

log = logging.getLogger(__name__)


def validate_product(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """Check a full product payload and return the stored fields.

    ``uc`` needs a positive integer ``amount``; ``bundle`` ignores it.
    """
    category = (clean(fields.get("category")) or "").lower()
    if category not in CATEGORIES:
        raise ValidationError("category must be 'uc' or 'bundle'")

    price = as_positive_number(fields.get("price"))
    if price is None:
        raise ValidationError("price must be a positive number")

    image_url = clean(fields.get("imageUrl") or fields.get("image_url"))
    name = clean(fields.get("name"))

    if category == CATEGORY_UC:
        amount = as_positive_int(fields.get("amount"))
        if amount is None:
            raise ValidationError("amount is required for uc products")
        name = name or f"{amount} UC"
    else:
        amount = None
        if name is None:
            raise ValidationError("name is required for bundles")

    return {"name": name, "category": category, "amount": amount,
            "price": price, "image_url": image_url}


def uc_option_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Map the legacy uc-options payload onto a uc product."""
    return {
        "category": CATEGORY_UC,
        "amount": payload.get("uc_amount"),
        "price": payload.get("price"),
        "imageUrl": payload.get("image_url"),
        "name": payload.get("name"),
    }


def _category_filter(category: Optional[str]) -> Optional[str]:
    category = clean(category)
    if category is None:
        return None
    category = category.lower()
    if category not in CATEGORIES:
        raise ValidationError("category must be 'uc' or 'bundle'")
    return category


async def list_products(store,
                        category: Optional[str] = None
                        ) -> List[Dict[str, Any]]:
    rows = await store.list_products(category=_category_filter(category))
    return [product_to_api(r) for r in rows]


async def get_product(store, product_id) -> Dict[str, Any]:
    row = await store.get_product(product_id)
    if row is None:
        raise NotFound("product not found")
    return product_to_api(row)


async def create_product(store, fields: Mapping[str, Any],
                         requester: Requester) -> Dict[str, Any]:
    require_role(requester, ROLE_ADMIN)
    row = await store.insert_product(validate_product(fields))
    log.info("product %s (%s) created", row["id"], row["category"])
    return product_to_api(row)


async def update_product(store, product_id, fields: Mapping[str, Any],
                         requester: Requester) -> Dict[str, Any]:
    require_role(requester, ROLE_ADMIN)
    values = validate_product(fields)
    if not await store.update_product(product_id, values):
        raise NotFound("product not found")
    return await get_product(store, product_id)


async def delete_product(store, product_id, requester: Requester) -> None:
    require_role(requester, ROLE_ADMIN)
    if not await store.delete_product(product_id):
        raise NotFound("product not found")
    log.info("product %s deleted", product_id)

