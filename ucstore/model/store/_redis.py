# model/store/_redis.py
"""
Document backend on Redis: one hash per record, sorted-set indexes by
creation time. Ids are opaque uuid hex strings.
"""
from __future__ import annotations
import logging
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterable, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from ...errors import ConflictError, StorageError
from ...helpers import now_ts
from ..domain import (
    CATEGORY_UC, INQUIRY_PENDING, INQUIRY_REPLIED, STATUS_AWAITING_PAYMENT
)

log = logging.getLogger(__name__)


# ---- keys
def k_order(oid: str) -> str: return f"order:{oid}"
def k_product(pid: str) -> str: return f"product:{pid}"
def k_inquiry(iid: str) -> str: return f"inquiry:{iid}"
def k_suggestion(sid: str) -> str: return f"suggestion:{sid}"
def k_user(uid: str) -> str: return f"user:{uid}"
def k_username(name: str) -> str: return f"user:name:{name}"
def k_idx_owner(owner: str) -> str: return f"idx:orders:owner:{owner}"


IDX_ORDERS = "idx:orders"
IDX_PRODUCTS = "idx:products"
IDX_INQUIRIES = "idx:inquiries"
IDX_SUGGESTIONS = "idx:suggestions"

_INT_FIELDS = ("uc_amount", "amount")
_FLOAT_FIELDS = ("created_at", "price")


def _encode(mapping: Dict[str, Any]) -> Dict[str, str]:
    # hashes only hold strings; None means "field absent"
    return {k: str(v) for k, v in mapping.items() if v is not None}


def _decode(h: Dict[str, str]) -> Dict[str, Any]:
    out: Dict[str, Any] = dict(h)
    for f in _INT_FIELDS:
        if out.get(f) not in (None, ""):
            out[f] = int(out[f])
    for f in _FLOAT_FIELDS:
        if out.get(f) not in (None, ""):
            out[f] = float(out[f])
    return out


@contextmanager
def _storage_errors(op: str):
    try:
        yield
    except RedisError as exc:
        log.exception("%s failed", op)
        raise StorageError(f"redis error during {op}") from exc


class RedisStore:
    def __init__(self, *, r: redis.Redis) -> None:
        self.r = r

    async def _insert(self, op: str, key_fn, indexes: Iterable[str],
                      mapping: Dict[str, Any]) -> Dict[str, Any]:
        rid = uuid.uuid4().hex
        doc = dict(mapping, id=rid, created_at=now_ts())
        with _storage_errors(op):
            pipe = self.r.pipeline(transaction=True)
            pipe.hset(key_fn(rid), mapping=_encode(doc))
            for idx in indexes:
                pipe.zadd(idx, {rid: doc["created_at"]})
            await pipe.execute()
        return _decode(_encode(doc))

    async def _get(self, op: str, key: str) -> Optional[Dict[str, Any]]:
        with _storage_errors(op):
            h = await self.r.hgetall(key)
        return _decode(h) if h else None

    async def _list(self, op: str, index: str,
                    key_fn) -> List[Dict[str, Any]]:
        # newest first
        with _storage_errors(op):
            ids = await self.r.zrevrange(index, 0, -1)
            pipe = self.r.pipeline()
            for rid in ids:
                pipe.hgetall(key_fn(rid))
            rows = await pipe.execute()
        return [_decode(h) for h in rows if h]

    async def _update_if_exists(self, op: str, key: str,
                                mapping: Dict[str, Any],
                                remove: Iterable[str] = (),
                                unless: Optional[Tuple[str, str]] = None
                                ) -> bool:
        """HSET only when the document is still there (WATCH/MULTI).

        ``unless`` is a (field, value) pair; a document already holding
        that value is left alone.
        """
        remove = tuple(remove)
        with _storage_errors(op):
            async with self.r.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(key)
                        if not await pipe.exists(key):
                            await pipe.unwatch()
                            return False
                        if unless is not None and \
                                await pipe.hget(key, unless[0]) == unless[1]:
                            await pipe.unwatch()
                            return False
                        pipe.multi()
                        if mapping:
                            pipe.hset(key, mapping=_encode(mapping))
                        if remove:
                            pipe.hdel(key, *remove)
                        await pipe.execute()
                        return True
                    except WatchError:
                        # touched by someone else between WATCH and EXEC
                        continue

    async def _delete(self, op: str, key: str, rid: str,
                      indexes: Iterable[str]) -> bool:
        with _storage_errors(op):
            pipe = self.r.pipeline(transaction=True)
            pipe.delete(key)
            for idx in indexes:
                pipe.zrem(idx, rid)
            removed, *_ = await pipe.execute()
        return bool(removed)

    # ---- orders
    async def insert_order(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        fields = dict(fields)
        fields.setdefault("status", STATUS_AWAITING_PAYMENT)
        indexes = [IDX_ORDERS]
        if fields.get("owner_id") is not None:
            indexes.append(k_idx_owner(str(fields["owner_id"])))
        return await self._insert("insert_order", k_order, indexes, fields)

    async def get_order(self, order_id) -> Optional[Dict[str, Any]]:
        return await self._get("get_order", k_order(str(order_id)))

    async def list_orders(
            self, owner_id: Optional[str] = None) -> List[Dict[str, Any]]:
        if owner_id is None:
            return await self._list("list_orders", IDX_ORDERS, k_order)
        with _storage_errors("list_orders"):
            ids = await self.r.zrevrange(k_idx_owner(str(owner_id)), 0, -1)
            pipe = self.r.pipeline()
            for oid in ids:
                pipe.hgetall(k_order(oid))
            rows = await pipe.execute()
        return [_decode(h) for h in rows if h]

    async def count_orders(self) -> int:
        with _storage_errors("count_orders"):
            return int(await self.r.zcard(IDX_ORDERS))

    async def update_order_status(self, order_id, status: str) -> bool:
        return await self._update_if_exists(
            "update_order_status", k_order(str(order_id)), {"status": status}
        )

    async def delete_order(self, order_id) -> bool:
        oid = str(order_id)
        with _storage_errors("delete_order"):
            owner = await self.r.hget(k_order(oid), "owner_id")
        indexes = [IDX_ORDERS]
        if owner:
            indexes.append(k_idx_owner(owner))
        return await self._delete("delete_order", k_order(oid), oid, indexes)

    # ---- products
    async def insert_product(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        return await self._insert(
            "insert_product", k_product, [IDX_PRODUCTS], fields
        )

    async def get_product(self, product_id) -> Optional[Dict[str, Any]]:
        return await self._get("get_product", k_product(str(product_id)))

    async def list_products(
            self, category: Optional[str] = None) -> List[Dict[str, Any]]:
        rows = await self._list("list_products", IDX_PRODUCTS, k_product)
        if category is not None:
            rows = [p for p in rows if p.get("category") == category]
        # uc options by amount, bundles after them, oldest first
        rows.sort(key=lambda p: (
            0 if p.get("category") == CATEGORY_UC else 1,
            p.get("amount") or 0,
            p.get("created_at") or 0.0,
        ))
        return rows

    async def update_product(self, product_id, fields: Dict[str, Any]) -> bool:
        # a full replacement: fields set to None are dropped from the hash
        return await self._update_if_exists(
            "update_product", k_product(str(product_id)),
            {k: v for k, v in fields.items() if v is not None},
            remove=[k for k, v in fields.items() if v is None],
        )

    async def delete_product(self, product_id) -> bool:
        pid = str(product_id)
        return await self._delete(
            "delete_product", k_product(pid), pid, [IDX_PRODUCTS]
        )

    # ---- inquiries
    async def insert_inquiry(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        fields = dict(fields)
        fields.setdefault("status", INQUIRY_PENDING)
        return await self._insert(
            "insert_inquiry", k_inquiry, [IDX_INQUIRIES], fields
        )

    async def get_inquiry(self, inquiry_id) -> Optional[Dict[str, Any]]:
        return await self._get("get_inquiry", k_inquiry(str(inquiry_id)))

    async def list_inquiries(self) -> List[Dict[str, Any]]:
        return await self._list("list_inquiries", IDX_INQUIRIES, k_inquiry)

    async def mark_inquiry_replied(self, inquiry_id, reply: str) -> bool:
        return await self._update_if_exists(
            "mark_inquiry_replied", k_inquiry(str(inquiry_id)),
            {"status": INQUIRY_REPLIED, "reply": reply},
            unless=("status", INQUIRY_REPLIED),
        )

    async def delete_inquiry(self, inquiry_id) -> bool:
        iid = str(inquiry_id)
        return await self._delete(
            "delete_inquiry", k_inquiry(iid), iid, [IDX_INQUIRIES]
        )

    # ---- suggestions
    async def insert_suggestion(
            self, fields: Dict[str, Any]) -> Dict[str, Any]:
        return await self._insert(
            "insert_suggestion", k_suggestion, [IDX_SUGGESTIONS], fields
        )

    async def list_suggestions(self) -> List[Dict[str, Any]]:
        return await self._list(
            "list_suggestions", IDX_SUGGESTIONS, k_suggestion
        )

    async def delete_suggestion(self, suggestion_id) -> bool:
        sid = str(suggestion_id)
        return await self._delete(
            "delete_suggestion", k_suggestion(sid), sid, [IDX_SUGGESTIONS]
        )

    # ---- users
    async def insert_user(self, username: str, password_hash: str,
                          role: str) -> Dict[str, Any]:
        uid = uuid.uuid4().hex
        with _storage_errors("insert_user"):
            # NX pointer is the uniqueness constraint on usernames
            claimed = await self.r.set(k_username(username), uid, nx=True)
            if not claimed:
                raise ConflictError("record conflicts with an existing one")
            doc = {
                "id": uid, "username": username,
                "password_hash": password_hash, "role": role,
                "created_at": now_ts(),
            }
            await self.r.hset(k_user(uid), mapping=_encode(doc))
        return _decode(_encode(doc))

    async def get_user(self, user_id) -> Optional[Dict[str, Any]]:
        return await self._get("get_user", k_user(str(user_id)))

    async def get_user_by_username(
            self, username: str) -> Optional[Dict[str, Any]]:
        with _storage_errors("get_user_by_username"):
            uid = await self.r.get(k_username(username))
        if not uid:
            return None
        return await self.get_user(uid)

    async def set_user_password(self, user_id, password_hash: str) -> bool:
        return await self._update_if_exists(
            "set_user_password", k_user(str(user_id)),
            {"password_hash": password_hash},
        )
