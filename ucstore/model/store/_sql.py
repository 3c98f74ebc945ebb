# model/store/_sql.py
"""
Relational backend (SQLite for a single box, PostgreSQL when it has to
scale) built on the SQLAlchemy asyncio ORM.

- autoincrement integer ids
- one short transaction per operation, behind the DB gate
- single-statement UPDATE/DELETE, so "did the row exist" is the rowcount
"""
from __future__ import annotations
import logging
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from sqlalchemy import case, delete, func, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession

from ...errors import ConflictError, StorageError
from ...helpers import as_positive_int, now_ts
from ...infra.sql import Gated
from ..db import (
    Base, Inquiry, Order, Product, Suggestion, User, as_dict
)
from ..domain import CATEGORY_UC, INQUIRY_REPLIED

log = logging.getLogger(__name__)


async def create_schema(conn: AsyncConnection) -> None:
    await conn.run_sync(Base.metadata.create_all)


def _pk(raw: Any) -> Optional[int]:
    # ids arrive as path/body strings; anything outside the column range
    # can't match a row
    return as_positive_int(raw)


@contextmanager
def _storage_errors(op: str):
    try:
        yield
    except IntegrityError as exc:
        log.warning("%s: integrity error: %s", op, exc.orig)
        raise ConflictError("record conflicts with an existing one") from exc
    except SQLAlchemyError as exc:
        log.exception("%s failed", op)
        raise StorageError(f"database error during {op}") from exc


class SqlStore:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def _insert(self, op: str, obj) -> Dict[str, Any]:
        with _storage_errors(op):
            async with self.gated():
                async with self.db.begin():
                    self.db.add(obj)
                    await self.db.flush()
        return as_dict(obj)

    async def _get(self, op: str, model, raw_id) -> Optional[Dict[str, Any]]:
        pk = _pk(raw_id)
        if pk is None:
            return None
        with _storage_errors(op):
            async with self.gated():
                async with self.db.begin():
                    obj = await self.db.get(model, pk)
                    return as_dict(obj) if obj is not None else None

    async def _update(self, op: str, model, raw_id, values,
                      *conditions) -> bool:
        pk = _pk(raw_id)
        if pk is None:
            return False
        stmt = update(model).where(model.id == pk, *conditions)
        with _storage_errors(op):
            async with self.gated():
                async with self.db.begin():
                    result = await self.db.execute(stmt.values(**values))
        return result.rowcount > 0

    async def _delete(self, op: str, model, raw_id) -> bool:
        pk = _pk(raw_id)
        if pk is None:
            return False
        with _storage_errors(op):
            async with self.gated():
                async with self.db.begin():
                    result = await self.db.execute(
                        delete(model).where(model.id == pk)
                    )
        return result.rowcount > 0

    async def _rows(self, op: str, sql: str,
                    params: Optional[Dict[str, Any]] = None
                    ) -> List[Dict[str, Any]]:
        with _storage_errors(op):
            async with self.gated():
                async with self.db.begin():
                    result = await self.db.execute(text(sql), params or {})
                    return [dict(r) for r in result.mappings().all()]

    # ---- orders
    async def insert_order(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        return await self._insert("insert_order", Order(
            created_at=now_ts(), **fields
        ))

    async def get_order(self, order_id) -> Optional[Dict[str, Any]]:
        return await self._get("get_order", Order, order_id)

    async def list_orders(
            self, owner_id: Optional[str] = None) -> List[Dict[str, Any]]:
        if owner_id is None:
            return await self._rows("list_orders", """
                SELECT * FROM orders
                ORDER BY created_at DESC, id DESC
            """)
        return await self._rows("list_orders", """
            SELECT * FROM orders
            WHERE owner_id = :owner_id
            ORDER BY created_at DESC, id DESC
        """, {"owner_id": str(owner_id)})

    async def count_orders(self) -> int:
        with _storage_errors("count_orders"):
            async with self.gated():
                async with self.db.begin():
                    n = await self.db.scalar(
                        select(func.count()).select_from(Order)
                    )
        return int(n or 0)

    async def update_order_status(self, order_id, status: str) -> bool:
        return await self._update(
            "update_order_status", Order, order_id, {"status": status}
        )

    async def delete_order(self, order_id) -> bool:
        return await self._delete("delete_order", Order, order_id)

    # ---- products
    async def insert_product(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        return await self._insert("insert_product", Product(
            created_at=now_ts(), **fields
        ))

    async def get_product(self, product_id) -> Optional[Dict[str, Any]]:
        return await self._get("get_product", Product, product_id)

    async def list_products(
            self, category: Optional[str] = None) -> List[Dict[str, Any]]:
        # uc options by amount, bundles after them, oldest first
        stmt = select(Product)
        if category is not None:
            stmt = stmt.where(Product.category == category)
        stmt = stmt.order_by(
            case((Product.category == CATEGORY_UC, 0), else_=1),
            Product.amount.asc(),
            Product.id.asc(),
        )
        with _storage_errors("list_products"):
            async with self.gated():
                async with self.db.begin():
                    objs = (await self.db.scalars(stmt)).all()
                    return [as_dict(o) for o in objs]

    async def update_product(self, product_id, fields: Dict[str, Any]) -> bool:
        return await self._update(
            "update_product", Product, product_id, fields
        )

    async def delete_product(self, product_id) -> bool:
        return await self._delete("delete_product", Product, product_id)

    # ---- inquiries
    async def insert_inquiry(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        return await self._insert("insert_inquiry", Inquiry(
            created_at=now_ts(), **fields
        ))

    async def get_inquiry(self, inquiry_id) -> Optional[Dict[str, Any]]:
        return await self._get("get_inquiry", Inquiry, inquiry_id)

    async def list_inquiries(self) -> List[Dict[str, Any]]:
        return await self._rows("list_inquiries", """
            SELECT * FROM inquiries ORDER BY created_at DESC, id DESC
        """)

    async def mark_inquiry_replied(self, inquiry_id, reply: str) -> bool:
        return await self._update(
            "mark_inquiry_replied", Inquiry, inquiry_id,
            {"status": INQUIRY_REPLIED, "reply": reply},
            Inquiry.status != INQUIRY_REPLIED,
        )

    async def delete_inquiry(self, inquiry_id) -> bool:
        return await self._delete("delete_inquiry", Inquiry, inquiry_id)

    # ---- suggestions
    async def insert_suggestion(
            self, fields: Dict[str, Any]) -> Dict[str, Any]:
        return await self._insert("insert_suggestion", Suggestion(
            created_at=now_ts(), **fields
        ))

    async def list_suggestions(self) -> List[Dict[str, Any]]:
        return await self._rows("list_suggestions", """
            SELECT * FROM suggestions ORDER BY created_at DESC, id DESC
        """)

    async def delete_suggestion(self, suggestion_id) -> bool:
        return await self._delete(
            "delete_suggestion", Suggestion, suggestion_id
        )

    # ---- users
    async def insert_user(self, username: str, password_hash: str,
                          role: str) -> Dict[str, Any]:
        return await self._insert("insert_user", User(
            username=username, password_hash=password_hash, role=role,
            created_at=now_ts(),
        ))

    async def get_user(self, user_id) -> Optional[Dict[str, Any]]:
        return await self._get("get_user", User, user_id)

    async def get_user_by_username(
            self, username: str) -> Optional[Dict[str, Any]]:
        with _storage_errors("get_user_by_username"):
            async with self.gated():
                async with self.db.begin():
                    obj = await self.db.scalar(
                        select(User).where(User.username == username)
                    )
                    return as_dict(obj) if obj is not None else None

    async def set_user_password(self, user_id, password_hash: str) -> bool:
        return await self._update(
            "set_user_password", User, user_id,
            {"password_hash": password_hash},
        )
