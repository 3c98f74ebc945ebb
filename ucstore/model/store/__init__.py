# model/store/__init__.py
from typing import Optional, Union
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from ...infra.sql import Gated
from ._sql import SqlStore, create_schema
from ._redis import RedisStore

Store = Union[SqlStore, RedisStore]


# Factory keeps server.py simple and constructor-agnostic:
def new_store(backend: str, *, db: Optional[AsyncSession] = None,
              r: Optional[redis.Redis] = None,
              gated: Optional[Gated] = None) -> Store:
    if backend == "sql":
        if db is None:
            raise RuntimeError("Store(sql) requires db=AsyncSession")
        if gated is None:
            raise RuntimeError("Store(sql) requires gated=Gated")
        return SqlStore(db=db, gated=gated)
    if backend == "redis":
        if r is None:
            raise RuntimeError("Store(redis) requires r=redis.Redis")
        return RedisStore(r=r)
    raise RuntimeError(f"unknown store backend {backend!r}")


__all__ = ["Store", "SqlStore", "RedisStore", "new_store", "create_schema"]
