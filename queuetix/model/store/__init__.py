# model/store/__init__.py
from typing import Optional
from sqlalchemy.ext.asyncio import async_sessionmaker
import redis.asyncio as redis

from ...infra.sql import Gated
from .base import TicketStore
from ._postgres import TicketStore as SqlTicketStore, create_schema
from ._redis import TicketStore as RedisTicketStore

# Factory keeps server.py simple and constructor-agnostic:
def new_store(backend: str, *, sessions: Optional[async_sessionmaker] = None,
              r: Optional[redis.Redis] = None,
              ttl_seconds: int = 1800,
              gated: Optional[Gated] = None) -> TicketStore:
    if backend == "pg":
        if sessions is None:
            raise RuntimeError("TicketStore(sql) requires sessions=")
        if gated is None:
            raise RuntimeError("TicketStore(sql) requires gated=Gated")
        return SqlTicketStore(
            sessions=sessions, ttl_seconds=ttl_seconds, gated=gated
        )
    if backend == "redis":
        if r is None:
            raise RuntimeError("TicketStore(redis) requires r=redis.Redis")
        return RedisTicketStore(r=r, ttl_seconds=ttl_seconds)
    raise RuntimeError(f"unknown store backend: {backend}")


__all__ = [
    "TicketStore", "SqlTicketStore", "RedisTicketStore", "create_schema",
    "new_store",
]
