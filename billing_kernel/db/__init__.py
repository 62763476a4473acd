"""Database layer - engine, base classes and money helpers."""

from billing_kernel.db.base import SYSTEM_ACTOR_ID, Base, TrackedBase, UUIDString
from billing_kernel.db.engine import create_tables, get_engine, get_session, session_scope
from billing_kernel.db.types import round_money

__all__ = [
    "get_engine",
    "get_session",
    "session_scope",
    "create_tables",
    "Base",
    "TrackedBase",
    "UUIDString",
    "SYSTEM_ACTOR_ID",
    "round_money",
]
