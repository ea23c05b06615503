"""Database layer - engine, base classes, rounding, and append-only listeners."""

from billing_kernel.db.base import UUID, Base, TrackedBase, UUIDString
from billing_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session,
    session_scope,
    transaction_scope,
)
from billing_kernel.db.types import round_money

__all__ = [
    "get_engine",
    "get_session",
    "create_tables",
    "session_scope",
    "transaction_scope",
    "Base",
    "TrackedBase",
    "UUIDString",
    "UUID",
    "round_money",
]
