"""Persistence Gateway over an embedded DuckDB database."""
from .database import Database, utcnow
from .direct import ordered_pair, thread_id
from .gateway import PersistenceGateway

__all__ = ["Database", "PersistenceGateway", "ordered_pair", "thread_id", "utcnow"]
