"""Rate cache persistence layer.

Provides the aiosqlite database manager and the typed upsert/query store
shared by the schedulers and request-driven synthesis.
"""

from tracker.data.database import RatesDatabase
from tracker.data.store import RateStore

__all__ = ["RateStore", "RatesDatabase"]
