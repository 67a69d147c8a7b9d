"""
Database utilities package.
"""
from devsandbox.common.db.models import Base
from devsandbox.common.db.connection import Database

__all__ = [
    "Base",
    "Database",
]
