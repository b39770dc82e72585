"""
Database package initialization.
"""

from scrapi.db.database import (
    Base,
    DatabaseError,
    close_db,
    create_engine,
    create_session_maker,
    get_db_session,
    init_db,
)
from scrapi.db.models import SerpAdModel, SerpModel, StagingSerpModel

__all__ = [
    # Database
    "Base",
    "create_engine",
    "create_session_maker",
    "get_db_session",
    "init_db",
    "close_db",
    "DatabaseError",
    # Models
    "StagingSerpModel",
    "SerpModel",
    "SerpAdModel",
]
