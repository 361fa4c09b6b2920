"""
Database Module
"""
from .connection import (
    build_session_factory,
    check_database_health,
    close_database,
    create_schema,
    get_db,
    get_engine,
    init_database,
    unit_of_work,
)
from .models import Base
from .repository import WarehouseRepository

__all__ = [
    "init_database",
    "close_database",
    "get_db",
    "get_engine",
    "build_session_factory",
    "unit_of_work",
    "create_schema",
    "check_database_health",
    "Base",
    "WarehouseRepository",
]
