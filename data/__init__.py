"""
Trade Journal Data Module
Инициализация модуля данных и экспорт основных классов
"""

from .database import Database, Access, get_database, init_database, HealthCheckResult
from .models import (
    Base, Trade, UserProfile, ApiSettings, TestRun,
    Direction, ImportSource, GenerationMode
)

# Версия модуля
__version__ = "1.0.0"

# Список экспортируемых классов
__all__ = [
    # Database
    "Database",
    "Access",
    "get_database",
    "init_database",
    "HealthCheckResult",

    # Models
    "Base",
    "Trade",
    "UserProfile",
    "ApiSettings",
    "TestRun",

    # Enums
    "Direction",
    "ImportSource",
    "GenerationMode",
]
