"""
Database package initialization.
"""

from app.db.database import (
    Base,
    DatabaseError,
    async_session_maker,
    check_database_health,
    close_db,
    engine,
    get_db,
    get_db_session,
    get_session_factory,
    init_db,
)
from app.db.models import (
    AIConfigurationModel,
    APICallMetricModel,
    APIRegistrationModel,
    SystemPromptModel,
)

__all__ = [
    # Database
    "Base",
    "engine",
    "async_session_maker",
    "get_db",
    "get_db_session",
    "get_session_factory",
    "init_db",
    "close_db",
    "check_database_health",
    "DatabaseError",
    # Models
    "AIConfigurationModel",
    "SystemPromptModel",
    "APIRegistrationModel",
    "APICallMetricModel",
]
