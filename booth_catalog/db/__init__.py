"""Database initialization and persistence layer."""

from booth_catalog.db.engine import (
    create_db_engine,
    get_database_url,
    get_engine,
    get_session,
    get_session_factory,
    init_db,
    reset_engine,
)
from booth_catalog.db.models import (
    Base,
    BoothDB,
    BoothDuplicateDB,
    CrawlSourceDB,
    ExtractionPatternDB,
    PatternValidationDB,
)
from booth_catalog.db.repositories import (
    BoothRepository,
    MatchRepository,
    PatternRepository,
    SourceRepository,
    SqlBoothRepository,
    SqlMatchRepository,
    SqlPatternRepository,
    SqlSourceRepository,
)

__all__ = [
    # Engine
    "create_db_engine",
    "get_database_url",
    "get_engine",
    "get_session",
    "get_session_factory",
    "init_db",
    "reset_engine",
    # Models
    "Base",
    "BoothDB",
    "BoothDuplicateDB",
    "CrawlSourceDB",
    "ExtractionPatternDB",
    "PatternValidationDB",
    # Repository ports
    "BoothRepository",
    "MatchRepository",
    "PatternRepository",
    "SourceRepository",
    # SQL repositories
    "SqlBoothRepository",
    "SqlMatchRepository",
    "SqlPatternRepository",
    "SqlSourceRepository",
]
