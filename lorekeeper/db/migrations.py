"""
Database migration management.

Fresh databases get the current schema directly and are stamped at head;
databases under migration tracking are upgraded to head.
"""

import logging
from pathlib import Path
from typing import Optional
from sqlalchemy import create_engine, inspect
from alembic.config import Config
from alembic import command
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory

logger = logging.getLogger(__name__)

DEFAULT_MIGRATIONS_DIR = Path(__file__).parent.parent.parent / "alembic"


class MigrationManager:
    """Manage database migrations for Lorekeeper."""
    
    def __init__(self, db_url: str, migrations_dir: Optional[Path] = None):
        """
        Initialize migration manager.
        
        Args:
            db_url: SQLAlchemy database URL (e.g., "sqlite:///data/lorekeeper.db")
            migrations_dir: Path to migrations directory (defaults to alembic/)
        """
        self.db_url = db_url
        self.engine = create_engine(db_url)
        self.migrations_dir = migrations_dir or DEFAULT_MIGRATIONS_DIR
        
        self.alembic_cfg = Config()
        self.alembic_cfg.set_main_option("script_location", str(self.migrations_dir))
        self.alembic_cfg.set_main_option("sqlalchemy.url", db_url)
        self.alembic_cfg.attributes["configure_logger"] = False
    
    def is_fresh_database(self) -> bool:
        """True if the database has no tables."""
        tables = inspect(self.engine).get_table_names()
        if not tables:
            logger.info("Fresh database detected - no tables exist")
            return True
        logger.info(f"Existing database detected - {len(tables)} tables found")
        return False
    
    def has_alembic_version_table(self) -> bool:
        return 'alembic_version' in inspect(self.engine).get_table_names()
    
    def get_current_revision(self) -> Optional[str]:
        """Current revision recorded in the database, or None."""
        with self.engine.connect() as connection:
            context = MigrationContext.configure(connection)
            return context.get_current_revision()
    
    def get_head_revision(self) -> str:
        """Latest revision among the migration scripts."""
        script = ScriptDirectory.from_config(self.alembic_cfg)
        return script.get_current_head()
    
    def initialize_fresh_database(self):
        """Create the latest schema with create_all() and stamp it at head."""
        from lorekeeper.db.database import Base
        from lorekeeper.models import conversation, memory  # noqa: F401
        
        logger.info("Initializing fresh database with latest schema...")
        Base.metadata.create_all(self.engine)
        command.stamp(self.alembic_cfg, "head")
        logger.info("Database created and stamped at head")
    
    def apply_migrations(self):
        """Upgrade to head if the database is behind."""
        current = self.get_current_revision()
        head = self.get_head_revision()
        if current == head:
            logger.info("Database is up to date - no pending migrations")
            return
        
        logger.info(f"Applying migrations: {current} -> {head}")
        try:
            command.upgrade(self.alembic_cfg, "head")
        except Exception as e:
            logger.error(f"Migration failed: {e}", exc_info=True)
            raise RuntimeError(f"Failed to apply migrations: {e}") from e
        logger.info("All migrations applied successfully")
    
    def ensure_database_ready(self):
        """
        Bring the database to the current schema. Call on startup.
        
        An existing database without migration tracking is assumed to have
        been created by ``init_db`` and is stamped at head.
        """
        if self.is_fresh_database():
            self.initialize_fresh_database()
        elif not self.has_alembic_version_table():
            logger.info("Existing database without migration tracking - stamping at head")
            command.stamp(self.alembic_cfg, "head")
        else:
            self.apply_migrations()
        logger.info("Database is ready")
    
    def downgrade(self, revision: str = "-1"):
        """Downgrade to a previous revision ("-1" for previous, "base" for empty)."""
        logger.warning(f"Downgrading database to revision: {revision}")
        command.downgrade(self.alembic_cfg, revision)
    
    def dispose(self):
        self.engine.dispose()


def ensure_database_ready(db_url: str, migrations_dir: Optional[Path] = None):
    """Convenience wrapper for application startup."""
    manager = MigrationManager(db_url, migrations_dir)
    try:
        manager.ensure_database_ready()
    finally:
        manager.dispose()
