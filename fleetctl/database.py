"""Database helpers: connectivity checks and Alembic migrations."""

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import MetaData, text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from fleetctl.extensions import db

logger = logging.getLogger(__name__)

_ALEMBIC_DIR = Path(__file__).resolve().parent.parent / "alembic"


def _alembic_config(connection: Connection | None = None) -> Config:
    """Build an Alembic config pointing at the bundled migration scripts."""
    config = Config()
    config.set_main_option("script_location", str(_ALEMBIC_DIR))
    if connection is not None:
        # env.py reuses this connection instead of opening its own
        config.attributes["connection"] = connection
    return config


def check_db_connection() -> bool:
    """Return True when the database answers a trivial query."""
    try:
        with db.engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.warning("Database connection check failed: %s", e)
        return False


def get_current_revision() -> str | None:
    """Return the Alembic revision the database is at, or None if unversioned."""
    with db.engine.connect() as connection:
        context = MigrationContext.configure(connection)
        return context.get_current_revision()


def get_pending_migrations() -> list[tuple[str, str]]:
    """List (revision, description) of migrations not yet applied, oldest first."""
    script = ScriptDirectory.from_config(_alembic_config())
    current = get_current_revision()

    pending = [
        (revision.revision, revision.doc or "")
        for revision in script.iterate_revisions("heads", current or "base")
    ]
    pending.reverse()
    return pending


def _drop_all_tables() -> None:
    metadata = MetaData()
    metadata.reflect(bind=db.engine)
    metadata.drop_all(bind=db.engine)


def upgrade_database(recreate: bool = False) -> list[tuple[str, str]]:
    """Apply pending migrations.

    Args:
        recreate: Drop every table (including alembic_version) first

    Returns:
        The migrations that were applied
    """
    if recreate:
        logger.warning("Dropping all tables before migrating")
        _drop_all_tables()

    pending = get_pending_migrations()
    if not pending:
        logger.info("Database is up to date")
        return []

    with db.engine.begin() as connection:
        command.upgrade(_alembic_config(connection), "head")

    for revision, description in pending:
        logger.info("Applied migration %s: %s", revision, description)

    return pending
