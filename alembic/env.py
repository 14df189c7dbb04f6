"""Alembic environment for fleetctl.

Migrations normally run through fleetctl.database.upgrade_database(), which
hands over an open connection. Running the alembic CLI directly builds the
application from the environment instead.
"""

from alembic import context
from sqlalchemy.engine import Connection

from fleetctl.extensions import db
from fleetctl import models  # noqa: F401

config = context.config
target_metadata = db.metadata


def _run_migrations(connection: Connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        render_as_batch=connection.dialect.name == "sqlite",
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_offline() -> None:
    from fleetctl.config import Settings

    context.configure(
        url=Settings.load().database_url,
        target_metadata=target_metadata,
        literal_binds=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connection = config.attributes.get("connection")
    if connection is not None:
        _run_migrations(connection)
        return

    from fleetctl import create_app

    app = create_app()
    with app.app_context(), db.engine.begin() as new_connection:
        _run_migrations(new_connection)


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
