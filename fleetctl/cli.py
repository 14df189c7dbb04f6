"""Command line tools for operating the fleet control plane."""

import json
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import NoReturn

import click

from fleetctl import create_app
from fleetctl.app import App
from fleetctl.database import (
    check_db_connection,
    get_current_revision,
    get_pending_migrations,
    upgrade_database,
)
from fleetctl.utils.credentials import is_username_component
from fleetctl.utils.topics import is_valid_segment


def _fail(message: str) -> NoReturn:
    click.echo(message, err=True)
    sys.exit(1)


@contextmanager
def _database_app(announce: bool = True) -> Iterator[App]:
    """Yield an app context whose database answers, or exit with an error."""
    app = create_app(skip_background_services=True)
    with app.app_context():
        if not check_db_connection():
            _fail("Error: Cannot connect to database")
        if announce:
            click.echo(f"Target database: {app.config['SQLALCHEMY_DATABASE_URI']}")
        yield app


def _echo_revisions(revisions: list[tuple[str, str]]) -> None:
    for rev, desc in revisions:
        click.echo(f"  - {rev}: {desc}")


@click.group()
def cli() -> None:
    """fleetctl - schema, test data and provisioning commands."""


@cli.command()
@click.option("--recreate", is_flag=True, help="Drop every table and migrate from scratch")
@click.option("--yes-i-am-sure", is_flag=True, help="Confirms --recreate")
def upgrade_db(recreate: bool, yes_i_am_sure: bool) -> None:
    """Bring the schema up to the latest Alembic revision.

    Examples:
        fleetctl-cli upgrade-db
        fleetctl-cli upgrade-db --recreate --yes-i-am-sure
    """
    if recreate and not yes_i_am_sure:
        _fail("Error: --recreate drops all fleet data; pass --yes-i-am-sure to confirm")

    with _database_app():
        pending = get_pending_migrations()
        if not pending and not recreate:
            click.echo("Schema is current, nothing to do")
            return

        try:
            applied = upgrade_database(recreate=recreate)
        except Exception as e:
            _fail(f"Error: migration failed: {e}")

        click.echo(f"Applied {len(applied)} migration(s)")
        _echo_revisions(applied)


@cli.command()
@click.option("--yes-i-am-sure", is_flag=True, help="Confirms the database wipe")
def load_test_data(yes_i_am_sure: bool) -> None:
    """Recreate the schema and load the bundled tenants, firmware and devices.

    Data comes from fleetctl/data/test_data/.
    """
    if not yes_i_am_sure:
        _fail("Error: load-test-data wipes the database; pass --yes-i-am-sure to confirm")

    with _database_app() as app:
        try:
            upgrade_database(recreate=True)
            counts = app.container.test_data_service().load_all()
            app.container.db_session().commit()
        except Exception as e:
            app.container.db_session().rollback()
            _fail(f"Error: loading test data failed: {e}")

        for entity, count in counts.items():
            click.echo(f"Loaded {count} {entity}")


@cli.command()
def db_status() -> None:
    """Print the applied revision and any pending migrations."""
    with _database_app(announce=False):
        current = get_current_revision()
        pending = get_pending_migrations()

    click.echo(f"Current revision: {current or 'none'}")
    if pending:
        click.echo(f"Pending migrations: {len(pending)}")
        _echo_revisions(pending)
    else:
        click.echo("No pending migrations")


@cli.command()
@click.option("--tenant", "tenant_id", required=True, help="Tenant ID")
@click.option("--device-type", required=True, help="Device type")
@click.option("--device", "device_id", required=True, help="Device ID")
@click.option("--acl", "show_acl", is_flag=True, help="Also print the device's topic ACL")
def issue_credentials(tenant_id: str, device_type: str, device_id: str, show_acl: bool) -> None:
    """Derive broker credentials for a device without bootstrapping it.

    Useful for commissioning devices by hand or checking what the broker
    should accept. Output is JSON.

    Examples:
        fleetctl-cli issue-credentials --tenant default --device-type smart-meter --device meter-0001
    """
    for label, value in (("tenant", tenant_id), ("device type", device_type), ("device", device_id)):
        if not is_valid_segment(value):
            _fail(f"Error: {label} '{value}' is not a valid topic segment")
    for label, value in (("tenant", tenant_id), ("device type", device_type)):
        if not is_username_component(value):
            _fail(f"Error: {label} '{value}' must not contain '_'")

    app = create_app(skip_background_services=True)

    with app.app_context():
        credential_service = app.container.credential_service()
        credentials = credential_service.issue(tenant_id, device_id, device_type)

        output: dict[str, object] = {
            "username": credentials.username,
            "password": credentials.password,
            "passwordExpiresAt": credentials.expires_at,
        }
        if show_acl:
            acl = credential_service.acl(tenant_id, device_type, device_id)
            output["acl"] = acl.to_dict()

        click.echo(json.dumps(output, indent=2))


def main() -> None:
    """Entry point for CLI."""
    cli()


if __name__ == "__main__":
    main()
