# evfleet/cli.py
import json

import click
from flask.cli import with_appcontext

from evfleet.db_models import db, User
from evfleet.services.access_control import ROLE_HIERARCHY, seed_role_permissions
from evfleet.services.errors import DeploymentError
from evfleet.services.fleet_registry import upsert_vehicle


def register_commands(app):
    app.cli.add_command(seed_roles)
    app.cli.add_command(import_vehicles)
    app.cli.add_command(create_user)


@click.command("seed-roles")
@with_appcontext
@click.option("--overwrite", is_flag=True, help="Replace matrices that already exist.")
def seed_roles(overwrite):
    """Write the default role -> module -> permission matrices."""
    counts = seed_role_permissions(updated_by="cli", overwrite=overwrite)
    click.echo(f"Roles: {counts['created']} created, {counts['updated']} updated, {counts['skipped']} unchanged")


@click.command("import-vehicles")
@with_appcontext
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
def import_vehicles(path):
    """
    Load vehicles from a JSON file (a list, or {"vehicles": [...]}).
    Records are matched on registration number; legacy field names are accepted.
    """
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    records = data.get("vehicles", []) if isinstance(data, dict) else data

    created = updated = failed = 0
    for i, record in enumerate(records, start=1):
        if not isinstance(record, dict):
            click.echo(f"#{i}: skipped, not an object", err=True)
            failed += 1
            continue
        result = upsert_vehicle(record)
        if isinstance(result, DeploymentError):
            click.echo(f"#{i}: {result.message}", err=True)
            failed += 1
            continue
        vehicle, was_created = result
        if was_created:
            created += 1
        else:
            updated += 1

    click.echo(f"Vehicles: {created} created, {updated} updated, {failed} failed")


@click.command("create-user")
@with_appcontext
@click.option("--name", "full_name", required=True)
@click.option("--email", required=True)
@click.option("--role", type=click.Choice(sorted(ROLE_HIERARCHY)), default="pilot", show_default=True)
def create_user(full_name, email, role):
    """Add an operator / pilot account."""
    email = email.strip().lower()
    if db.session.query(User).filter(User.email == email).first():
        raise click.ClickException(f"{email} already exists")
    user = User(full_name=full_name.strip(), email=email, role=role)
    db.session.add(user)
    db.session.commit()
    click.echo(f"Created user {user.id} ({role})")
