"""Provision a login for the photo service.

Usage: python -m scripts.create_user <db_path> <username>
   or: localphotos-create-user <db_path> <username>
"""

import asyncio
import logging
from pathlib import Path

import click

from auth import hash_password
from database import Database

# Author: Daniel Neugent

logger = logging.getLogger(__name__)


async def _store(db_path: Path, username: str, pass_hash: str) -> None:
    db = Database(db_path)
    await db.initialize()
    await db.upsert_credential(username, pass_hash)


@click.command()
@click.argument("db_path", type=click.Path(dir_okay=False, path_type=Path))
@click.argument("username")
@click.password_option(
    "--password",
    prompt="Enter password",
    confirmation_prompt="Repeat password",
    help="Read from the terminal when omitted",
)
def create_user(db_path, username, password):
    """Create USERNAME in DB_PATH, or replace its password."""
    if not username.strip():
        raise click.BadParameter("username must not be empty", param_hint="USERNAME")
    if not password:
        raise click.BadParameter("password must not be empty", param_hint="--password")
    asyncio.run(_store(db_path, username, hash_password(password)))
    click.echo(f"User {username} saved to {db_path}")


if __name__ == "__main__":
    create_user()
