"""Command line provisioning of CAS users."""

import os
from collections.abc import Callable
from dataclasses import dataclass

import click
import structlog
from email_validator import EmailNotValidError, validate_email

from .auth.models import Identity
from .exceptions import ConfigurationError, ProvisioningError, UserExistsError
from .logging import configure_logging
from .provisioning.backends import BaseBackend
from .provisioning.host import HostVariant
from .provisioning.loader import HOST_ENV_VAR, build_backend, is_persistent, load_host

logger = structlog.get_logger()


def is_valid_email(address: str) -> bool:
    """Syntax check of an email address (no DNS lookups)."""
    try:
        validate_email(address, check_deliverability=False)
    except EmailNotValidError:
        return False
    return True


@dataclass
class CliContext:
    backend: BaseBackend
    mail_validator: Callable[[str], bool] = is_valid_email


def error_shout(message: str) -> None:
    click.secho(message, err=True, fg="red")


def default_context(host_spec: str | None = None, ephemeral: bool = False) -> CliContext:
    """Context provisioning into the configured host adapter.

    Raises:
        ConfigurationError: If the adapter cannot be loaded, or it does not
            persist users and ``ephemeral`` was not requested
    """
    host = load_host(host_spec)
    if not is_persistent(host) and not ephemeral:
        raise ConfigurationError(
            "The configured host does not persist users; pass --ephemeral to use it anyway"
        )
    return CliContext(backend=build_backend(host))


def cli_context(ctx: click.Context) -> CliContext:
    if ctx.obj is None:
        try:
            ctx.obj = default_context(
                ctx.meta.get("user_cas.host"), ctx.meta.get("user_cas.ephemeral", False)
            )
        except ConfigurationError as e:
            error_shout(str(e))
            raise click.exceptions.Exit(1)
    return ctx.obj  # type: ignore[no-any-return]


@click.group(name="user-cas", short_help="Manage CAS users")
@click.help_option("-h", "--help")
@click.option(
    "--host",
    "host_spec",
    envvar=HOST_ENV_VAR,
    default=None,
    help="Host adapter as a module:attribute import path, or 'memory'.",
)
@click.option(
    "--ephemeral",
    is_flag=True,
    help="Allow a host adapter that does not persist users.",
)
@click.pass_context
def cli(ctx: click.Context, host_spec: str | None, ephemeral: bool) -> None:
    ctx.meta["user_cas.host"] = host_spec
    ctx.meta["user_cas.ephemeral"] = ephemeral


@cli.command("create-user", short_help="Adds a CAS user to the database")
@click.argument("uid")
@click.option(
    "--display-name", default=None, help="User name used in the web UI (can contain any characters)."
)
@click.option("--email", default=None, help="Email address for the user.")
@click.option(
    "-g",
    "--group",
    "groups",
    multiple=True,
    help="The groups the user should be added to (created if they do not exist).",
)
@click.option(
    "-o",
    "--quota",
    default=None,
    help="Quota in bytes or as a human readable string (e.g. 1GB), or 'default'.",
)
@click.option("-e", "--enabled", type=click.BOOL, default=None, help="Set user enabled.")
@click.pass_context
def create_user(
    ctx: click.Context,
    uid: str,
    display_name: str | None,
    email: str | None,
    groups: tuple[str, ...],
    quota: str | None,
    enabled: bool | None,
) -> None:
    """Create UID (a-z, A-Z, 0-9, -, _ and @) and apply the given attributes."""
    obj = cli_context(ctx)
    backend = obj.backend

    try:
        exists = backend.exists(uid)
    except ProvisioningError as e:
        logger.error("CLI user lookup failed", uid=uid, error=str(e))
        error_shout("An error occurred while creating the user")
        raise click.exceptions.Exit(1)
    if exists:
        error_shout(f'The user "{uid}" already exists.')
        raise click.exceptions.Exit(1)

    if email and not obj.mail_validator(email):
        error_shout("Invalid email address supplied")
        raise click.exceptions.Exit(1)

    identity = Identity(
        uid=uid,
        display_name=display_name or None,
        email=email or None,
        groups=tuple(dict.fromkeys(g for g in groups if g)),
        quota=quota or None,
        enabled=enabled,
    )

    changes: list[str] = []
    try:
        record = backend.provision(identity, create=True, exclusive=True, changes=changes)
    except UserExistsError:
        error_shout(f'The user "{uid}" already exists.')
        raise click.exceptions.Exit(1)
    except ProvisioningError as e:
        logger.error("CLI user creation failed", uid=uid, error=str(e))
        error_shout("An error occurred while creating the user")
        raise click.exceptions.Exit(1)

    for line in changes:
        click.echo(line)

    if backend.variant is HostVariant.LEGACY:
        click.echo(f"New user added to CAS backend ({record.backend_class_name}).")
    else:
        click.echo("This is a current host instance, no backend update needed.")


def main() -> None:
    """Console script entry point."""
    configure_logging(os.getenv("LOG_LEVEL", "WARNING"))
    cli()

