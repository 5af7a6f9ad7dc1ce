"""Config commands -- view and modify the persisted configuration.

Provides the ``pooledhttp config`` sub-command group for reading,
updating, and resetting the user's configuration file
(:class:`~pooledhttp.models.ClientConfig`): pool timeouts, request
defaults, and output format.
"""

from __future__ import annotations

import typer

from pooledhttp.exceptions import ConfigError
from pooledhttp.output import error, format_response, info, print_data, success

config_app = typer.Typer(no_args_is_help=True)


@config_app.command("show")
def config_show(
    effective: bool = typer.Option(
        False, "--effective", help="Include environment variable overrides."
    ),
) -> None:
    """Show the current configuration.

    Example::

        pooledhttp config show
        pooledhttp --json config show --effective
    """
    from pooledhttp.config import config_path, load_config, resolve_config

    try:
        config = resolve_config() if effective else load_config()
    except ConfigError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None
    info(f"Config file: {config_path()}")
    format_response(config.model_dump(mode="json"))


@config_app.command("set")
def config_set(
    key: str = typer.Argument(help="Config key (dot notation, e.g. 'pool.idle_timeout')."),
    value: str = typer.Argument(help="Value to set."),
) -> None:
    """Set a configuration value.

    The value is coerced to the existing field's type and the updated
    config is validated before saving.

    Example::

        pooledhttp config set pool.idle_timeout 60
        pooledhttp config set request.verify_ssl false
    """
    from pooledhttp.config import load_config, save_config, set_config_value

    try:
        new_config = set_config_value(load_config(), key, value)
    except ConfigError as exc:
        error(str(exc))
        raise typer.Exit(code=2) from None

    save_config(new_config)
    section, _, field = key.rpartition(".")
    current = getattr(getattr(new_config, section), field) if section else getattr(new_config, field)
    success(f"Set {key} = {current}")


@config_app.command("reset")
def config_reset(ctx: typer.Context) -> None:
    """Reset the configuration to defaults (asks first unless ``--force``)."""
    from pooledhttp.config import save_config
    from pooledhttp.models import ClientConfig

    force = ctx.obj.get("force", False) if ctx.obj else False
    if not force:
        confirmed = typer.confirm("Reset all config to defaults?")
        if not confirmed:
            info("Cancelled.")
            raise typer.Exit()

    save_config(ClientConfig())
    success("Configuration reset to defaults.")


@config_app.command("path")
def config_path_command() -> None:
    """Print the path of the config file."""
    from pooledhttp.config import config_path

    print_data(str(config_path()))
