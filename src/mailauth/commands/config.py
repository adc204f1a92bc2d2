"""Config commands -- view and create the global configuration.

``mailauth config wizard`` runs the interactive setup explicitly;
``mailauth config show`` prints the effective configuration. Neither runs
the ambient bootstrap, since they are how a configuration comes to exist.
"""

from __future__ import annotations

import typer

from mailauth.output import format_response, info, success


config_app = typer.Typer(no_args_is_help=True)


@config_app.command("show")
def config_show() -> None:
    """Show the effective global configuration.

    Example::

        mailauth config show --json
    """
    from mailauth.config import global_config_exists, global_config_path, load_global_config

    config = load_global_config()
    if global_config_exists():
        info(f"Config file: {global_config_path()}")
    else:
        info("No config file yet; showing defaults.")
    format_response(config.model_dump(mode="json"))


@config_app.command("wizard")
def config_wizard() -> None:
    """Interactively create or update the global configuration.

    Example::

        mailauth config wizard
    """
    from mailauth.config import global_config_path, run_config_wizard

    run_config_wizard()
    success(f"Configuration saved to {global_config_path()}")
