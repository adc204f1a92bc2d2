"""Built-in CLI sub-commands for mailauth.

This package groups the Typer sub-command modules that form the CLI's
top-level command tree:

* :mod:`~mailauth.commands.authorize` -- run the OAuth copy-paste flow.
  Mounted directly on the root app so it bypasses the config wizard.
* :mod:`~mailauth.commands.token` -- print a valid access token.
* :mod:`~mailauth.commands.account` -- list, show, refresh, and remove
  accounts. Its group callback bootstraps the global config.
* :mod:`~mailauth.commands.config` -- view and create the global config.
"""
