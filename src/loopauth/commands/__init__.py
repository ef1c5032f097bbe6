"""Built-in CLI sub-commands for loopauth.

* :mod:`~loopauth.commands.auth` -- sign in, inspect, print, and remove
  the stored credential, and check the client configuration.

Each module exports a :class:`typer.Typer` sub-application that
:mod:`loopauth.app` attaches to the root command.
"""
