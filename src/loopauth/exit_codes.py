"""Numeric process exit codes following `clig.dev <https://clig.dev/>`_ conventions.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~loopauth.exceptions.LoopauthError` subclass.
Shell wrappers can inspect the exit code to tell "not signed in" apart
from "network down" without parsing stderr.

Example::

    $ loopauth auth token
    $ echo $?
    3   # EXIT_AUTH_FAILURE -- no usable credential
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_INVALID_USAGE = 2
"""The command was invoked with invalid arguments."""

EXIT_AUTH_FAILURE = 3
"""Authentication failed or no usable credential is stored."""

EXIT_CONNECTION_ERROR = 6
"""The OAuth provider could not be reached (timeout, DNS failure, connection refused)."""
