"""Exception hierarchy for loopauth.

All exceptions inherit from :class:`LoopauthError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`loopauth.exit_codes`.
The top-level error handler in :func:`loopauth.app.main` catches
``LoopauthError`` and exits with the appropriate code, while unexpected
exceptions produce a crash log and exit with :data:`EXIT_GENERIC_FAILURE`.

Subclass hierarchy::

    LoopauthError (exit 1)
    +-- InvalidUsageError   (exit 2)
    +-- AuthError           (exit 3)
    |   +-- ProviderAuthError   (see loopauth.errors)
    |       (exit 6 when classified as NETWORK_ERROR)
    +-- ConfigurationError  (exit 1)
"""

from loopauth.exit_codes import (
    EXIT_AUTH_FAILURE,
    EXIT_GENERIC_FAILURE,
    EXIT_INVALID_USAGE,
)


class LoopauthError(Exception):
    """Base exception for all loopauth errors.

    Every subclass sets a class-level ``exit_code`` corresponding to one of
    the constants in :mod:`loopauth.exit_codes`.

    Args:
        message: Human-readable error description printed to stderr.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class InvalidUsageError(LoopauthError):
    """Raised for invalid CLI arguments."""

    exit_code = EXIT_INVALID_USAGE


class AuthError(LoopauthError):
    """Raised when authentication fails or no usable credential exists."""

    exit_code = EXIT_AUTH_FAILURE


class ConfigurationError(LoopauthError):
    """Raised when no OAuth client identity can be found or parsed, or a profile name is invalid."""

    exit_code = EXIT_GENERIC_FAILURE
