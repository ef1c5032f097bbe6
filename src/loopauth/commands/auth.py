"""Auth commands -- sign in, inspect, use, and forget the stored credential.

Provides the ``loopauth auth`` sub-command group. Every command works on
the active profile (``--profile`` / ``LOOPAUTH_PROFILE``).

Typical workflow::

    loopauth auth doctor             # check the client credentials file
    loopauth auth login              # browser sign-in
    loopauth auth login --no-browser # remote session: paste the redirect URL
    loopauth auth status             # where the tokens live and when they expire
    TOKEN=$(loopauth auth token)     # a valid access token on stdout
    loopauth auth logout --revoke    # revoke at the provider and delete
"""

from __future__ import annotations

import asyncio
from typing import NoReturn, Optional

import typer

from loopauth.errors import ProviderAuthError
from loopauth.exceptions import LoopauthError
from loopauth.output import (
    OutputFormat,
    debug,
    error,
    get_output,
    info,
    print_data,
    print_json,
    success,
    suggest,
    warning,
)


auth_app = typer.Typer(no_args_is_help=True)


@auth_app.command("login")
def auth_login(
    no_browser: bool = typer.Option(
        False,
        "--no-browser",
        help="Do not open a browser; paste the redirect URL instead.",
    ),
    timeout: float = typer.Option(
        300.0, "--timeout", min=1.0, help="Seconds to wait for the browser callback."
    ),
) -> None:
    """Sign in through the browser and save the tokens.

    Skips the browser entirely when the stored credential is still valid
    (refreshing it if needed). With ``--no-browser`` the authorization URL
    is printed and the redirect URL (or bare code) is read from the
    terminal, for sessions where the browser cannot reach this machine.

    Raises:
        typer.Exit: With code 3 if authentication fails or times out.

    Example::

        loopauth auth login
        loopauth --profile work auth login --no-browser
    """
    from loopauth.auth.flow import login
    from loopauth.config import get_active_profile, get_token_path

    debug(f"Profile: {get_active_profile() or 'default'}, token file: {get_token_path()}")
    read_pasted = _prompt_for_redirect if no_browser else None
    try:
        token_path = asyncio.run(
            login(open_browser=not no_browser, timeout=timeout, read_pasted=read_pasted)
        )
    except LoopauthError as exc:
        _fail(exc)

    success("Authentication successful.")
    info(f"Tokens saved to: {token_path}")
    suggest("Check it: loopauth auth status")


@auth_app.command("status")
def auth_status() -> None:
    """Show where the token file lives and whether it is usable.

    Reads the file directly, so it works without client credentials and
    never contacts the provider. Token values are never printed.

    Example::

        loopauth auth status
        loopauth --json auth status
    """
    from loopauth.auth.token_store import token_status
    from loopauth.config import get_active_profile, get_token_path

    status = token_status(get_token_path())
    output = get_output()
    if output.format == OutputFormat.JSON:
        data = status.to_dict()
        data["profile"] = get_active_profile()
        print_json(data)
        return

    rows = [
        ["Profile", get_active_profile() or "default"],
        ["Token File", status.path],
        ["Exists", _yes_no(status.exists)],
    ]
    if status.exists:
        rows.extend(
            [
                ["Readable", _yes_no(status.valid)],
                ["Access Token", _yes_no(status.has_access_token)],
                ["Refresh Token", _yes_no(status.has_refresh_token)],
                ["Expires At", status.expires_at or "-"],
                ["Expired", "-" if status.expired is None else _yes_no(status.expired)],
                ["Created At", status.created_at or "-"],
                ["Scopes", " ".join(status.scopes or []) or "-"],
            ]
        )
    output.print_table(["Field", "Value"], rows, title="Stored Credential")

    if not status.exists:
        suggest("Sign in: loopauth auth login")
    elif status.project_level:
        warning(
            f"Token file is outside {_config_home()}; keep it out of version control."
        )


@auth_app.command("token")
def auth_token() -> None:
    """Print a valid access token to stdout, refreshing it if needed.

    Nothing else is written to stdout, so the command composes with shell
    substitution. Never opens a browser.

    Raises:
        typer.Exit: With code 3 if no usable credential is stored.

    Example::

        curl -H "Authorization: Bearer $(loopauth auth token)" ...
    """
    from loopauth.auth.flow import get_valid_access_token

    try:
        token = asyncio.run(get_valid_access_token())
    except LoopauthError as exc:
        _fail(exc)
    print_data(token)


@auth_app.command("logout")
def auth_logout(
    revoke: bool = typer.Option(
        False, "--revoke", help="Also revoke the grant at the provider."
    ),
) -> None:
    """Delete the stored tokens for the active profile.

    With ``--revoke`` the grant is revoked at the provider first. If the
    client credentials cannot be loaded the local tokens are still deleted.

    Example::

        loopauth auth logout
        loopauth auth logout --revoke
    """
    from loopauth.auth.flow import logout
    from loopauth.auth.token_store import delete_token_file
    from loopauth.config import get_token_path

    token_path = get_token_path()
    if not token_path.exists():
        info("No stored credential.")
        return

    if revoke:
        try:
            revoked = asyncio.run(logout(revoke=True))
        except ProviderAuthError as exc:
            warning(f"Could not revoke at the provider: {exc.reason}")
            delete_token_file(token_path)
            revoked = False
        if revoked:
            success("Access revoked at the provider.")
        else:
            warning("The provider did not confirm revocation.")
    else:
        asyncio.run(logout())

    success(f"Tokens removed: {token_path}")


@auth_app.command("doctor")
def auth_doctor() -> None:
    """Check the OAuth client configuration without signing in.

    Reports where the client credentials were found, any structural
    problems with them, the token file location, and the scopes a login
    would request.

    Raises:
        typer.Exit: With code 1 if the configuration has errors.

    Example::

        loopauth auth doctor
    """
    from loopauth.auth.credentials import validate_client_config
    from loopauth.config import get_keys_file_path, get_scopes, get_token_path

    result = validate_client_config()
    output = get_output()

    if output.format == OutputFormat.JSON:
        print_json(
            {
                "valid": result.valid,
                "source": result.resolved.source if result.resolved else None,
                "credentials_path": _resolved_path(result),
                "token_path": str(get_token_path()),
                "scopes": get_scopes(),
                "warnings": result.warnings,
                "errors": [e.to_dict() for e in result.errors],
            }
        )
    else:
        rows = [
            ["Credentials Source", result.resolved.source if result.resolved else "-"],
            ["Credentials File", _resolved_path(result) or str(get_keys_file_path())],
            ["Token File", str(get_token_path())],
            ["Scopes", str(len(get_scopes()))],
        ]
        output.print_table(["Check", "Value"], rows, title="OAuth Configuration")
        for message in result.warnings:
            warning(message)
        for problem in result.errors:
            error(problem.to_display_string())

    if not result.valid:
        raise typer.Exit(code=1)
    success("OAuth client configuration looks good.")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _prompt_for_redirect() -> Optional[str]:
    """Read one pasted redirect URL or code; ``None`` on EOF or Ctrl-C."""
    try:
        return typer.prompt(
            "Paste the redirect URL (or code)", default="", show_default=False, err=True
        )
    except typer.Abort:
        return None


def _fail(exc: LoopauthError) -> NoReturn:
    """Report *exc* on stderr and exit with its code."""
    if isinstance(exc, ProviderAuthError):
        error(exc.to_display_string())
    else:
        error(str(exc))
    raise typer.Exit(code=exc.exit_code)


def _yes_no(value: bool) -> str:
    return "yes" if value else "no"


def _resolved_path(result) -> Optional[str]:  # noqa: ANN001
    if result.resolved is None or result.resolved.path is None:
        return None
    return str(result.resolved.path)


def _config_home() -> str:
    from loopauth.config import get_config_home

    return str(get_config_home())
