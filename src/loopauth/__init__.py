"""loopauth -- loopback OAuth2 sign-in for local command-line tools.

This package authenticates a CLI against an OAuth2 provider (Google by
default) using the Authorization Code grant with PKCE, conducted entirely
on the user's machine through a short-lived loopback HTTP listener. The
resulting credential is persisted atomically and refreshed on demand, with
concurrent refreshes collapsed into a single upstream call.

Typical workflow::

    loopauth auth login     # browser sign-in, tokens saved to disk
    loopauth auth token     # print a valid access token (refreshing if needed)
    loopauth auth logout    # forget (and optionally revoke) the credential

Modules:
    app: Typer application and CLI entry point.
    auth: Loopback server, token store, PKCE, credential resolution.
    config: XDG-aware paths, profiles, scopes and atomic writes.
    errors: Classification of provider errors into actionable kinds.
    exceptions: Exception hierarchy with exit-code mapping.
    models: Pydantic models for on-disk file shapes.
    output: stdout/stderr formatting with Rich support.
"""

__version__ = "0.1.0"
