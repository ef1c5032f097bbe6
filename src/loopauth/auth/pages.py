"""Render the HTML pages served by the loopback callback server.

Pages are Jinja2 templates in ``auth/templates/`` sharing one base layout.
Autoescaping is on for every ``.html.j2`` template, so token paths, error
reasons and provider-supplied descriptions are always escaped.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from loopauth.errors import ProviderAuthError


TEMPLATE_DIR = Path(__file__).parent / "templates"
"""Path to the Jinja2 template directory (``auth/templates/``)."""

APP_NAME = "loopauth"


@lru_cache(maxsize=1)
def _env() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        autoescape=select_autoescape(enabled_extensions=("html.j2",)),
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )


def render_index_page(auth_url: str) -> str:
    """Page served at ``/`` linking to the authorization URL."""
    return _env().get_template("index.html.j2").render(app_name=APP_NAME, auth_url=auth_url)


def render_success_page(
    token_path: str,
    ignore_dir: Optional[str] = None,
    profile: Optional[str] = None,
) -> str:
    """Page served after a successful code exchange.

    Args:
        token_path: Literal on-disk token path shown to the user.
        ignore_dir: Directory to add to version-control ignore rules when
            the tokens live inside a project; ``None`` hides the warning.
        profile: Active profile name, if any.
    """
    return (
        _env()
        .get_template("success.html.j2")
        .render(token_path=token_path, ignore_dir=ignore_dir, profile=profile)
    )


def render_error_page(error: ProviderAuthError) -> str:
    """Page showing a classified error with numbered fix steps and links."""
    return _env().get_template("error.html.j2").render(error=error)


def render_csrf_page() -> str:
    """Page shown when the callback state is missing or does not match."""
    return _env().get_template("csrf.html.j2").render()
