"""PKCE verifier/challenge and anti-CSRF state generation (:rfc:`7636`).

One call to :func:`generate` produces everything a single authorization
attempt needs: a :class:`PkcePair` and an independent state token. Neither
value is ever logged or persisted; the callback server holds them in memory
and drops them as soon as the attempt completes, which is what makes a
replayed callback fail.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from typing import Optional

CHALLENGE_METHOD = "S256"

# 32 bytes -> 43 URL-safe characters, 256 bits of entropy.
STATE_BYTES = 32


@dataclass(frozen=True)
class PkcePair:
    """A PKCE code verifier and its S256 challenge."""

    verifier: str
    challenge: str
    method: str = CHALLENGE_METHOD

    def __repr__(self) -> str:
        return f"PkcePair(verifier=<hidden>, challenge={self.challenge!r}, method={self.method!r})"


def compute_challenge(verifier: str) -> str:
    """Return the base64url (unpadded) SHA-256 digest of *verifier*."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_pkce_pair() -> PkcePair:
    """Generate a PKCE code_verifier and code_challenge (S256)."""
    # RFC 7636: 43-128 characters from unreserved character set
    verifier = secrets.token_urlsafe(64)[:128]
    return PkcePair(verifier=verifier, challenge=compute_challenge(verifier))


def generate_state() -> str:
    """Return a fresh single-use, URL-safe state token."""
    return secrets.token_urlsafe(STATE_BYTES)


def generate() -> tuple[PkcePair, str]:
    """Generate the PKCE pair and state token for one authorization attempt."""
    return generate_pkce_pair(), generate_state()


def states_match(expected: Optional[str], received: Optional[str]) -> bool:
    """Constant-time comparison of a received state against the live one.

    Returns ``False`` when either side is missing, so a cleared state can
    never be matched.
    """
    if not expected or not received:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8"))
