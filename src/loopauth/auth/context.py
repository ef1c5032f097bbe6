"""Explicit per-session authentication context.

An :class:`AuthContext` is created once per CLI invocation (or embedding
application session) and handed to the :class:`TokenStore` and the
:class:`LoopbackCallbackServer`. Failures they classify are recorded here,
so the next login attempt can see that the previous one died on a broken
client registration without consulting any module-level state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from loopauth.errors import ProviderAuthError

logger = logging.getLogger(__name__)


@dataclass
class AuthContext:
    """Mutable state shared by one authentication session.

    Attributes:
        account: Account identifier attached to classified errors, if known.
        last_error: The most recent classified failure, or ``None``.
    """

    account: Optional[str] = None
    last_error: Optional[ProviderAuthError] = None

    def record(self, error: ProviderAuthError) -> None:
        logger.debug("Recording auth error %s", error.code.value)
        self.last_error = error

    def reset(self) -> None:
        self.last_error = None

    @property
    def client_invalid(self) -> bool:
        """Whether the last failure says the client registration is broken."""
        return self.last_error is not None and self.last_error.is_client_invalid()
