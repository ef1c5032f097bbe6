"""Loopback OAuth2 authentication.

Public API::

    from loopauth.auth import login, get_valid_access_token

    await login()                          # browser sign-in for the active profile
    token = await get_valid_access_token() # refreshes silently when needed

Building blocks, for embedding the flow in another application:

* :class:`CredentialResolver` -- find the OAuth client identity.
* :class:`OAuthProvider` -- authorization URL, code exchange, refresh, revoke.
* :class:`TokenStore` -- atomic token file with single-flight refresh.
* :class:`LoopbackCallbackServer` -- one authorization attempt over loopback.
* :func:`generate` -- PKCE pair plus state token.
"""

from loopauth.auth.context import AuthContext
from loopauth.auth.credentials import (
    CredentialResolver,
    CredentialSource,
    EnvCredentialSource,
    FileCredentialSource,
    LegacyCredentialSource,
    ResolvedCredential,
    ValidationResult,
    load_client_credential,
    validate_client_config,
)
from loopauth.auth.flow import (
    authenticate,
    get_valid_access_token,
    login,
    logout,
    open_token_store,
)
from loopauth.auth.pkce import PkcePair, generate, states_match
from loopauth.auth.provider import OAuthProvider
from loopauth.auth.server import LoopbackCallbackServer, ServerState, extract_code_from_input
from loopauth.auth.token_store import TokenStatus, TokenStore, delete_token_file, token_status

__all__ = [
    "AuthContext",
    "CredentialResolver",
    "CredentialSource",
    "EnvCredentialSource",
    "FileCredentialSource",
    "LegacyCredentialSource",
    "LoopbackCallbackServer",
    "OAuthProvider",
    "PkcePair",
    "ResolvedCredential",
    "ServerState",
    "TokenStatus",
    "TokenStore",
    "ValidationResult",
    "authenticate",
    "delete_token_file",
    "extract_code_from_input",
    "generate",
    "get_valid_access_token",
    "load_client_credential",
    "login",
    "logout",
    "open_token_store",
    "states_match",
    "token_status",
    "validate_client_config",
]
