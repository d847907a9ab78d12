"""Authentication module for vaultmcp.

Bearer token validation through FastMCP's auth system, plus the read-only guard
used by the write tools.
"""

import hmac
import logging

from fastmcp.server.auth import AccessToken, TokenVerifier

from vault_mcp.config import Config

logger = logging.getLogger(__name__)


class AuthError(Exception):
    """Raised when an operation is not permitted."""

    pass


def _scopes(read_only: bool) -> list[str]:
    return ["read"] if read_only else ["read", "write"]


class BearerTokenVerifier(TokenVerifier):
    """
    FastMCP TokenVerifier that validates bearer tokens against VAULT_AUTH_TOKEN.

    Granted scopes follow the server mode: read-only servers hand out the
    "read" scope only.
    """

    def __init__(self, config: Config):
        super().__init__()
        self._config = config

    async def verify_token(self, token: str) -> AccessToken | None:
        """Return access info for a valid token, None otherwise."""
        expected = self._config.auth_token
        scopes = _scopes(self._config.read_only)

        if expected is None:
            return AccessToken(token=token or "anonymous", client_id="anonymous", scopes=scopes)

        if not token:
            logger.warning("Empty authentication token")
            return None

        # Constant-time comparison to prevent timing attacks
        if not hmac.compare_digest(token.encode(), expected.encode()):
            logger.warning("Invalid authentication token")
            return None

        return AccessToken(token=token, client_id="authenticated", scopes=scopes)


def get_auth_provider(config: Config) -> BearerTokenVerifier | None:
    """Return a verifier when VAULT_AUTH_TOKEN is set, None to run without auth."""
    if config.auth_token is None:
        return None
    return BearerTokenVerifier(config)


def check_write_permission(config: Config) -> None:
    """
    Raises:
        AuthError: If the server is in read-only mode
    """
    if config.read_only:
        logger.warning("Write operation rejected: server is in read-only mode")
        raise AuthError("Server is in read-only mode")
