"""Token verification.

Tokens are issued elsewhere; Berth only needs to map a token to the durable
user id it was issued for.
"""

from __future__ import annotations

import jwt
import structlog

from berth.config import SecurityConfig, get_settings
from berth.errors import InvalidToken

logger = structlog.get_logger()

USER_ID_CLAIMS = ("userId", "sub")


class TokenVerifier:
    """Verifies signed JWTs and extracts the user id."""

    def __init__(self, config: SecurityConfig | None = None) -> None:
        config = config or get_settings().security
        self._secret = config.jwt_secret
        self._algorithms = [config.jwt_algorithm]

    def verify(self, token: str | None) -> str:
        """Return the user id carried by ``token``.

        Raises:
            InvalidToken: Missing, malformed, expired or badly signed token,
                or no user id claim
        """
        if not token:
            raise InvalidToken("Authentication token required")

        try:
            claims = jwt.decode(token, self._secret, algorithms=self._algorithms)
        except jwt.PyJWTError as e:
            logger.info("auth.token_rejected", error=str(e))
            raise InvalidToken("Invalid authentication token") from e

        for claim in USER_ID_CLAIMS:
            value = claims.get(claim)
            if value is not None and str(value):
                return str(value)

        raise InvalidToken("Token carries no user id")
