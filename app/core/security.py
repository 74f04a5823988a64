"""Security related functions."""

import jwt
from fastapi import HTTPException, status
from jwt import InvalidTokenError

from app.core.config import settings


class TokenVerifier:
    """
    Verifies bearer tokens issued by the identity provider.

    Authentication itself happens at the provider; this service only needs the
    stable user subject out of the token. With ``auth_jwt_secret`` configured
    the signature, expiry and (optionally) audience are checked. Without a
    secret, tokens are decoded unverified, which is only accepted outside
    production.

    :ivar secret_key: The key used to verify JWT signatures.
    :type secret_key: str | None
    :ivar algorithm: The expected signing algorithm.
    :type algorithm: str
    """

    def __init__(
        self,
        secret_key: str | None = None,
        algorithm: str | None = None,
        audience: str | None = None,
    ):
        self.secret_key = secret_key if secret_key is not None else settings.auth_jwt_secret
        self.algorithm = algorithm or settings.auth_jwt_algorithm
        self.audience = audience if audience is not None else settings.auth_jwt_audience

    def verify_token(self, token: str) -> dict:
        """
        Decode a JWT and return its claims.

        :param token: The JWT token to be verified.
        :return: The decoded payload.
        :raises HTTPException: 401 when the token is invalid.
        """
        try:
            if self.secret_key:
                return jwt.decode(
                    token,
                    key=self.secret_key,
                    algorithms=[self.algorithm],
                    audience=self.audience,
                    options={"verify_aud": bool(self.audience)},
                )

            if settings.is_production:
                raise InvalidTokenError("Token verification key is not configured")

            return jwt.decode(
                token,
                options={"verify_signature": False, "verify_aud": False, "verify_exp": False},
            )
        except InvalidTokenError as e:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=f"Invalid authentication token: {str(e)}",
                headers={"WWW-Authenticate": "Bearer"},
            ) from e
