"""Bearer credential verification."""

from __future__ import annotations

import logging
from collections.abc import Sequence

import jwt

from .errors import AuthenticationFailure
from .models import Role, TokenClaims


class TokenVerifier:
    """
    Verifies signed bearer tokens presented on ``connect``.

    Tokens are JWTs issued elsewhere; the gateway only checks the signature,
    expiry and the optional issuer/audience claims, then extracts the subject
    (``sub``) and the advisory ``role`` claim. The role claim is never trusted
    for authorization; the identity store is authoritative.
    """

    def __init__(
        self,
        secret: str,
        *,
        algorithms: Sequence[str] = ("HS256",),
        issuer: str | None = None,
        audience: str | None = None,
        leeway_s: float = 0.0,
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        self._secret = secret
        self._algorithms = list(algorithms) or ["HS256"]
        self._issuer = issuer
        self._audience = audience
        self._leeway = float(leeway_s)
        self.log = logging.getLogger("rrcgw.auth")

    def verify(self, token: str) -> TokenClaims:
        if not isinstance(token, str) or not token.strip():
            raise AuthenticationFailure("missing credential")

        options = {"require": ["sub"], "verify_aud": self._audience is not None}
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=self._algorithms,
                issuer=self._issuer,
                audience=self._audience,
                leeway=self._leeway,
                options=options,
            )
        except jwt.ExpiredSignatureError:
            self.log.info("Rejected expired token")
            raise AuthenticationFailure("credential expired") from None
        except jwt.InvalidTokenError as e:
            self.log.info("Rejected invalid token: %s", e)
            raise AuthenticationFailure("invalid credential") from None

        sub = payload.get("sub")
        if not isinstance(sub, str) or not sub:
            raise AuthenticationFailure("invalid credential")

        return TokenClaims(subject_id=sub, role=Role.parse(payload.get("role")))
