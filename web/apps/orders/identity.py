"""Identity provider backed by signed JWT session tokens.

Customers and shop owners authenticate elsewhere; this service only
resolves the bearer token on each request to a user id (the ``sub``
claim).
"""

from datetime import timedelta
from typing import Any, Dict, Iterable, Optional

import jwt
from django.utils import timezone

from .errors import AuthError

BEARER = "Bearer "


class JwtIdentityProvider:
    """``IdentityProvider`` verifying HS256 (or configured) JWTs."""

    def __init__(self, secret: str, algorithms: Iterable[str] = ("HS256",), audience: Optional[str] = None):
        self.secret = secret
        self.algorithms = list(algorithms)
        self.audience = audience

    def verify_token(self, token: str) -> str:
        if not token:
            raise AuthError("missing token")
        try:
            data = jwt.decode(
                token,
                self.secret,
                algorithms=self.algorithms,
                audience=self.audience,
                options={"require": ["exp", "sub"], "verify_aud": self.audience is not None},
            )
        except jwt.ExpiredSignatureError:
            raise AuthError("token expired")
        except jwt.InvalidTokenError:
            raise AuthError("invalid token")
        sub = data.get("sub")
        if not sub:
            raise AuthError("invalid token")
        return str(sub)

    def issue_token(self, user_id: str, ttl: timedelta = timedelta(hours=8)) -> str:
        """Sign a session token for ``user_id``. Used by local tooling and tests."""
        now = timezone.now()
        payload: Dict[str, Any] = {
            "sub": str(user_id),
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
        }
        if self.audience:
            payload["aud"] = self.audience
        return jwt.encode(payload, self.secret, algorithm=self.algorithms[0])


def bearer_token(request) -> str:
    header = request.headers.get("Authorization", "")
    if not header.startswith(BEARER):
        raise AuthError("missing token")
    return header[len(BEARER):].strip()


def current_user(request, identity) -> str:
    """Resolve the caller's user id from the ``Authorization: Bearer`` header.

    Raises:
        AuthError: No bearer token, or the token did not verify.
    """
    return identity.verify_token(bearer_token(request))
