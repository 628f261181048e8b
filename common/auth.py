from typing import Any, Dict

import jwt
from fastapi import Header, HTTPException, status

from .secrets import get_secret


def _forbidden() -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


def require_token(authorization: str | None = Header(None)) -> Dict[str, Any]:
    """Validate the Bearer token as an HS256 JWT or one of the static API tokens.

    Returns the caller's claims; static tokens yield ``{"sub": <user>}``.
    """

    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized"
        )
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise _forbidden()

    if token.count(".") == 2:
        secret = get_secret("JWT_SECRET")
        if not secret:
            raise _forbidden()
        try:
            return jwt.decode(token, secret, algorithms=["HS256"])
        except jwt.PyJWTError as exc:
            raise _forbidden() from exc

    tokens: Dict[str, str] = get_secret("API_TOKENS", {}) or {}
    for user, expected in tokens.items():
        if token == expected:
            return {"sub": user}
    raise _forbidden()
