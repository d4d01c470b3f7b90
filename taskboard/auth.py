from typing import Optional

from fastapi import Header, HTTPException


def user_from_token(token: Optional[str]) -> Optional[str]:
    if token is None:
        return None
    token = token.strip()
    return token or None


def get_current_user(authorization: str = Header(...)) -> str:
    """Resolve the caller from an ``Authorization: Bearer <token>`` header.

    Sessions are issued elsewhere; here the bearer token is the user id.
    """
    prefix = "Bearer "
    if not authorization.startswith(prefix):
        raise HTTPException(status_code=401, detail="invalid_token")
    user_id = user_from_token(authorization[len(prefix) :])
    if user_id is None:
        raise HTTPException(status_code=401, detail="invalid_token")
    return user_id
