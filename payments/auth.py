from fastapi import Header, HTTPException
from jose import JWTError, jwt

from payments import config


def get_current_user(authorization: str = Header(...)) -> str:
    """Validate the bearer JWT and return its subject (the user id)."""
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported scheme")
        claims = jwt.decode(token, config.jwt_secret(), algorithms=["HS256"])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")

    user_id = claims.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return str(user_id)
