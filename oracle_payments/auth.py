from fastapi import Header, HTTPException
from jose import jwt, JWTError

from oracle_payments.config import get_settings


def verify_token(authorization: str = Header(...)) -> str:
    """Return the account id carried in the bearer token's ``sub`` claim."""
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("not a bearer token")
        claims = jwt.decode(token, get_settings().jwt_secret, algorithms=["HS256"])
        account_id = claims["sub"]
    except (ValueError, KeyError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return str(account_id)
