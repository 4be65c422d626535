import logging

from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt

from ledger.config import jwt_secret

logger = logging.getLogger(__name__)

OPERATOR_ROLES = {"ADMIN", "SUPERADMIN"}


def verify_token(authorization: str = Header(...)):
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported auth scheme")
        return jwt.decode(token, jwt_secret(), algorithms=["HS256"])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")


def require_operator(claims: dict = Depends(verify_token)):
    if not is_operator(claims):
        logger.warning("operator route refused for subject %s", (claims or {}).get("sub"))
        raise HTTPException(status_code=403, detail="Operator access required")
    return claims


def is_operator(claims: dict) -> bool:
    return str((claims or {}).get("role") or "").upper() in OPERATOR_ROLES


def ensure_self_or_operator(claims: dict, user_id: str):
    if is_operator(claims) or (claims or {}).get("sub") == user_id:
        return claims
    logger.warning("subject %s refused access to %s", (claims or {}).get("sub"), user_id)
    raise HTTPException(status_code=403, detail="Not allowed for this user")
