from datetime import datetime, timedelta
from typing import Optional, Dict, Any
import os
import jwt
from fastapi import HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

# Sessions are issued by the identity service; the engine only verifies them
SECRET_KEY = os.getenv("JWT_SECRET_KEY", "your-secret-key-change-in-production-2024")
ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
TOKEN_ISSUER = os.getenv("JWT_ISSUER")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))

security = HTTPBearer()


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"}
    )


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Sign an access token for tooling and tests."""
    claims = dict(data)
    claims["exp"] = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    claims["type"] = "access"
    if TOKEN_ISSUER:
        claims["iss"] = TOKEN_ISSUER
    return jwt.encode(claims, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> Dict[str, Any]:
    options = {"require": ["exp"]}
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM], issuer=TOKEN_ISSUER, options=options)
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Access token has expired. Please refresh.")
    except jwt.InvalidTokenError:
        raise _unauthorized("Could not validate credentials")

    if payload.get("type") != "access":
        raise _unauthorized("Invalid token type")
    return payload


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> Dict[str, Any]:
    """
    Resolve the acting user for a request.

    Returns the actor id recorded on every mutation and audit entry, plus the
    client source claim (defaults to "api") used in audit metadata.
    """
    payload = decode_access_token(credentials.credentials)

    user_id = payload.get("user_id") or payload.get("sub")
    if not user_id:
        raise _unauthorized("Invalid authentication credentials")

    return {"user_id": str(user_id), "source": payload.get("source", "api")}
