import os
from datetime import datetime, timedelta, timezone

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from errors import ValidationFailed
from schemas import Principal
from services import Services, get_services
from users import to_principal

JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
JWT_ALGO = "HS256"
TOKEN_LIFETIME = timedelta(days=7)
security = HTTPBearer()


def create_token(payload: dict) -> str:
    exp = datetime.now(timezone.utc) + TOKEN_LIFETIME
    to_encode = {**payload, "exp": exp}
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGO)


def token_for(user: dict) -> str:
    return create_token({"id": str(user["_id"]), "email": user["email"], "is_admin": user.get("is_admin", False)})


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGO])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security),
                     services: Services = Depends(get_services)) -> Principal:
    payload = decode_token(credentials.credentials)
    user_id = payload.get("id")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token payload")
    try:
        user = services.users.find(user_id)
    except ValidationFailed:
        user = None
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    # reloaded on every request so a revoked admin flag takes effect immediately
    return to_principal(user)


def require_admin(user: Principal = Depends(get_current_user)) -> Principal:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Access denied. Admin privileges required.")
    return user
