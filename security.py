from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
from jose import JWTError, jwt
import bcrypt
from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pymongo.database import Database
from starlette.concurrency import run_in_threadpool

from config import settings
from database import USERS, get_db
from exceptions import AuthenticationError, AuthorizationError
from logging_config import set_user_id

# Bearer token security; missing headers are reported by get_current_user
security = HTTPBearer(auto_error=False)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify password"""
    # Bcrypt has a 72 byte limit - truncate password if necessary
    password_bytes = plain_password.encode('utf-8')[:72]
    try:
        return bcrypt.checkpw(password_bytes, hashed_password.encode('utf-8'))
    except ValueError:
        # stored value is not a bcrypt hash
        return False


def get_password_hash(password: str) -> str:
    """Hash password with configurable rounds (BCRYPT_ROUNDS)"""
    password_bytes = password.encode('utf-8')[:72]
    hashed = bcrypt.hashpw(password_bytes, bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS))
    return hashed.decode('utf-8')


def create_access_token(user_id: str, role: str, expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token"""
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode = {"sub": str(user_id), "role": role, "exp": expire, "type": "access"}
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    """Decode JWT token"""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        raise AuthenticationError("Token is not valid")

    if payload.get("type") != "access" or not payload.get("sub"):
        raise AuthenticationError("Token is not valid")
    return payload


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    """
    Resolve the bearer token to the stored user document.

    Records the user id in the request's logging context.
    """
    if credentials is None:
        raise AuthenticationError("No token, authorization denied")

    payload = decode_token(credentials.credentials)
    try:
        user_oid = ObjectId(payload["sub"])
    except (InvalidId, TypeError):
        raise AuthenticationError("Token is not valid")

    user = await run_in_threadpool(db[USERS].find_one, {"_id": user_oid})
    if not user:
        raise AuthenticationError("User no longer exists")

    user_id = str(user["_id"])
    set_user_id(user_id)
    request.state.user_id = user_id
    return user


def require_admin(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    """Role is read from the stored user, never from the token"""
    if user.get("role") != "admin":
        raise AuthorizationError("Not authorized as an admin")
    return user
