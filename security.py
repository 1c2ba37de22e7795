"""
Password hashing, session tokens and the request-level auth dependencies.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext

from config import Settings
from database import USERS, Database, get_db, serialize, to_obj_id
from errors import Forbidden, NotFound, Unauthorized

logger = logging.getLogger(__name__)

TOKEN_COOKIE = "token"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login", auto_error=False)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(password, hashed)


def create_access_token(data: dict, settings: Settings, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.jwt_expire_minutes))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str, settings: Settings) -> Dict[str, Any]:
    return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def public_user(doc: Dict) -> Dict:
    """Stored user without its secret."""
    user = serialize(doc)
    user.pop("password_hash", None)
    return user


def extract_token(request: Request, header_token: Optional[str]) -> Optional[str]:
    """Bearer header wins over the session cookie; the cleared cookie value counts as absent."""
    token = header_token or request.cookies.get(TOKEN_COOKIE)
    if not token or token == "none":
        return None
    return token


def get_current_user(
    request: Request,
    header_token: Optional[str] = Depends(oauth2_scheme),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> Dict:
    token = extract_token(request, header_token)
    if token is None:
        raise Unauthorized()
    try:
        payload = decode_access_token(token, settings)
    except JWTError as exc:
        logger.info("Rejected session token: %s", exc)
        raise Unauthorized()
    user_id = payload.get("sub")
    if user_id is None:
        raise Unauthorized()
    try:
        oid = to_obj_id(user_id)
    except NotFound:
        raise Unauthorized()
    user = db[USERS].find_one({"_id": oid})
    if not user:
        raise Unauthorized()
    current = public_user(user)
    request.state.user = {"id": current["id"], "role": current["role"]}
    return current


def require_role(*roles: str):
    def role_dep(current_user=Depends(get_current_user)):
        if current_user.get("role") not in roles:
            raise Forbidden(f"User role {current_user.get('role')} is not authorized to access this route")
        return current_user
    return role_dep
