from datetime import datetime, timedelta, timezone
from typing import Generator, List, Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from .config import settings
from .credentials import get_user_by_username
from .database import SessionLocal
from .models.user import Role, User
from .policy import Actor

# Missing credentials are reported as 401 below instead of HTTPBearer's default
security = HTTPBearer(auto_error=False)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

AUTHORITY_PREFIX = "ROLE_"


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def authorities_for(role: Role) -> List[str]:
    """Translate a role into the authority names carried in issued tokens."""
    return [AUTHORITY_PREFIX + Role(role).value]


def _create_token(user: User, expires: timedelta, token_type: str) -> str:
    payload = {
        "sub": user.username,
        "roles": authorities_for(user.role),
        "exp": datetime.now(timezone.utc) + expires,
        "type": token_type,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def create_access_token(user: User) -> str:
    return _create_token(user, timedelta(minutes=settings.access_token_expire_minutes), "access")


def create_refresh_token(user: User) -> str:
    return _create_token(user, timedelta(minutes=settings.refresh_token_expire_minutes), "refresh")


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_token(token: str, expected_type: str = "access") -> str:
    """Return the username a valid token of ``expected_type`` was issued to."""
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token has expired")
    except jwt.PyJWTError:
        raise _unauthorized("Invalid token")
    username: Optional[str] = payload.get("sub")
    if username is None or payload.get("type") != expected_type:
        raise _unauthorized("Invalid token")
    return username


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    if credentials is None:
        raise _unauthorized("Not authenticated")
    username = decode_token(credentials.credentials)
    user = get_user_by_username(db, username)
    if user is None:
        raise _unauthorized("User not found")
    return user


def get_actor(current_user: User = Depends(get_current_user)) -> Actor:
    return Actor.from_user(current_user)


def require_admin(actor: Actor = Depends(get_actor)) -> Actor:
    if not actor.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    return actor
