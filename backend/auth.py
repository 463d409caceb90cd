"""
Authentication helpers: password hashing, JWT issuing and the FastAPI
dependencies that resolve the calling principal.
"""

from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel
from sqlalchemy.orm import Session

from config import SECRET_KEY, ALGORITHM, ACCESS_TOKEN_EXPIRE_MINUTES
from database import get_db, User
from errors import AuthExpired, AuthMissing, Forbidden
from structured_logging import get_logger, set_context

logger = get_logger(__name__)

ROLES = ("patient", "doctor", "admin")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# auto_error=False so a missing header surfaces as AuthMissing, not FastAPI's own 401
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


class TokenData(BaseModel):
    username: Optional[str] = None


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def get_user(db: Session, username: str) -> Optional[User]:
    return db.query(User).filter(User.username == username).first()


def authenticate_user(db: Session, username: str, password: str):
    user = get_user(db, username)
    if not user:
        return False
    if not verify_password(password, user.hashed_password):
        return False
    return user


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    if expires_delta is not None:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> TokenData:
    """Validate a bearer token. Raises AuthExpired or AuthMissing."""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except ExpiredSignatureError:
        raise AuthExpired()
    except JWTError:
        raise AuthMissing("Invalid authentication token")

    username = payload.get("sub")
    if username is None:
        raise AuthMissing("Invalid authentication token")
    return TokenData(username=username)


async def get_current_user(
    token: Optional[str] = Depends(oauth2_scheme),
    db: Session = Depends(get_db)
) -> User:
    if not token:
        raise AuthMissing("Not authenticated")

    token_data = decode_token(token)
    user = get_user(db, username=token_data.username)
    if user is None:
        raise AuthMissing()
    return user


async def get_current_active_user(current_user: User = Depends(get_current_user)) -> User:
    if not current_user.is_active:
        raise Forbidden("Inactive user")
    set_context(user_id=current_user.id)
    return current_user


def require_roles(*roles: str):
    """Dependency factory restricting a route to the given roles."""

    async def _check_role(current_user: User = Depends(get_current_active_user)) -> User:
        if current_user.role not in roles:
            logger.warning(
                "Role check failed",
                extra={"required_roles": list(roles), "actual_role": current_user.role},
            )
            raise Forbidden()
        return current_user

    return _check_role
