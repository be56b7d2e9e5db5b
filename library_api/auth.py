"""Per-request credential checks.

Every request carries HTTP Basic credentials that are verified against the
stored user record; nothing about a login is kept in the process.
"""
import logging

import bcrypt
from fastapi import Depends
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from circulation.errors import AuthenticationError, PermissionDeniedError
from circulation.models import User

from .config import settings
from .crud import LibraryRepository
from .dependencies import get_db

logger = logging.getLogger(__name__)

security = HTTPBasic(realm="library")


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=settings.bcrypt_rounds)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))


async def get_current_user(
    credentials: HTTPBasicCredentials = Depends(security),
    db: LibraryRepository = Depends(get_db),
) -> User:
    user = await db.find_user_by_email(credentials.username)
    if user is None or not verify_password(credentials.password, user.password_hash):
        logger.warning(f"Failed authentication for {credentials.username}")
        raise AuthenticationError("Invalid email or password")
    if not user.is_active:
        raise AuthenticationError("Account is deactivated")
    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise PermissionDeniedError("Admin access required")
    return user
