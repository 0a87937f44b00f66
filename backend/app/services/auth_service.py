"""Local accounts and JWT issuance.

Accounts are created on demand: the first one through ``/auth/setup``, later
ones through ``/auth/register``. Provider credentials are attached afterwards.
"""

import logging

from jose import JWTError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import AccessDeniedError, AuthenticationError, InvalidRequestError
from app.core.security import create_access_token, create_refresh_token, decode_token, hash_password, verify_password
from app.models.user import User

logger = logging.getLogger(__name__)


async def get_user_by_email(db: AsyncSession, email: str) -> User | None:
    result = await db.execute(select(User).where(User.email == email))
    return result.scalar_one_or_none()


async def count_users(db: AsyncSession) -> int:
    return await db.scalar(select(func.count()).select_from(User))


async def authenticate_user(db: AsyncSession, email: str, password: str) -> User | None:
    user = await get_user_by_email(db, email)
    if user is None or not verify_password(password, user.hashed_password):
        return None
    return user


async def create_user(db: AsyncSession, email: str, password: str) -> User:
    user = User(email=email, hashed_password=hash_password(password))
    db.add(user)
    await db.commit()
    await db.refresh(user)
    logger.info("Account %d created", user.id)
    return user


async def create_first_user(db: AsyncSession, email: str, password: str) -> User:
    if await count_users(db) > 0:
        raise AccessDeniedError("Setup already completed")
    return await create_user(db, email, password)


async def register_user(db: AsyncSession, email: str, password: str) -> User:
    if await get_user_by_email(db, email) is not None:
        raise InvalidRequestError("Email already registered")
    return await create_user(db, email, password)


async def user_from_refresh_token(db: AsyncSession, token: str) -> User:
    """Resolve the active user a refresh token was issued to."""
    try:
        payload = decode_token(token)
    except JWTError:
        raise AuthenticationError("Invalid or expired refresh token")
    if payload.get("type") != "refresh":
        raise AuthenticationError("Invalid token type")

    try:
        user_id = int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise AuthenticationError("Invalid token")

    user = await db.get(User, user_id)
    if user is None or not user.is_active:
        raise AuthenticationError("User not found or inactive")
    return user


def create_tokens(user: User) -> dict:
    return {
        "access_token": create_access_token(str(user.id)),
        "refresh_token": create_refresh_token(str(user.id)),
        "token_type": "bearer",
    }
