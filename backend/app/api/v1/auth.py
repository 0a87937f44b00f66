from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.exceptions import AuthenticationError
from app.schemas.auth import LoginRequest, RefreshRequest, SetupStatus, TokenResponse
from app.services import auth_service

router = APIRouter(prefix="/auth", tags=["auth"])


@router.get("/setup", response_model=SetupStatus)
async def setup_status(db: AsyncSession = Depends(get_db)):
    """Whether the first account still has to be created."""
    return SetupStatus(setup_required=await auth_service.count_users(db) == 0)


@router.post("/setup", response_model=TokenResponse)
async def setup(body: LoginRequest, db: AsyncSession = Depends(get_db)):
    """Create the first account. Disabled once any user exists."""
    user = await auth_service.create_first_user(db, body.email, body.password)
    return auth_service.create_tokens(user)


@router.post("/login", response_model=TokenResponse)
async def login(body: LoginRequest, db: AsyncSession = Depends(get_db)):
    user = await auth_service.authenticate_user(db, body.email, body.password)
    if user is None:
        raise AuthenticationError("Invalid email or password")
    return auth_service.create_tokens(user)


@router.post("/register", response_model=TokenResponse)
async def register(body: LoginRequest, db: AsyncSession = Depends(get_db)):
    user = await auth_service.register_user(db, body.email, body.password)
    return auth_service.create_tokens(user)


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(body: RefreshRequest, db: AsyncSession = Depends(get_db)):
    user = await auth_service.user_from_refresh_token(db, body.refresh_token)
    return auth_service.create_tokens(user)
