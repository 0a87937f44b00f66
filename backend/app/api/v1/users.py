from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.dependencies import get_current_user
from app.core.security import hash_password, verify_password
from app.models.user import User
from app.schemas.user import ChangePasswordRequest, ProviderKeysRead, ProviderKeysUpdate, UserRead
from app.services.user_service import provider_keys_status, update_provider_keys

router = APIRouter(prefix="/users", tags=["users"])


@router.get("/me", response_model=UserRead)
async def get_me(current_user: User = Depends(get_current_user)):
    return current_user


@router.put("/me/password", status_code=204)
async def change_password(
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if not verify_password(body.current_password, current_user.hashed_password):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    current_user.hashed_password = hash_password(body.new_password)
    await db.commit()


@router.get("/me/provider-keys", response_model=ProviderKeysRead)
async def get_provider_keys(current_user: User = Depends(get_current_user)):
    return provider_keys_status(current_user)


@router.put("/me/provider-keys", response_model=ProviderKeysRead)
async def put_provider_keys(
    body: ProviderKeysUpdate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    user = await update_provider_keys(db, current_user, body)
    return provider_keys_status(user)
