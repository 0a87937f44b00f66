from sqlalchemy.ext.asyncio import AsyncSession

from app.core.encryption import encrypt_value
from app.models.user import User
from app.schemas.user import ProviderKeysRead, ProviderKeysUpdate


def provider_keys_status(user: User) -> ProviderKeysRead:
    return ProviderKeysRead(
        has_hetzner_api_key=bool(user.hetzner_api_key_encrypted),
        has_tailscale_api_key=bool(user.tailscale_api_key_encrypted),
        hetzner_project_id=user.hetzner_project_id,
        tailscale_tailnet=user.tailscale_tailnet,
    )


def _sealed_or_none(value: str) -> str | None:
    value = value.strip()
    return encrypt_value(value) if value else None


async def update_provider_keys(db: AsyncSession, user: User, data: ProviderKeysUpdate) -> User:
    if data.hetzner_api_key is not None:
        user.hetzner_api_key_encrypted = _sealed_or_none(data.hetzner_api_key)
    if data.tailscale_api_key is not None:
        user.tailscale_api_key_encrypted = _sealed_or_none(data.tailscale_api_key)
    if data.hetzner_project_id is not None:
        user.hetzner_project_id = data.hetzner_project_id.strip() or None
    if data.tailscale_tailnet is not None:
        user.tailscale_tailnet = data.tailscale_tailnet.strip() or None
    await db.commit()
    await db.refresh(user)
    return user
