"""
Settings API - runtime system configuration
"""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from subsidy_crm.database import get_db
from subsidy_crm.models.user import User
from subsidy_crm.api.auth import get_current_user, get_current_admin
from subsidy_crm.services.access import is_admin
from subsidy_crm.services.side_effects import PostCommitHooks, get_post_commit_hooks
from subsidy_crm.services.system_settings import SettingsService, get_settings_service

logger = logging.getLogger(__name__)

router = APIRouter()


class MySettings(BaseModel):
    users_live_activity_enabled: bool
    can_view_live_activity: bool


class WebhookSettings(BaseModel):
    source: str
    configured: bool
    enabled: bool
    is_active: bool
    endpoint_path: str
    header_name: str
    key_preview: str
    last_received_at: Optional[datetime] = None


class SystemSettings(BaseModel):
    users_live_activity_enabled: bool
    webhook: WebhookSettings


class SystemSettingsUpdate(BaseModel):
    users_live_activity_enabled: Optional[bool] = None
    webhook_enabled: Optional[bool] = None
    webhook_key: Optional[str] = None


async def _system_settings(service: SettingsService) -> SystemSettings:
    config = await service.get()
    webhook = await service.webhook_config()
    return SystemSettings(
        users_live_activity_enabled=bool(config["users_live_activity_enabled"]),
        webhook=WebhookSettings(**{k: v for k, v in webhook.items() if k != "key"}),
    )


@router.get("/me", response_model=MySettings)
async def my_settings(
    current_user: User = Depends(get_current_user),
    service: SettingsService = Depends(get_settings_service),
):
    """Live-activity visibility for the current user; admins always see it"""
    config = await service.get()
    enabled = bool(config["users_live_activity_enabled"])
    return MySettings(
        users_live_activity_enabled=enabled,
        can_view_live_activity=is_admin(current_user) or enabled,
    )


@router.get("", response_model=SystemSettings)
async def get_system_settings(
    admin: User = Depends(get_current_admin),
    service: SettingsService = Depends(get_settings_service),
):
    return await _system_settings(service)


@router.patch("", response_model=SystemSettings)
async def update_system_settings(
    data: SystemSettingsUpdate,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
    service: SettingsService = Depends(get_settings_service),
    hooks: PostCommitHooks = Depends(get_post_commit_hooks),
):
    before = await service.get()
    patch = data.model_dump(exclude_unset=True)
    if "webhook_key" in patch:
        patch["webhook_key"] = (patch["webhook_key"] or "").strip()
    after = await service.set(patch, actor_id=admin.id)
    await db.commit()
    response = await _system_settings(service)

    changed = sorted(k for k in patch if before.get(k) != after.get(k))
    logger.info(f"System settings updated by {admin.email}: {changed}")
    hooks.audit(
        "SETTINGS_UPDATED", "SETTINGS", "SYSTEM_CONFIG", admin.id,
        before={"users_live_activity_enabled": before["users_live_activity_enabled"]},
        after={"users_live_activity_enabled": after["users_live_activity_enabled"]},
        metadata={"changed": changed},
    )
    hooks.broadcast(
        "SETTINGS_UPDATED", "Settings updated", "System settings were updated",
        payload={"users_live_activity_enabled": after["users_live_activity_enabled"]},
        actor_id=admin.id, show_in_live_activity=False,
    )
    await hooks.run(db)
    return response
