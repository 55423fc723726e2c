"""
Runtime system settings stored in the SYSTEM_CONFIG row
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from subsidy_crm.config import get_settings
from subsidy_crm.database import get_db
from subsidy_crm.models.app_setting import AppSetting, SYSTEM_CONFIG_KEY

logger = logging.getLogger(__name__)

WEBHOOK_ENDPOINT_PATH = "/api/leads/webform"
WEBHOOK_HEADER_NAME = "X-Webhook-Key"

DEFAULTS: Dict[str, Any] = {
    "users_live_activity_enabled": False,
    "webhook_enabled": None,
    "webhook_key": "",
    "webhook_last_received_at": None,
}


def mask_secret(secret: Optional[str]) -> str:
    value = (secret or "").strip()
    if not value:
        return ""
    if len(value) <= 4:
        return "*" * len(value)
    return f"{value[:2]}{'*' * max(4, len(value) - 4)}{value[-2:]}"


class SettingsService:
    """get()/set() accessor over the SYSTEM_CONFIG row, created on first use"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _row(self) -> AppSetting:
        result = await self.db.execute(select(AppSetting).where(AppSetting.key == SYSTEM_CONFIG_KEY))
        row = result.scalar_one_or_none()
        if row is None:
            row = AppSetting(key=SYSTEM_CONFIG_KEY, value=dict(DEFAULTS))
            self.db.add(row)
            await self.db.flush()
        return row

    async def get(self) -> Dict[str, Any]:
        row = await self._row()
        return {**DEFAULTS, **(row.value or {})}

    async def set(self, patch: Dict[str, Any], actor_id: Optional[int] = None) -> Dict[str, Any]:
        """Merge known keys into the stored config; the caller commits"""
        row = await self._row()
        current = {**DEFAULTS, **(row.value or {})}
        for key, value in patch.items():
            if key in DEFAULTS:
                current[key] = value
        row.value = current
        row.updated_by_id = actor_id
        row.updated_at = datetime.utcnow()
        return current

    async def webhook_config(self) -> Dict[str, Any]:
        """Effective webform key: the stored one wins over WEBHOOK_KEY from the environment"""
        config = await self.get()
        db_key = (config.get("webhook_key") or "").strip()
        env_key = (get_settings().WEBHOOK_KEY or "").strip()
        source = "DATABASE" if db_key else "ENV" if env_key else "NONE"
        key = db_key or env_key
        configured = bool(key)
        enabled = configured if config.get("webhook_enabled") is None else bool(config["webhook_enabled"])
        return {
            "source": source,
            "key": key,
            "configured": configured,
            "enabled": enabled,
            "is_active": configured and enabled,
            "endpoint_path": WEBHOOK_ENDPOINT_PATH,
            "header_name": WEBHOOK_HEADER_NAME,
            "last_received_at": config.get("webhook_last_received_at"),
            "key_preview": mask_secret(db_key) if source == "DATABASE"
            else "Configured via server environment" if source == "ENV" else "Not configured",
        }


def get_settings_service(db: AsyncSession = Depends(get_db)) -> SettingsService:
    """FastAPI dependency; tests override it to inject a fixture"""
    return SettingsService(db)
