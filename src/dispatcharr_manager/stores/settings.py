from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel

from dispatcharr_manager.errors import ValidationError
from dispatcharr_manager.storages.protocol import Storage


class TimeFormat(str, Enum):
    TWELVE_HOUR = "12h"
    TWENTY_FOUR_HOUR = "24h"


class AppSettings(BaseModel):
    timezone: str = "UTC"
    time_format: TimeFormat = TimeFormat.TWELVE_HOUR


def validate_timezone(name: str) -> str:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown timezone '{name}'")
    return name


class SettingsStore:
    DOCUMENT = "settings"

    def __init__(self, storage: Storage, default_timezone: str = "UTC"):
        self.storage = storage
        self.default_timezone = default_timezone
        self._cached: Optional[AppSettings] = None

    async def get(self) -> AppSettings:
        if self._cached is None:
            stored = await self.storage.load(self.DOCUMENT) or {}
            self._cached = AppSettings.model_validate({"timezone": self.default_timezone, **stored})
        return self._cached.model_copy()

    async def update(self, **changes) -> AppSettings:
        if "timezone" in changes:
            validate_timezone(changes["timezone"])
        current = await self.get()
        updated = AppSettings.model_validate({**current.model_dump(), **changes})
        await self.storage.save(self.DOCUMENT, updated.model_dump(mode="json"))
        self._cached = updated
        return updated.model_copy()

    async def get_timezone(self) -> str:
        return (await self.get()).timezone

    async def set_timezone(self, timezone: str) -> None:
        await self.update(timezone=timezone)
