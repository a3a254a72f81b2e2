from enum import Enum
from typing import FrozenSet

from pydantic import BaseModel, Field


class SyncCategory(str, Enum):
    """Configuration categories that can be backed up, restored or synced."""
    M3U_SOURCES = "m3u_sources"
    EPG_SOURCES = "epg_sources"
    CHANNEL_PROFILES = "channel_profiles"
    CHANNEL_GROUPS = "channel_groups"
    STREAM_PROFILES = "stream_profiles"
    CHANNELS = "channels"
    USER_AGENTS = "user_agents"
    CORE_SETTINGS = "core_settings"
    PLUGINS = "plugins"
    DVR_RULES = "dvr_rules"
    COMSKIP_CONFIG = "comskip_config"
    USERS = "users"
    LOGOS = "logos"


class ExportFormat(str, Enum):
    YAML = "yaml"
    JSON = "json"


class Compression(str, Enum):
    ZIP = "zip"
    TAR_GZ = "targz"


class SyncOptions(BaseModel):
    categories: FrozenSet[SyncCategory] = Field(default_factory=frozenset)

    def includes(self, category: SyncCategory) -> bool:
        return category in self.categories


class BackupOptions(SyncOptions):
    format: ExportFormat = ExportFormat.YAML
    compress: Compression = Compression.ZIP
    download_logos: bool = False


class RestoreOptions(SyncOptions):
    pass
