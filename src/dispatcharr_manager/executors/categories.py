from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from dispatcharr_manager.domain.options import SyncCategory

# Relative cost of a category when computing weighted progress.
SINGLE_CALL_WEIGHT = 1
PAGINATED_WEIGHT = 3
PER_ITEM_WEIGHT = 5

READ_ONLY_FIELDS = frozenset({"id", "created_at", "updated_at", "last_login", "date_joined"})


@dataclass(frozen=True)
class CategoryDescriptor:
    """
    How one configuration category is read from and written to the remote API.

    `key_fields` form the business key used to match source records against
    destination records. Singleton categories are one object written with PUT.
    """
    category: SyncCategory
    label: str
    endpoint: str
    export_key: str
    key_fields: Tuple[str, ...] = ("name",)
    paginated: bool = False
    singleton: bool = False
    per_item: bool = False
    include: Optional[Callable[[Dict[str, Any]], bool]] = field(default=None, compare=False)

    @property
    def weight(self) -> int:
        if self.per_item:
            return PER_ITEM_WEIGHT
        if self.paginated:
            return PAGINATED_WEIGHT
        return SINGLE_CALL_WEIGHT

    def business_key(self, record: Dict[str, Any]) -> Tuple[Any, ...]:
        return tuple(record.get(name) for name in self.key_fields)

    def keep(self, record: Dict[str, Any]) -> bool:
        return self.include is None or self.include(record)

    def writable(self, record: Dict[str, Any]) -> Dict[str, Any]:
        return {k: v for k, v in record.items() if k not in READ_ONLY_FIELDS}


def _manual_group(group: Dict[str, Any]) -> bool:
    return not group.get("m3u_account_count")


def _manual_channel(channel: Dict[str, Any]) -> bool:
    return not channel.get("auto_created")


# Dependency order: sources before the profiles, groups and channels that reference them.
CATEGORY_ORDER: List[CategoryDescriptor] = [
    CategoryDescriptor(SyncCategory.M3U_SOURCES, "M3U sources", "/api/m3u/accounts/", "m3uSources", paginated=True),
    CategoryDescriptor(SyncCategory.EPG_SOURCES, "EPG sources", "/api/epg/sources/", "epgSources", paginated=True),
    CategoryDescriptor(SyncCategory.CHANNEL_PROFILES, "channel profiles", "/api/channels/profiles/", "channelProfiles"),
    CategoryDescriptor(SyncCategory.CHANNEL_GROUPS, "channel groups", "/api/channels/groups/", "channelGroups",
                       include=_manual_group),
    CategoryDescriptor(SyncCategory.STREAM_PROFILES, "stream profiles", "/api/core/streamprofiles/", "streamProfiles",
                       paginated=True),
    CategoryDescriptor(SyncCategory.CHANNELS, "channels", "/api/channels/channels/", "channels",
                       key_fields=("name", "channel_number"), paginated=True, include=_manual_channel),
    CategoryDescriptor(SyncCategory.USER_AGENTS, "user agents", "/api/core/useragents/", "userAgents", paginated=True),
    CategoryDescriptor(SyncCategory.CORE_SETTINGS, "core settings", "/api/core/settings/", "coreSettings",
                       key_fields=("key",)),
    CategoryDescriptor(SyncCategory.PLUGINS, "plugins", "/api/plugins/plugins/", "plugins", key_fields=("key",)),
    CategoryDescriptor(SyncCategory.DVR_RULES, "DVR rules", "/api/channels/recurring-rules/", "dvrRules"),
    CategoryDescriptor(SyncCategory.COMSKIP_CONFIG, "comskip config", "/api/channels/comskip-config/", "comskipConfig",
                       singleton=True),
    CategoryDescriptor(SyncCategory.USERS, "users", "/api/accounts/users/", "users", key_fields=("username",),
                       paginated=True),
    CategoryDescriptor(SyncCategory.LOGOS, "logos", "/api/channels/logos/", "logos", paginated=True, per_item=True),
]


def enabled_descriptors(categories: Iterable[SyncCategory]) -> List[CategoryDescriptor]:
    """Enabled categories in dependency order."""
    enabled = set(categories)
    return [descriptor for descriptor in CATEGORY_ORDER if descriptor.category in enabled]
