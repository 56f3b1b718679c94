"""Platform name → adapter class lookup."""
from typing import Dict, List, Type

from outreach.platforms.base import PlatformAdapter
from outreach.platforms.phoneburner import PhoneBurnerAdapter
from outreach.platforms.replyio import ReplyioAdapter
from outreach.platforms.smartlead import SmartleadAdapter

ADAPTERS: Dict[str, Type[PlatformAdapter]] = {
    SmartleadAdapter.platform: SmartleadAdapter,
    ReplyioAdapter.platform: ReplyioAdapter,
    PhoneBurnerAdapter.platform: PhoneBurnerAdapter,
}


class UnknownPlatformError(KeyError):
    """Raised for a platform name with no adapter."""


def get_adapter_class(platform: str) -> Type[PlatformAdapter]:
    try:
        return ADAPTERS[platform]
    except KeyError:
        raise UnknownPlatformError(platform) from None


def supported_platforms() -> List[str]:
    return sorted(ADAPTERS)
