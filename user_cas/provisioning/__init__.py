from .host import HostInfo, HostVariant, detect_host_variant
from .quota import normalize_quota

__all__ = [
    "HostInfo",
    "HostVariant",
    "detect_host_variant",
    "normalize_quota",
]
