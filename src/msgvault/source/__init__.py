"""Source module - read-only adapters over the device inbox."""

from msgvault.config import Settings
from msgvault.source.android import AndroidSmsDatabaseSource
from msgvault.source.base import InboxSource
from msgvault.source.export import JsonExportSource

__all__ = [
    "AndroidSmsDatabaseSource",
    "InboxSource",
    "JsonExportSource",
    "source_from_settings",
]


def source_from_settings(settings: Settings) -> InboxSource:
    """Build the inbox source selected by ``settings.inbox_kind``."""
    if settings.inbox_kind == "json_export":
        return JsonExportSource(settings.inbox_location)
    return AndroidSmsDatabaseSource(settings.inbox_location)
