"""Thin clients for the external services.

Provides:
- Media server (Emby / Jellyfin) users, libraries and policies
- Request manager (Jellyseerr) content requests and user import
- Download managers (Radarr / Sonarr) folders, profiles, queue and deletes
- Telegram bot calls

Every call answers with an ``ApiResult`` instead of raising.
"""

from src.clients.arr import DownloadManagerClient, FolderOptions, pick_quality_profile
from src.clients.base import (
    NOT_CONFIGURED,
    ApiResult,
    ServiceClient,
    extract_public_base,
    normalize_url,
)
from src.clients.emby import MediaServerClient
from src.clients.factory import ClientFactory
from src.clients.jellyseerr import RequestManagerClient
from src.clients.telegram import EMPTY_KEYBOARD, ChatClient, has_photo

__all__ = [
    "EMPTY_KEYBOARD",
    "NOT_CONFIGURED",
    "ApiResult",
    "ChatClient",
    "ClientFactory",
    "DownloadManagerClient",
    "FolderOptions",
    "MediaServerClient",
    "RequestManagerClient",
    "ServiceClient",
    "extract_public_base",
    "has_photo",
    "normalize_url",
    "pick_quality_profile",
]
