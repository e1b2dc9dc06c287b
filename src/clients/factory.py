"""Build service clients from the admin-edited settings document.

The settings document can change between two loop iterations, so callers
build a fresh factory from the settings they just loaded instead of holding
clients for the lifetime of the process.
"""

import httpx

from src.clients.arr import DownloadManagerClient
from src.clients.emby import MediaServerClient
from src.clients.jellyseerr import RequestManagerClient
from src.config import settings
from src.storage.models import MediaType, ServiceSettings


class ClientFactory:
    """Creates unopened clients; use each one as an async context manager."""

    def __init__(
        self,
        service: ServiceSettings,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the factory.

        Args:
            service: Current settings document.
            timeout: HTTP timeout, defaults to ``settings.http_timeout``.
            transport: Optional httpx transport shared by every client (tests).
        """
        self.service = service
        self.timeout = timeout or settings.http_timeout
        self.transport = transport

    def media_server(self) -> MediaServerClient:
        return MediaServerClient(
            self.service.emby_url,
            self.service.api_key,
            timeout=self.timeout,
            transport=self.transport,
        )

    def request_manager(self) -> RequestManagerClient:
        return RequestManagerClient(
            self.service.jellyseerr_url,
            self.service.jellyseerr_api_key,
            timeout=self.timeout,
            transport=self.transport,
        )

    def download_manager(self, media_type: str) -> DownloadManagerClient:
        """Sonarr for series, Radarr for everything else."""
        if str(media_type).lower() == MediaType.TV.value:
            return DownloadManagerClient(
                self.service.sonarr_url,
                self.service.sonarr_api_key,
                timeout=self.timeout,
                transport=self.transport,
                kind="sonarr",
            )
        return DownloadManagerClient(
            self.service.radarr_url,
            self.service.radarr_api_key,
            timeout=self.timeout,
            transport=self.transport,
            kind="radarr",
        )
