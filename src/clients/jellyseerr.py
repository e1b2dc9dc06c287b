"""Request manager (Jellyseerr / Overseerr) API client.

Content requests are created here once an admin approves them; the request id
returned is stored on the media request as its correlation key.
"""

from typing import Any
from urllib.parse import quote

import structlog

from src.clients.base import ApiResult, ServiceClient

logger = structlog.get_logger(__name__)

API_PREFIX = "/api/v1"


class RequestManagerClient(ServiceClient):
    """Client for the Jellyseerr v1 API."""

    service_name = "request_manager"

    def _headers(self) -> dict[str, str]:
        return {"Accept": "application/json", "X-Api-Key": self.api_key}

    async def create_request(
        self,
        media_type: str,
        media_id: int,
        root_folder: str | None = None,
        profile_id: int | None = None,
        server_id: int | str | None = None,
    ) -> ApiResult:
        """Submit a content request.

        Args:
            media_type: "movie" or "tv"; tv requests ask for all seasons.
            media_id: TMDB id.
            root_folder: Destination folder on the download manager.
            profile_id: Quality profile id.
            server_id: Download manager server id inside the request manager.

        Returns:
            Result whose body carries the created request ``id``.
        """
        payload: dict[str, Any] = {"mediaType": media_type, "mediaId": media_id}
        if str(media_type).lower() == "tv":
            payload["seasons"] = "all"
        if root_folder:
            payload["rootFolder"] = root_folder
        if server_id not in (None, ""):
            payload["serverId"] = server_id
        if profile_id is not None:
            payload["profileId"] = profile_id
        return await self._request(
            "POST", f"{API_PREFIX}/request", json=payload, base_fallback=True
        )

    async def get_request(self, request_id: int | str) -> ApiResult:
        return await self._request("GET", f"{API_PREFIX}/request/{request_id}")

    async def delete_request(self, request_id: int | str) -> ApiResult:
        return await self._request(
            "DELETE", f"{API_PREFIX}/request/{request_id}", base_fallback=True
        )

    def image_url(self, poster_path: str) -> str:
        """Poster URL served through the request manager's image proxy."""
        if not self.base_url or not poster_path:
            return ""
        return f"{self.base_url}{API_PREFIX}/image?path={quote(poster_path, safe='')}"
