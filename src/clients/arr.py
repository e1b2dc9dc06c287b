"""Download manager (Radarr / Sonarr v3) API client.

Radarr handles movies and Sonarr handles series; both expose the same root
folder and quality profile endpoints, so a single client serves either.
"""

from dataclasses import dataclass, field
from typing import Any

import structlog

from src.clients.base import ApiResult, ServiceClient

logger = structlog.get_logger(__name__)

API_PREFIX = "/api/v3"

# Preferred quality profile names, in order
PREFERRED_PROFILE_MARKERS = ("1080", "720")


@dataclass
class FolderOptions:
    """Destination choices offered by a download manager."""

    roots: list[str] = field(default_factory=list)
    profile_id: int | None = None


def pick_quality_profile(profiles: list[dict[str, Any]]) -> int | None:
    """Pick the default quality profile: 1080p, else 720p, else the first one."""
    for marker in PREFERRED_PROFILE_MARKERS:
        for profile in profiles:
            if marker in str(profile.get("name") or ""):
                return _as_int(profile.get("id"))
    if profiles:
        return _as_int(profiles[0].get("id"))
    return None


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class DownloadManagerClient(ServiceClient):
    """Client for the Radarr/Sonarr v3 API."""

    service_name = "download_manager"

    def __init__(self, *args: Any, kind: str = "radarr", **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.kind = kind
        self.service_name = kind

    def _headers(self) -> dict[str, str]:
        return {"Accept": "application/json", "X-Api-Key": self.api_key}

    async def root_folders(self) -> ApiResult:
        return await self._request("GET", f"{API_PREFIX}/rootfolder")

    async def quality_profiles(self) -> ApiResult:
        return await self._request("GET", f"{API_PREFIX}/qualityprofile")

    async def find_movie(self, tmdb_id: int | str) -> ApiResult:
        """``GET /movie?tmdbId=``: a list with zero or one movie."""
        return await self._request("GET", f"{API_PREFIX}/movie", params={"tmdbId": tmdb_id})

    async def lookup_series(self, imdb_id: str) -> ApiResult:
        return await self._request(
            "GET", f"{API_PREFIX}/series/lookup", params={"term": f"imdb:{imdb_id}"}
        )

    async def queue(self, movie_id: int | str) -> ApiResult:
        return await self._request(
            "GET",
            f"{API_PREFIX}/queue",
            params={"movieId": movie_id, "page": 1, "pageSize": 20},
        )

    async def delete_movie(self, movie_id: int | str) -> ApiResult:
        return await self._request(
            "DELETE", f"{API_PREFIX}/movie/{movie_id}", params={"deleteFiles": "true"}
        )

    async def delete_series(self, series_id: int | str) -> ApiResult:
        return await self._request(
            "DELETE", f"{API_PREFIX}/series/{series_id}", params={"deleteFiles": "true"}
        )

    async def folder_options(self) -> ApiResult:
        """Root folder paths plus the default quality profile id.

        Returns:
            Result whose body is a ``FolderOptions``; fails when either listing fails.
        """
        roots = await self.root_folders()
        if not roots.ok:
            return roots
        profiles = await self.quality_profiles()
        if not profiles.ok:
            return profiles
        folders = [item for item in roots.json_list() if isinstance(item, dict)]
        options = FolderOptions(
            roots=[item["path"] for item in folders if item.get("path")],
            profile_id=pick_quality_profile(
                [profile for profile in profiles.json_list() if isinstance(profile, dict)]
            ),
        )
        return ApiResult(ok=True, status=roots.status, body=options)
