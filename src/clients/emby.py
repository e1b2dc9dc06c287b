"""Media server (Emby / Jellyfin) API client.

Covers only what access control needs: users, selectable library folders and
the per-user policy object.
"""

from typing import Any

import structlog

from src.clients.base import ApiResult, ServiceClient

logger = structlog.get_logger(__name__)


class MediaServerClient(ServiceClient):
    """Client for the Emby/Jellyfin REST API."""

    service_name = "media_server"

    def _headers(self) -> dict[str, str]:
        return {"Accept": "application/json", "X-Emby-Token": self.api_key}

    def _params(self) -> dict[str, str]:
        # Some reverse proxies strip custom headers; the query key survives
        return {"api_key": self.api_key}

    async def list_users(self) -> ApiResult:
        """``GET /Users``: every account with its ``Policy``."""
        return await self._request("GET", "/Users")

    async def get_user(self, user_id: str) -> ApiResult:
        return await self._request("GET", f"/Users/{user_id}")

    async def list_libraries(self) -> ApiResult:
        """``GET /Library/SelectableMediaFolders``."""
        return await self._request("GET", "/Library/SelectableMediaFolders")

    async def update_policy(self, user_id: str, policy: dict[str, Any]) -> ApiResult:
        """Replace a user's policy.

        Older servers only accept PUT, so a failed POST is retried once with PUT.
        """
        path = f"/Users/{user_id}/Policy"
        result = await self._request("POST", path, json=policy, base_fallback=True)
        if result.ok:
            return result
        logger.debug("policy_post_rejected_retrying_put", user_id=user_id, status=result.status)
        return await self._request("PUT", path, json=policy, base_fallback=True)

    async def set_playback_enabled(self, user_id: str, enabled: bool) -> ApiResult:
        """Toggle ``EnableMediaPlayback`` while keeping the rest of the policy."""
        user = await self.get_user(user_id)
        if not user.ok:
            return user
        policy = user.json_dict().get("Policy")
        if not isinstance(policy, dict):
            return ApiResult.failure(f"User {user_id} has no policy", status=user.status)
        return await self.update_policy(user_id, {**policy, "EnableMediaPlayback": enabled})
