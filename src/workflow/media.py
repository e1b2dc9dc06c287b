"""Media request decisions, download status polling and deletion.

Approved requests are submitted to the request manager, which hands them to
Radarr (movies) or Sonarr (series). The request id it returns is the
correlation key used later for status polling and cascading deletes.
"""

from collections.abc import Callable
from datetime import UTC, datetime

import structlog

from src.clients.arr import DownloadManagerClient, FolderOptions
from src.clients.factory import ClientFactory
from src.storage.documents import DocumentStore, load_media_requests, save_media_requests
from src.storage.models import MediaRequest, MediaStatus
from src.workflow.errors import (
    InvalidStateError,
    RecordNotFoundError,
    ServiceNotConfiguredError,
    UpstreamError,
)

logger = structlog.get_logger(__name__)

# Request manager statuses copied onto the local record
EXTERNAL_STATUSES = {"approved", "available"}


def _find(requests: list[MediaRequest], request_id: str) -> MediaRequest:
    for request in requests:
        if request.id == request_id:
            return request
    raise RecordNotFoundError("Media request not found.")


def _first_with_id(items: list) -> dict | None:
    return next((item for item in items if isinstance(item, dict) and item.get("id")), None)


def queue_progress(records: list) -> int | None:
    """Percent downloaded across queue items, or None when nothing is queued."""
    total = 0.0
    remaining = 0.0
    for item in records:
        if not isinstance(item, dict):
            continue
        total += float(item.get("size") or 0)
        remaining += float(item.get("sizeleft") or 0)
    if total <= 0:
        return None
    return round((total - remaining) / total * 100)


class MediaRequestService:
    """Applies admin decisions and upstream progress to the media-requests document."""

    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] | None = None):
        self.store = store
        self._clock = clock or (lambda: datetime.now(UTC))

    async def get(self, request_id: str) -> MediaRequest:
        return _find(await load_media_requests(self.store), request_id)

    async def folder_options(self, request: MediaRequest, clients: ClientFactory) -> FolderOptions:
        """Root folders and default quality profile for the request's media type.

        An unconfigured or failing download manager offers no folders, leaving
        the choice to the request manager's defaults.
        """
        async with clients.download_manager(request.media_type) as arr:
            if not arr.configured:
                return FolderOptions()
            result = await arr.folder_options()
        if not result.ok:
            logger.warning(
                "media_folder_lookup_failed",
                request_id=request.id,
                kind=arr.kind,
                error=result.error,
            )
            return FolderOptions()
        return result.body

    async def approve(
        self,
        request_id: str,
        clients: ClientFactory,
        root_folder: str | None = None,
        profile_id: int | None = None,
    ) -> MediaRequest:
        """Submit the request upstream and mark it approved.

        Raises:
            RecordNotFoundError: If the request does not exist.
            InvalidStateError: If it was already decided or has no usable TMDB id.
            ServiceNotConfiguredError: If the request manager is not configured.
            UpstreamError: If the request manager rejects the request.
        """
        requests = await load_media_requests(self.store)
        record = _find(requests, request_id)
        if not record.is_open():
            raise InvalidStateError("Media request is no longer pending.")
        media_id = record.tmdb_number
        if media_id is None:
            raise InvalidStateError("Invalid TMDB id for this request.")

        async with clients.request_manager() as jellyseerr:
            if not jellyseerr.configured:
                raise ServiceNotConfiguredError("Jellyseerr settings missing.")
            result = await jellyseerr.create_request(
                record.media_type,
                media_id,
                root_folder=root_folder,
                profile_id=profile_id,
            )
        if not result.ok:
            raise UpstreamError(result.text or "Jellyseerr request failed.")

        data = result.json_dict()
        record.status = MediaStatus.APPROVED.value
        record.jellyseerr_request_id = (
            data.get("id") or data.get("requestId") or record.jellyseerr_request_id
        )
        record.updated_at = self._clock()
        if root_folder:
            record.root_folder = root_folder
        if profile_id is not None:
            record.quality_profile = profile_id
        await save_media_requests(self.store, requests)

        logger.info(
            "media_request_approved",
            request_id=record.id,
            external_id=record.jellyseerr_request_id,
            root_folder=record.root_folder,
            profile_id=record.quality_profile,
        )
        return record

    async def reject(self, request_id: str, clients: ClientFactory) -> MediaRequest:
        """Mark rejected, deleting any correlated upstream request first (best effort).

        Raises:
            RecordNotFoundError: If the request does not exist.
            InvalidStateError: If it was already decided.
        """
        requests = await load_media_requests(self.store)
        record = _find(requests, request_id)
        if not record.is_open():
            raise InvalidStateError("Media request is no longer pending.")
        if record.jellyseerr_request_id:
            async with clients.request_manager() as jellyseerr:
                result = await jellyseerr.delete_request(record.jellyseerr_request_id)
            if not result.ok:
                logger.warning(
                    "media_request_upstream_delete_failed",
                    request_id=record.id,
                    external_id=record.jellyseerr_request_id,
                    error=result.error,
                )
        record.status = MediaStatus.REJECTED.value
        record.updated_at = self._clock()
        await save_media_requests(self.store, requests)
        logger.info("media_request_rejected", request_id=record.id)
        return record

    async def delete(self, request_id: str, clients: ClientFactory) -> MediaRequest:
        """Remove a request, cascading to the request and download managers.

        Upstream deletes are best effort; the local record is always removed.
        """
        requests = await load_media_requests(self.store)
        record = _find(requests, request_id)

        if record.jellyseerr_request_id:
            async with clients.request_manager() as jellyseerr:
                result = await jellyseerr.delete_request(record.jellyseerr_request_id)
            if not result.ok:
                logger.warning(
                    "media_delete_request_failed", request_id=record.id, error=result.error
                )

        async with clients.download_manager(record.media_type) as arr:
            if arr.configured:
                await self._delete_download(arr, record)

        await save_media_requests(self.store, [item for item in requests if item.id != record.id])
        logger.info("media_request_deleted", request_id=record.id, title=record.display_title)
        return record

    async def _delete_download(self, arr: DownloadManagerClient, record: MediaRequest) -> None:
        if record.is_tv:
            if not record.imdb_id:
                return
            lookup = await arr.lookup_series(record.imdb_id)
            series = _first_with_id(lookup.json_list())
            if series is None:
                return
            result = await arr.delete_series(series["id"])
        else:
            if record.tmdb_number is None:
                return
            found = await arr.find_movie(record.tmdb_number)
            movie = _first_with_id(found.json_list())
            if movie is None:
                return
            result = await arr.delete_movie(movie["id"])
        if not result.ok:
            logger.warning(
                "media_delete_download_failed",
                request_id=record.id,
                kind=arr.kind,
                error=result.error,
            )

    # -------------------------------------------------------------------------
    # Status polling
    # -------------------------------------------------------------------------

    async def refresh_statuses(self, clients: ClientFactory) -> int:
        """Pull upstream status and download progress for approved requests.

        Returns:
            Number of records that changed.
        """
        requests = await load_media_requests(self.store)
        tracked = [
            request
            for request in requests
            if request.jellyseerr_request_id
            and request.status in {MediaStatus.APPROVED.value, MediaStatus.PENDING.value}
        ]
        if not tracked:
            return 0

        changed = 0
        async with clients.request_manager() as jellyseerr:
            if not jellyseerr.configured:
                return 0
            for request in tracked:
                result = await jellyseerr.get_request(request.jellyseerr_request_id)
                if not result.ok:
                    continue
                if await self._refresh_one(request, result.json_dict(), clients):
                    request.updated_at = self._clock()
                    changed += 1

        if changed:
            await save_media_requests(self.store, requests)
            logger.info("media_statuses_refreshed", changed=changed)
        return changed

    async def _refresh_one(
        self, request: MediaRequest, upstream: dict, clients: ClientFactory
    ) -> bool:
        before = (request.status, request.download_progress)

        external = str(upstream.get("status") or "").lower()
        if external in EXTERNAL_STATUSES:
            request.status = external

        async with clients.download_manager(request.media_type) as arr:
            if arr.configured:
                if request.is_tv:
                    await self._refresh_series(arr, request)
                else:
                    await self._refresh_movie(arr, request)

        return before != (request.status, request.download_progress)

    async def _refresh_series(self, arr: DownloadManagerClient, request: MediaRequest) -> None:
        if not request.imdb_id:
            return
        lookup = await arr.lookup_series(request.imdb_id)
        series = next(iter(lookup.json_list()), None)
        if not isinstance(series, dict):
            return
        episode_files = (series.get("statistics") or {}).get("episodeFileCount") or 0
        if episode_files > 0:
            request.status = MediaStatus.AVAILABLE.value
            request.download_progress = 100

    async def _refresh_movie(self, arr: DownloadManagerClient, request: MediaRequest) -> None:
        if request.tmdb_number is None:
            return
        found = await arr.find_movie(request.tmdb_number)
        movie = next(iter(found.json_list()), None)
        if not isinstance(movie, dict):
            return
        if movie.get("hasFile"):
            request.status = MediaStatus.AVAILABLE.value
            request.download_progress = 100
            return
        if movie.get("id") is None:
            return
        queue = await arr.queue(movie["id"])
        body = queue.body if queue.ok else None
        records = body.get("records", []) if isinstance(body, dict) else queue.json_list()
        progress = queue_progress(records)
        if progress is not None:
            request.download_progress = progress
