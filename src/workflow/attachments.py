"""Payment slip attachments.

A slip is either a ``data:image/...;base64,`` URI uploaded through the
dashboard or a URL (absolute, or relative to the dashboard) pointing at an
image or a PDF.
"""

import base64
import binascii
import re
from dataclasses import dataclass

import httpx
import structlog

from src.clients.base import normalize_url

logger = structlog.get_logger(__name__)

DATA_URI_PATTERN = re.compile(r"^data:(image/[a-zA-Z0-9.+-]+);base64,(.+)$", re.DOTALL)

SLIP_DOCUMENT_NAME = "slip.pdf"


@dataclass
class Attachment:
    """Slip content ready to upload."""

    content: bytes
    filename: str
    is_photo: bool


def decode_data_uri(value: str) -> Attachment | None:
    """Decode a base64 image data URI, or None when it is not one."""
    match = DATA_URI_PATTERN.match(value or "")
    if not match:
        return None
    mime, payload = match.groups()
    try:
        content = base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError):
        return None
    extension = mime.split("/", 1)[1] or "jpg"
    return Attachment(content=content, filename=f"slip.{extension}", is_photo=True)


def resolve_slip_url(slip_url: str, dashboard_url: str) -> str:
    if slip_url.startswith(("http://", "https://")):
        return slip_url
    path = slip_url if slip_url.startswith("/") else f"/{slip_url}"
    return f"{normalize_url(dashboard_url)}{path}"


class SlipLoader:
    """Turns a slip reference into an uploadable attachment."""

    def __init__(self, http: httpx.AsyncClient, dashboard_url: str):
        self.http = http
        self.dashboard_url = dashboard_url

    async def load(self, slip: str) -> Attachment | None:
        """Return the attachment, or None when there is none or it cannot be fetched."""
        if not slip:
            return None
        if slip.startswith("data:"):
            attachment = decode_data_uri(slip)
            if attachment is None:
                logger.warning("slip_data_invalid")
            return attachment

        url = resolve_slip_url(slip, self.dashboard_url)
        try:
            response = await self.http.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("slip_fetch_failed", url=url, error=str(e) or type(e).__name__)
            return None

        content_type = response.headers.get("content-type", "")
        if content_type.startswith("image/"):
            return Attachment(content=response.content, filename="slip.jpg", is_photo=True)
        return Attachment(content=response.content, filename=SLIP_DOCUMENT_NAME, is_photo=False)
