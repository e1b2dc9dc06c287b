"""Shared plumbing for the thin HTTP service clients.

Every call returns an ``ApiResult`` instead of raising: callers inspect
``ok`` / ``status`` to pick a fallback (PUT after POST, alternate base path)
or to skip one unit of work.
"""

import re
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

logger = structlog.get_logger(__name__)

# =============================================================================
# Constants
# =============================================================================

REQUEST_TIMEOUT = 15.0

# Reverse proxies in front of the services answer rejected calls with
# "... public base URL of /emby ..." when the configured URL lacks the prefix
PUBLIC_BASE_PATTERN = re.compile(r"public base URL of\s+(\S+)", re.IGNORECASE)


# =============================================================================
# Result type
# =============================================================================


@dataclass
class ApiResult:
    """Outcome of one HTTP call.

    Attributes:
        ok: True for a 2xx response.
        status: HTTP status code, 0 when no response was received.
        body: Decoded JSON body, or None.
        text: Raw response text or transport error message.
    """

    ok: bool
    status: int
    body: Any = None
    text: str = ""

    @classmethod
    def failure(cls, message: str, status: int = 0) -> "ApiResult":
        return cls(ok=False, status=status, body=None, text=message)

    @property
    def error(self) -> str:
        """Short description for logs and admin-facing messages."""
        if self.ok:
            return ""
        return self.text or f"HTTP {self.status}"

    def json_list(self) -> list:
        """Body as a list, empty when the call failed or returned something else."""
        return self.body if self.ok and isinstance(self.body, list) else []

    def json_dict(self) -> dict:
        return self.body if self.ok and isinstance(self.body, dict) else {}


NOT_CONFIGURED = "not_configured"


# =============================================================================
# Helpers
# =============================================================================


def normalize_url(value: str | None) -> str:
    """Strip whitespace and trailing slashes from a base URL."""
    return str(value or "").strip().rstrip("/")


def extract_public_base(text: str | None) -> str:
    """Find the externally mounted base path in a rejection message.

    Returns:
        Path such as ``/emby`` (leading slash, no trailing slash) or "".
    """
    if not text:
        return ""
    match = PUBLIC_BASE_PATTERN.search(text)
    if not match:
        return ""
    raw = match.group(1).replace("'", "").replace('"', "")
    if not raw:
        return ""
    normalized = raw if raw.startswith("/") else f"/{raw}"
    return normalized.rstrip("/")


# =============================================================================
# Base Client
# =============================================================================


class ServiceClient:
    """Async HTTP client for one configured upstream service.

    Use as an async context manager. An unconfigured client (no URL or key)
    answers every call with a failed result instead of touching the network.
    """

    service_name = "service"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = REQUEST_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            base_url: Service URL as configured by the admin.
            api_key: Service API key.
            timeout: HTTP request timeout in seconds.
            transport: Optional httpx transport (tests use ``httpx.MockTransport``).
        """
        self.base_url = normalize_url(base_url)
        self.api_key = str(api_key or "").strip()
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "ServiceClient":
        self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self

    async def __aexit__(
        self,
        _exc_type: type[BaseException] | None,
        _exc_val: BaseException | None,
        _exc_tb: Any,
    ) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get HTTP client, raising if not in context."""
        if self._client is None:
            raise RuntimeError(f"{type(self).__name__} must be used as async context manager")
        return self._client

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    def _headers(self) -> dict[str, str]:
        return {"Accept": "application/json"}

    def _params(self) -> dict[str, str]:
        return {}

    async def _send(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> ApiResult:
        try:
            response = await self.client.request(
                method,
                url,
                params={**self._params(), **(params or {})},
                json=json,
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            logger.warning(
                "service_request_failed",
                service=self.service_name,
                method=method,
                url=url,
                error=str(e) or type(e).__name__,
            )
            return ApiResult.failure(str(e) or type(e).__name__)

        text = response.text
        body = None
        if text:
            try:
                body = response.json()
            except ValueError:
                body = None

        if not response.is_success:
            logger.warning(
                "service_request_rejected",
                service=self.service_name,
                method=method,
                url=url,
                status=response.status_code,
            )
        return ApiResult(ok=response.is_success, status=response.status_code, body=body, text=text)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        base_fallback: bool = False,
    ) -> ApiResult:
        """Call ``path`` on the service.

        With ``base_fallback``, a rejected call whose body names the service's
        public base path is retried once at ``base + public_base + path``.
        """
        if not self.configured:
            return ApiResult.failure(NOT_CONFIGURED)

        result = await self._send(method, f"{self.base_url}{path}", params=params, json=json)
        if result.ok or not base_fallback:
            return result

        public_base = extract_public_base(result.text)
        if not public_base:
            return result

        logger.info(
            "service_public_base_retry",
            service=self.service_name,
            public_base=public_base,
            path=path,
        )
        return await self._send(
            method, f"{self.base_url}{public_base}{path}", params=params, json=json
        )
