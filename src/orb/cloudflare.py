"""Thin synchronous client for the Cloudflare v4 REST API."""

from types import TracebackType
from typing import Any, Literal

import httpx

from .common.exceptions import (
    CloudflareAPIError,
    CloudflareAuthError,
    CloudflareRateLimitError,
)
from .common.logging import get_logger
from .common.utils import mask_sensitive_data
from .config import DEFAULT_API_BASE

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 30.0
PAGE_SIZE = 100


class CloudflareClient:
    """Bearer-token client that unwraps Cloudflare's response envelope.

    Every response is ``{"success": bool, "errors": [...], "result": ...}``;
    :meth:`request` returns ``result`` or raises a typed error.
    """

    def __init__(
        self,
        api_token: str,
        base_url: str = DEFAULT_API_BASE,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            api_token: Cloudflare API token
            base_url: API root, ending in ``/client/v4/``
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        if not api_token:
            raise ValueError("Cloudflare API token cannot be empty")
        self._http = httpx.Client(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {api_token}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )
        logger.debug(
            "Cloudflare client initialized",
            base_url=base_url,
            token=mask_sensitive_data(api_token),
        )

    def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        """Send one API request and return the unwrapped ``result``.

        Raises:
            CloudflareAuthError: On HTTP 401/403
            CloudflareRateLimitError: On HTTP 429
            CloudflareAPIError: On any other failure; transport failures on
                writes are flagged ``in_doubt``
        """
        try:
            response = self._http.request(method, path, params=params, json=json)
        except httpx.TransportError as e:
            in_doubt = method.upper() != "GET" and not isinstance(e, httpx.ConnectError)
            logger.warning(
                "Cloudflare request failed", method=method, path=path, error=str(e)
            )
            raise CloudflareAPIError(
                f"{method} {path} failed: {e}", in_doubt=in_doubt
            ) from e

        return self._unwrap(method, path, response)

    def paginate(
        self, path: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Collect every page of a list endpoint."""
        items: list[dict[str, Any]] = []
        page = 1
        while True:
            query = dict(params or {}, page=page, per_page=PAGE_SIZE)
            response = self._http_get(path, query)
            body = self._unwrap("GET", path, response)
            items.extend(body or [])
            info = response.json().get("result_info") or {}
            total_pages = info.get("total_pages") or 1
            if page >= total_pages or not body:
                return items
            page += 1

    def _http_get(self, path: str, params: dict[str, Any]) -> httpx.Response:
        try:
            return self._http.get(path, params=params)
        except httpx.TransportError as e:
            raise CloudflareAPIError(f"GET {path} failed: {e}") from e

    @staticmethod
    def _unwrap(method: str, path: str, response: httpx.Response) -> Any:
        try:
            body = response.json()
        except ValueError:
            body = {}

        errors = (body.get("errors") or []) if isinstance(body, dict) else []
        codes = [int(err["code"]) for err in errors if isinstance(err, dict) and "code" in err]
        detail = "; ".join(
            f"{err.get('code')}: {err.get('message')}" for err in errors if isinstance(err, dict)
        ) or response.reason_phrase

        if response.status_code in (401, 403):
            raise CloudflareAuthError(
                f"Cloudflare rejected the API token for {method} {path}: {detail}",
                status_code=response.status_code,
                codes=codes,
            )
        if response.status_code == 429:
            raise CloudflareRateLimitError(
                f"Cloudflare rate limit exceeded for {method} {path}",
                status_code=429,
                codes=codes,
            )
        if response.is_error or not isinstance(body, dict) or not body.get("success", False):
            raise CloudflareAPIError(
                f"{method} {path} failed ({response.status_code}): {detail}",
                status_code=response.status_code,
                codes=codes,
            )
        return body.get("result")

    def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        self._http.close()

    def __enter__(self) -> "CloudflareClient":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> Literal[False]:
        self.close()
        return False
