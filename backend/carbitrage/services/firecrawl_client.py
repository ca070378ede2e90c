from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx

from backend.carbitrage.core.settings import settings

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class FirecrawlError(Exception):
    """Base exception for Firecrawl errors."""


class FirecrawlRetryableError(FirecrawlError):
    """Raised when retryable HTTP statuses/errors outlast the attempt budget."""


@dataclass
class FirecrawlResult:
    url: str
    markdown: Optional[str]
    html: Optional[str]
    raw_html: Optional[str]
    metadata: Dict[str, Any]
    status_code: Optional[int] = None

    @property
    def best_content(self) -> str:
        if self.html:
            return self.html
        if self.raw_html:
            return self.raw_html
        if self.markdown:
            return self.markdown
        return ""


class AsyncTransport(Protocol):
    async def post(
        self,
        path: str,
        json: Dict[str, Any],
        headers: Dict[str, str],
        timeout: float,
    ) -> httpx.Response: ...

    async def close(self) -> None: ...


class HttpxTransport:
    """httpx-based transport with connection pooling."""

    def __init__(self, base_url: str):
        self._client = httpx.AsyncClient(base_url=base_url, timeout=None)

    async def post(
        self,
        path: str,
        json: Dict[str, Any],
        headers: Dict[str, str],
        timeout: float,
    ) -> httpx.Response:
        return await self._client.post(path, json=json, headers=headers, timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()


def _build_scrape_options(formats: Optional[list[str]] = None, wait_for: Optional[int] = None) -> Dict[str, Any]:
    opts: Dict[str, Any] = {
        "onlyMainContent": False,
        "removeBase64Images": True,
        "blockAds": True,
    }
    if formats:
        opts["formats"] = formats
    if wait_for:
        opts["waitFor"] = wait_for
    return opts


class FirecrawlClient:
    """Thin async client against the Firecrawl scrape endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        max_attempts: Optional[int] = None,
        backoff_base: float = 1.0,
        transport: Optional[AsyncTransport] = None,
    ):
        self.api_key = api_key or settings.firecrawl_api_key
        self.base_url = (base_url or settings.firecrawl_base_url).rstrip("/")
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts or settings.fetch_max_attempts)
        self.backoff_base = backoff_base
        self._transport = transport or HttpxTransport(self.base_url)
        self._owns_transport = transport is None
        self._headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

    async def aclose(self) -> None:
        if self._owns_transport:
            await self._transport.close()

    async def fetch(self, url: str, *, wait_for: Optional[int] = None) -> FirecrawlResult:
        payload = {
            "url": url,
            **_build_scrape_options(["markdown", "html"], wait_for=wait_for),
        }
        body = await self._post("/v1/scrape", payload)
        if not body.get("success"):
            raise FirecrawlError(body.get("error", "Firecrawl scrape failed"))
        data = body.get("data") or {}
        metadata = self._normalize_metadata(data.get("metadata"))
        status_code = metadata.get("statusCode")
        return FirecrawlResult(
            url=url,
            markdown=data.get("markdown"),
            html=data.get("html"),
            raw_html=data.get("rawHtml") or data.get("raw_html"),
            metadata=metadata,
            status_code=int(status_code) if isinstance(status_code, (int, str)) and str(status_code).isdigit() else None,
        )

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        attempts = 0
        last_error: Optional[Exception] = None
        while attempts < self.max_attempts:
            try:
                response = await self._transport.post(path, json=payload, headers=self._headers, timeout=self.timeout)
            except httpx.RequestError as exc:
                last_error = exc
                attempts += 1
                logger.warning("Firecrawl %s request error (attempt %s/%s): %s", path, attempts, self.max_attempts, exc)
                await self._maybe_wait(attempts)
                continue

            if response.status_code in RETRYABLE_STATUS:
                last_error = FirecrawlRetryableError(f"Firecrawl returned {response.status_code} for {path}")
                attempts += 1
                logger.warning("Firecrawl %s returned %s (attempt %s/%s)", path, response.status_code, attempts, self.max_attempts)
                await self._maybe_wait(attempts)
                continue

            try:
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise FirecrawlError(str(exc)) from exc

            try:
                return response.json()
            except ValueError as exc:
                raise FirecrawlError("Invalid JSON from Firecrawl") from exc

        if isinstance(last_error, FirecrawlError):
            raise last_error
        if last_error:
            raise FirecrawlRetryableError(str(last_error)) from last_error
        raise FirecrawlError("Firecrawl request failed")

    async def _maybe_wait(self, attempt: int) -> None:
        # linear backoff: base, 2*base, 3*base ...
        if attempt >= self.max_attempts:
            return
        await asyncio.sleep(self.backoff_base * attempt)

    @staticmethod
    def _normalize_metadata(metadata: Any) -> Dict[str, Any]:
        if isinstance(metadata, dict):
            return {k: v for k, v in metadata.items() if v is not None}
        return {}
