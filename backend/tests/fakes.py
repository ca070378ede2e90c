from __future__ import annotations

from typing import List

import httpx

from backend.carbitrage.services.firecrawl_client import FirecrawlResult


class FakeTransport:
    def __init__(self, responses):
        self._responses = list(responses)
        self.calls = []
        self.payloads = []

    async def post(self, path, json, headers, timeout):
        if not self._responses:
            raise AssertionError("No more responses configured")
        response = self._responses.pop(0)
        self.calls.append(path)
        self.payloads.append(json)
        if isinstance(response, Exception):
            raise response
        return response

    async def close(self):
        return None


class FakeFirecrawlClient:
    def __init__(self, results: List[FirecrawlResult | Exception]):
        self._results = list(results)
        self.urls: List[str] = []
        self.closed = False

    async def fetch(self, url: str, **kwargs) -> FirecrawlResult:
        self.urls.append(url)
        if not self._results:
            raise AssertionError("No fake results remaining")
        result = self._results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def aclose(self) -> None:
        self.closed = True


def make_response(status_code: int, body: dict) -> httpx.Response:
    request = httpx.Request("POST", "https://api.firecrawl.dev")
    return httpx.Response(status_code=status_code, json=body, request=request)


def html_result(url: str, html: str) -> FirecrawlResult:
    return FirecrawlResult(url=url, markdown=None, html=html, raw_html=None, metadata={})
