"""HTTP bindings for a generation service exposing a small REST surface.

Endpoints used:

- ``POST /generations`` with ``{"prompt": ...}`` submits one input;
- ``GET /results`` lists ``[{"id": ..., "ready": bool}, ...]`` in presentation order;
- ``GET /results/{id}/content`` returns the raw artifact bytes.
"""

from __future__ import annotations

import logging
from urllib.parse import quote

import httpx

from genbatch.errors import FetchError, SubmitError
from genbatch.models import Payload

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 2
DEFAULT_USER_AGENT = "genbatch/0.1 (+batch generation driver)"


class HttpGenerationClient:
    """InputInjector, ResultObserver and ResultFetcher over one httpx client."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        base_headers = {"User-Agent": DEFAULT_USER_AGENT}
        if headers:
            base_headers.update(headers)
        self._client = httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=base_headers,
            transport=transport or httpx.HTTPTransport(retries=max_retries),
            follow_redirects=True,
        )

    def submit(self, text: str) -> None:
        try:
            response = self._client.post("/generations", json={"prompt": text})
        except httpx.HTTPError as exc:
            raise SubmitError(f"Submit request failed: {exc}") from exc
        if not response.is_success:
            raise SubmitError(f"HTTP {response.status_code}: {response.text[:200]}")

    def observe(self) -> tuple[str, ...]:
        """List ready result ids; an unreachable service reads as an empty set."""

        try:
            response = self._client.get("/results")
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as exc:
            logger.warning("Observing results failed: %s", exc)
            return ()
        except ValueError as exc:
            logger.warning("Results listing is not valid JSON: %s", exc)
            return ()

        items = payload.get("results", []) if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            return ()
        return tuple(
            str(item["id"])
            for item in items
            if isinstance(item, dict) and item.get("id") and item.get("ready", True)
        )

    def fetch(self, result_id: str) -> Payload:
        path = f"/results/{quote(result_id, safe='')}/content"
        try:
            response = self._client.get(path)
        except httpx.TimeoutException as exc:
            raise FetchError(f"Timeout fetching {result_id}") from exc
        except httpx.HTTPError as exc:
            raise FetchError(f"HTTP error fetching {result_id}: {exc}") from exc
        if not response.is_success:
            raise FetchError(f"HTTP {response.status_code} fetching {result_id}")
        if not response.content:
            raise FetchError(f"Empty content for {result_id}")
        return Payload(
            data=response.content,
            media_type=response.headers.get("content-type", "application/octet-stream"),
            source_id=result_id,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpGenerationClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
