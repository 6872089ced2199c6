"""Tests for the HTTP generation service bindings."""

from __future__ import annotations

import json

import allure
import httpx
import pytest

from genbatch.errors import FetchError, SubmitError
from genbatch.executor.http import HttpGenerationClient

pytestmark = [
    allure.epic("Batch Generation"),
    allure.feature("Generation Service Bindings"),
]


def _client(handler) -> HttpGenerationClient:
    return HttpGenerationClient("http://gen.local", transport=httpx.MockTransport(handler))


class TestSubmit:
    def test_posts_prompt_as_json(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(202, json={"accepted": True})

        with _client(handler) as client:
            client.submit("A red fox")

        assert seen[0].method == "POST"
        assert seen[0].url.path == "/generations"
        assert json.loads(seen[0].content) == {"prompt": "A red fox"}

    def test_rejected_submit_raises(self):
        with _client(lambda _: httpx.Response(503, text="overloaded")) as client:
            with pytest.raises(SubmitError, match="HTTP 503"):
                client.submit("x")

    def test_connection_error_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with _client(handler) as client:
            with pytest.raises(SubmitError, match="Submit request failed"):
                client.submit("x")


class TestObserve:
    def test_lists_ready_ids_in_order(self):
        payload = [
            {"id": "r2", "ready": True},
            {"id": "r1", "ready": True},
            {"id": "r3", "ready": False},
            {"ready": True},
        ]
        with _client(lambda _: httpx.Response(200, json=payload)) as client:
            assert client.observe() == ("r2", "r1")

    def test_accepts_wrapped_listing(self):
        payload = {"results": [{"id": "r1"}, {"id": "r2"}]}
        with _client(lambda _: httpx.Response(200, json=payload)) as client:
            assert client.observe() == ("r1", "r2")

    def test_unreachable_service_reads_as_empty(self):
        with _client(lambda _: httpx.Response(500)) as client:
            assert client.observe() == ()

    def test_invalid_json_reads_as_empty(self):
        with _client(lambda _: httpx.Response(200, text="<html>")) as client:
            assert client.observe() == ()


class TestFetch:
    def test_returns_payload_with_media_type(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.raw_path == b"/results/r%201/content"
            return httpx.Response(200, content=b"\x89PNG", headers={"content-type": "image/png"})

        with _client(handler) as client:
            payload = client.fetch("r 1")

        assert payload.data == b"\x89PNG"
        assert payload.media_type == "image/png"
        assert payload.source_id == "r 1"

    def test_missing_result_raises(self):
        with _client(lambda _: httpx.Response(404)) as client:
            with pytest.raises(FetchError, match="HTTP 404"):
                client.fetch("gone")

    def test_empty_body_raises(self):
        with _client(lambda _: httpx.Response(200, content=b"")) as client:
            with pytest.raises(FetchError, match="Empty content"):
                client.fetch("r1")

    def test_timeout_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        with _client(handler) as client:
            with pytest.raises(FetchError, match="Timeout fetching r1"):
                client.fetch("r1")
