from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest

from post_repair.core.deadline import Deadline
from post_repair.schemas.posts import Author, CrossReferenceMirrorPatch, UrlMirrorPatch
from post_repair.services.search_index import (
    SearchIndexClient,
    SearchIndexError,
    SearchIndexUnavailableError,
    build_bulk_update,
)

AUTHOR_SOURCE = {
    "uuid": "author-1",
    "email": "rina@example.com",
    "name": "Rina",
    "key": "rina",
    "avatar": "https://cdn.example.com/rina.png",
    "is_brand": False,
}


def _client(handler: Any, **kwargs: Any) -> SearchIndexClient:
    return SearchIndexClient(
        "https://search.example.com/",
        username="admin",
        password="secret",
        author_index="one-author-index",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def test_build_bulk_update_emits_ndjson_update_action() -> None:
    body = build_bulk_update("one-post-index", "post-1", UrlMirrorPatch.for_url("https://x/a-b-c"))
    lines = body.split("\n")

    assert body.endswith("\n")
    assert json.loads(lines[0]) == {"update": {"_id": "post-1", "_index": "one-post-index"}}
    assert json.loads(lines[1]) == {
        "doc": {"article_url": "https://x/a-b-c", "article_url_amp": "https://x/a-b-c/amp"},
    }


def test_update_document_posts_bulk_request_with_auth() -> None:
    captured: dict[str, Any] = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        captured["method"] = request.method
        captured["path"] = request.url.path
        captured["content_type"] = request.headers["content-type"]
        captured["authorization"] = request.headers.get("authorization")
        captured["body"] = request.content.decode("utf-8")
        return httpx.Response(200, json={"took": 3, "errors": False, "items": [{"update": {"status": 200}}]})

    patch = CrossReferenceMirrorPatch.for_url("https://x/a-rina-1", authors=[Author(**AUTHOR_SOURCE)])
    asyncio.run(_client(handler).update_document("one-post-index", "post-1", patch))

    assert captured["method"] == "POST"
    assert captured["path"] == "/_bulk"
    assert captured["content_type"] == "application/x-ndjson"
    assert captured["authorization"].startswith("Basic ")
    document = json.loads(captured["body"].split("\n")[1])["doc"]
    assert document["authors"] == [AUTHOR_SOURCE]
    assert document["article_url_amp"] == "https://x/a-rina-1/amp"


def test_update_document_raises_on_bulk_item_errors() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "errors": True,
                "items": [{"update": {"status": 404, "error": {"type": "document_missing_exception"}}}],
            },
        )

    with pytest.raises(SearchIndexError, match="document_missing_exception"):
        asyncio.run(_client(handler).update_document("one-post-index", "post-1", UrlMirrorPatch.for_url("https://x/a-b-c")))


def test_update_document_raises_on_http_error_status() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="cluster blocked")

    with pytest.raises(SearchIndexError, match="503"):
        asyncio.run(_client(handler).update_document("one-post-index", "post-1", UrlMirrorPatch.for_url("https://x/a-b-c")))


def test_get_author_returns_source_document() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/one-author-index/_doc/author-1"
        return httpx.Response(
            200,
            json={"_index": "one-author-index", "_id": "author-1", "found": True, "_source": AUTHOR_SOURCE},
        )

    author = asyncio.run(_client(handler).get_author("author-1"))
    assert author == Author(**AUTHOR_SOURCE)


def test_get_author_distinguishes_not_found_from_transport_error() -> None:
    async def missing(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"_index": "one-author-index", "_id": "nobody", "found": False})

    async def broken(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    assert asyncio.run(_client(missing).get_author("nobody")) is None
    with pytest.raises(SearchIndexError, match="connection refused"):
        asyncio.run(_client(broken).get_author("nobody"))


def test_get_author_treats_found_false_as_missing() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"found": False})

    assert asyncio.run(_client(handler).get_author("author-1")) is None


def test_calls_fail_fast_after_run_deadline() -> None:
    calls: list[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        return httpx.Response(200, json={"found": True, "_source": AUTHOR_SOURCE})

    deadline = Deadline(1.0, clock=iter([0.0, 5.0, 5.0]).__next__)
    with pytest.raises(SearchIndexError, match="deadline"):
        asyncio.run(_client(handler, deadline=deadline).get_author("author-1"))
    assert calls == []


def test_ping_reports_unreachable_cluster() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": "unauthorized"})

    with pytest.raises(SearchIndexUnavailableError, match="401"):
        asyncio.run(_client(handler).ping())


def test_get_author_quotes_id_into_a_single_path_segment() -> None:
    seen: list[bytes] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.raw_path)
        return httpx.Response(404, json={"found": False})

    assert asyncio.run(_client(handler).get_author("legacy/42 a")) is None
    assert seen == [b"/one-author-index/_doc/legacy%2F42%20a"]
