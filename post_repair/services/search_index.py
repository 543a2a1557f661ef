from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError

from post_repair.core.config import Settings
from post_repair.core.deadline import Deadline, DeadlineExceededError
from post_repair.schemas.posts import Author

NDJSON_CONTENT_TYPE = "application/x-ndjson"


class SearchIndexError(Exception):
    """Raised when a search index request fails or is rejected."""


class SearchIndexUnavailableError(SearchIndexError):
    """Raised when the search cluster cannot be reached."""


class SearchIndexClient:
    def __init__(
        self,
        base_url: str,
        *,
        username: str | None = None,
        password: str | None = None,
        author_index: str = "one-author-index",
        verify_tls: bool = True,
        call_timeout_seconds: float = 10.0,
        deadline: Deadline | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.auth = httpx.BasicAuth(username, password or "") if username else None
        self.author_index = author_index
        self.verify_tls = verify_tls
        self.call_timeout_seconds = call_timeout_seconds
        self.deadline = deadline
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings, *, deadline: Deadline | None = None) -> SearchIndexClient:
        return cls(
            settings.os_host,
            username=settings.os_username,
            password=settings.os_password,
            author_index=settings.author_index,
            verify_tls=settings.os_verify_tls,
            call_timeout_seconds=settings.request_timeout_seconds,
            deadline=deadline,
        )

    async def ping(self) -> None:
        try:
            async with self._client() as client:
                response = await client.get("/")
        except (httpx.HTTPError, DeadlineExceededError) as exc:
            raise SearchIndexUnavailableError(f"search index unreachable at {self.base_url}: {exc}") from exc
        if response.status_code != 200:
            raise SearchIndexUnavailableError(f"search index ping failed with status {response.status_code}")

    async def update_document(self, index: str, doc_id: str, patch: BaseModel) -> None:
        """Apply ``patch`` as a partial document update through the bulk API."""
        body = build_bulk_update(index, doc_id, patch)
        with _translate_errors("bulk update"):
            async with self._client() as client:
                response = await client.post(
                    "/_bulk",
                    content=body,
                    headers={"Content-Type": NDJSON_CONTENT_TYPE},
                )
                response.raise_for_status()
                payload = response.json()

        if isinstance(payload, dict) and payload.get("errors"):
            raise SearchIndexError(f"bulk update rejected for {index}/{doc_id}: {_first_bulk_error(payload)}")

    async def get_author(self, author_id: str) -> Author | None:
        """Return the author document, or ``None`` when the index has no such id."""
        doc_id = quote(author_id, safe="")
        with _translate_errors("author lookup"):
            async with self._client() as client:
                response = await client.get(f"/{self.author_index}/_doc/{doc_id}")
                if response.status_code == 404:
                    return None
                response.raise_for_status()
                payload = response.json()

        if not isinstance(payload, dict) or not payload.get("found") or not payload.get("_source"):
            return None
        try:
            return Author.model_validate(payload["_source"])
        except ValidationError as exc:
            raise SearchIndexError(f"malformed author document {author_id}: {exc}") from exc

    def _client(self) -> httpx.AsyncClient:
        timeout = self.call_timeout_seconds
        if self.deadline is not None:
            timeout = self.deadline.timeout_for(self.call_timeout_seconds)
        return httpx.AsyncClient(
            base_url=self.base_url,
            auth=self.auth,
            timeout=timeout,
            verify=self.verify_tls,
            transport=self._transport,
        )


def build_bulk_update(index: str, doc_id: str, patch: BaseModel) -> str:
    action = {"update": {"_id": doc_id, "_index": index}}
    document = {"doc": patch.model_dump(mode="json")}
    return json.dumps(action) + "\n" + json.dumps(document) + "\n"


def _first_bulk_error(payload: dict[str, Any]) -> str:
    for item in payload.get("items") or []:
        if not isinstance(item, dict):
            continue
        action = item.get("update") or item.get("index") or {}
        error = action.get("error")
        if error:
            return json.dumps(error) if not isinstance(error, str) else error
    return "unknown bulk error"


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except httpx.HTTPStatusError as exc:
        raise SearchIndexError(
            f"{operation} failed with status {exc.response.status_code}: {exc.response.text}"
        ) from exc
    except (httpx.HTTPError, DeadlineExceededError, ValueError) as exc:
        raise SearchIndexError(f"{operation} failed: {str(exc) or type(exc).__name__}") from exc
