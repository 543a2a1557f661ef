from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

import pytest

from post_repair import main as entrypoint
from post_repair.core.config import Settings
from post_repair.schemas.posts import Post
from post_repair.services.repository import RepositoryError, RepositoryUnavailableError
from post_repair.services.search_index import SearchIndexUnavailableError


class FakeRepository:
    def __init__(self, posts: list[Post] | None = None) -> None:
        self.posts = posts or []
        self.connect_error: Exception | None = None
        self.fetch_error: Exception | None = None
        self.closed = False

    async def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error

    async def close(self) -> None:
        self.closed = True

    async def get_posts_by_created_at(self, start_at: datetime, end_at: datetime) -> list[Post]:
        if self.fetch_error is not None:
            raise self.fetch_error
        return self.posts

    async def get_author_key_by_post_id(self, post_id: str) -> str | None:
        return None if post_id == "orphan" else "newkey"

    async def update_post_url(self, post_id: str, full_url: str) -> None:
        return None


class FakeSearchIndex:
    def __init__(self) -> None:
        self.ping_error: Exception | None = None
        self.updates: list[str] = []

    async def ping(self) -> None:
        if self.ping_error is not None:
            raise self.ping_error

    async def update_document(self, index: str, doc_id: str, patch: Any) -> None:
        self.updates.append(doc_id)


def _settings() -> Settings:
    return Settings(_env_file=None, post_index="test-index", post_chunk_size=2, run_timeout_seconds=0)


def _run(argv: list[str], repository: FakeRepository, search_index: FakeSearchIndex) -> int:
    args = entrypoint.build_parser().parse_args(argv)
    return asyncio.run(entrypoint.run(args, _settings(), repository=repository, search_index=search_index))


def _post(post_id: str) -> Post:
    return Post(
        id=post_id,
        full_url=f"https://example.com/post-{post_id}-oldkey-1",
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


def test_parser_reads_fix_url_window() -> None:
    args = entrypoint.build_parser().parse_args(["fix-url", "2024-01-01", "2024-01-31T23:59:59"])

    assert args.command == "fix-url"
    assert args.start_at == datetime(2024, 1, 1)
    assert args.end_at == datetime(2024, 1, 31, 23, 59, 59)


def test_parser_accepts_cross_reference_without_arguments() -> None:
    args = entrypoint.build_parser().parse_args(["fix-cross-reference"])
    assert args.command == "fix-cross-reference"


@pytest.mark.parametrize(
    "argv",
    [
        [],
        ["fix-url"],
        ["fix-url", "2024-01-01"],
        ["fix-url", "yesterday", "today"],
        ["fix-url", "2024-02-01", "2024-01-01"],
        ["fix-url", "2024-01-01T00:00:00Z", "2024-01-02"],
    ],
)
def test_main_rejects_bad_arguments(argv: list[str]) -> None:
    with pytest.raises(SystemExit) as exc_info:
        entrypoint.main(argv)
    assert exc_info.value.code == 2


def test_run_exits_cleanly_and_prints_unfixed_posts(capsys) -> None:
    repository = FakeRepository([_post("1"), _post("orphan"), _post("3")])
    search_index = FakeSearchIndex()

    exit_code = _run(["fix-url", "2024-01-01", "2024-01-02"], repository, search_index)

    output = capsys.readouterr().out
    assert exit_code == 0
    assert repository.closed
    assert search_index.updates == ["1", "3"]
    assert "UNFIXED:" in output
    assert "Error fixing post with ID orphan" in output
    assert "1 item(s) could not be repaired" in output


def test_run_clean_batch_prints_empty_unfixed_list(capsys) -> None:
    exit_code = _run(["fix-url", "2024-01-01", "2024-01-02"], FakeRepository([_post("1")]), FakeSearchIndex())

    output = capsys.readouterr().out
    assert exit_code == 0
    assert "UNFIXED: []" in output
    assert "could not be repaired" not in output


def test_run_aborts_when_database_is_unreachable() -> None:
    repository = FakeRepository()
    repository.connect_error = RepositoryUnavailableError("database unavailable at db:5432")
    search_index = FakeSearchIndex()

    assert _run(["fix-url", "2024-01-01", "2024-01-02"], repository, search_index) == 1
    assert repository.closed


def test_run_aborts_when_search_index_is_unreachable() -> None:
    search_index = FakeSearchIndex()
    search_index.ping_error = SearchIndexUnavailableError("search index ping failed with status 401")

    assert _run(["fix-cross-reference"], FakeRepository(), search_index) == 1


def test_run_aborts_when_candidates_cannot_be_loaded() -> None:
    repository = FakeRepository()
    repository.fetch_error = RepositoryError("fetch posts by created_at failed: relation does not exist")

    assert _run(["fix-url", "2024-01-01", "2024-01-02"], repository, FakeSearchIndex()) == 1
    assert repository.closed
