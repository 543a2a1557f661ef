from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from pydantic import ValidationError

from post_repair.core.config import Settings
from post_repair.core.deadline import Deadline
from post_repair.schemas.posts import BrokenRecord, Post

logger = logging.getLogger(__name__)

BACKLOG_TABLE = "temp_popmama_csc"

_POST_COLUMNS = """
  p.id::text as id,
  p.title,
  p.key,
  p.full_url,
  p.created_by::text as created_by,
  p.created_at,
  p.author_id::text as author_id
"""

_DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError, TimeoutError)
_BACKLOG_IDENTITY_COLUMNS = ("old_id", "author_id", "created_by")


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database cannot be reached."""


@dataclass(slots=True)
class PostTransaction:
    connection: Any
    transaction: Any
    closed: bool = False


class PostRepository:
    def __init__(
        self,
        *,
        host: str,
        port: int,
        user: str,
        password: str,
        database: str,
        max_pool_size: int = 2,
        call_timeout_seconds: float = 10.0,
        deadline: Deadline | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.database = database
        self.max_pool_size = max(1, max_pool_size)
        self.call_timeout_seconds = call_timeout_seconds
        self.deadline = deadline
        self._pool: asyncpg.Pool | None = None

    @classmethod
    def from_settings(cls, settings: Settings, *, deadline: Deadline | None = None) -> PostRepository:
        return cls(
            host=settings.db_host,
            port=settings.db_port,
            user=settings.db_username,
            password=settings.db_pass,
            database=settings.db_name,
            max_pool_size=settings.db_pool_max_size,
            call_timeout_seconds=settings.request_timeout_seconds,
            deadline=deadline,
        )

    async def connect(self) -> None:
        if self._pool is not None:
            return
        try:
            self._pool = await asyncpg.create_pool(
                host=self.host,
                port=self.port,
                user=self.user,
                password=self.password,
                database=self.database,
                min_size=1,
                max_size=self.max_pool_size,
                timeout=self.call_timeout_seconds,
                command_timeout=self.call_timeout_seconds,
            )
            await self._pool.fetchval("select 1", timeout=self.call_timeout_seconds)
        except Exception as exc:  # pragma: no cover - depends on environment
            await self.close()
            raise RepositoryUnavailableError(f"database unavailable at {self.host}:{self.port}") from exc

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def begin(self) -> PostTransaction:
        pool = self._get_pool()
        with _translate_errors("begin transaction"):
            connection = await pool.acquire(timeout=self._timeout())
            try:
                transaction = connection.transaction()
                await asyncio.wait_for(transaction.start(), timeout=self._timeout())
            except BaseException:
                await pool.release(connection)
                raise
        return PostTransaction(connection=connection, transaction=transaction)

    async def commit(self, txn: PostTransaction) -> None:
        await self._finish(txn, commit=True)

    async def rollback(self, txn: PostTransaction) -> None:
        await self._finish(txn, commit=False)

    async def get_posts_by_created_at(self, start_at: datetime, end_at: datetime) -> list[Post]:
        pool = self._get_pool()
        with _translate_errors("fetch posts by created_at"):
            rows = await pool.fetch(
                f"""
                select
                  {_POST_COLUMNS}
                from posts p
                where p.created_at >= $1
                  and p.created_at <= $2
                order by p.created_at asc
                """,
                start_at,
                end_at,
                timeout=self._timeout(),
            )
            return [self._post_row_to_model(row) for row in rows]

    async def get_post_by_old_id_and_publisher(self, old_id: str, publisher: str) -> Post | None:
        pool = self._get_pool()
        with _translate_errors("fetch post by old id"):
            row = await pool.fetchrow(
                f"""
                select
                  {_POST_COLUMNS}
                from posts p
                where p.old_id = $1
                  and p.publisher = $2
                """,
                old_id,
                publisher,
                timeout=self._timeout(),
            )
            if row is None:
                return None
            return self._post_row_to_model(row)

    async def get_author_key_by_post_id(self, post_id: str) -> str | None:
        pool = self._get_pool()
        with _translate_errors("fetch author key"):
            key = await pool.fetchval(
                """
                select u."key"
                from post_authors pa
                left join users u on u.id = pa.author_id
                where pa.post_id = $1
                order by pa.order_number asc
                limit 1
                """,
                post_id,
                timeout=self._timeout(),
            )
        return self._coerce_text(key)

    async def update_post_url(self, post_id: str, full_url: str) -> None:
        pool = self._get_pool()
        with _translate_errors("update post url"):
            await pool.execute(
                """
                update posts
                set full_url = $1
                where id = $2
                """,
                full_url,
                post_id,
                timeout=self._timeout(),
            )

    async def update_post(self, txn: PostTransaction, post: Post) -> None:
        with _translate_errors("update post"):
            await txn.connection.execute(
                """
                update posts
                set
                  full_url = $1,
                  author_id = $2
                where id = $3
                """,
                post.full_url,
                post.author_id,
                post.id,
                timeout=self._timeout(),
            )

    async def clear_post_authors(self, txn: PostTransaction, post_id: str) -> None:
        with _translate_errors("clear post authors"):
            await txn.connection.execute(
                "delete from post_authors where post_id = $1",
                post_id,
                timeout=self._timeout(),
            )

    async def add_post_author(self, txn: PostTransaction, post_id: str, author_id: str, order_number: int) -> None:
        with _translate_errors("insert post author"):
            await txn.connection.execute(
                """
                insert into post_authors (post_id, author_id, order_number)
                values ($1, $2, $3)
                """,
                post_id,
                author_id,
                order_number,
                timeout=self._timeout(),
            )

    async def get_broken_records(self) -> list[BrokenRecord]:
        pool = self._get_pool()
        with _translate_errors("fetch backlog records"):
            rows = await pool.fetch(
                f"""
                select
                  b.old_id::text as old_id,
                  b.author_id::text as author_id,
                  b.author_key,
                  b.created_by::text as created_by,
                  b.creator_key
                from {BACKLOG_TABLE} b
                """,
                timeout=self._timeout(),
            )
        records: list[BrokenRecord] = []
        for row in rows:
            missing = [column for column in _BACKLOG_IDENTITY_COLUMNS if row[column] is None]
            if missing:
                logger.warning("skipping backlog row old_id=%s with null %s", row["old_id"], ", ".join(missing))
                continue
            with _translate_errors("map backlog record"):
                records.append(
                    BrokenRecord(
                        old_id=row["old_id"],
                        author_id=row["author_id"],
                        author_key=self._coerce_text(row["author_key"]) or "",
                        created_by=row["created_by"],
                        creator_key=self._coerce_text(row["creator_key"]) or "",
                    )
                )
        return records

    async def _finish(self, txn: PostTransaction, *, commit: bool) -> None:
        if txn.closed:
            return
        operation = "commit" if commit else "rollback"
        try:
            with _translate_errors(operation):
                if commit:
                    await asyncio.wait_for(txn.transaction.commit(), timeout=self._timeout())
                else:
                    await asyncio.wait_for(txn.transaction.rollback(), timeout=self._timeout())
        finally:
            # Releasing resets the connection, which discards an unfinished transaction.
            txn.closed = True
            if self._pool is not None:
                await self._pool.release(txn.connection)

    def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RepositoryUnavailableError("repository is not connected")
        return self._pool

    def _timeout(self) -> float:
        if self.deadline is None:
            return self.call_timeout_seconds
        return self.deadline.timeout_for(self.call_timeout_seconds)

    @classmethod
    def _post_row_to_model(cls, row: Any) -> Post:
        return Post(
            id=row["id"],
            title=cls._coerce_text(row["title"]) or "",
            key=cls._coerce_text(row["key"]) or "",
            full_url=row["full_url"] or "",
            created_by=cls._coerce_text(row["created_by"]),
            created_at=row["created_at"],
            author_id=cls._coerce_text(row["author_id"]),
        )

    @staticmethod
    def _coerce_text(value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return str(value)


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except RepositoryError:
        raise
    except _DRIVER_ERRORS as exc:
        raise RepositoryError(f"{operation} failed: {str(exc) or type(exc).__name__}") from exc
    except ValidationError as exc:
        raise RepositoryError(f"{operation} returned a malformed row: {exc.error_count()} invalid field(s)") from exc
