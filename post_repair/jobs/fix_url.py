from __future__ import annotations

import logging
from datetime import datetime

from opentelemetry import trace

from post_repair.core.chunks import chunk
from post_repair.core.slugs import SlugStructureError, rewrite_slug, slug_author_key
from post_repair.core.telemetry import annotate_report
from post_repair.jobs.report import RepairReport, pretty_json
from post_repair.schemas.posts import Post, UrlMirrorPatch
from post_repair.services.repository import PostRepository, RepositoryError
from post_repair.services.search_index import SearchIndexClient, SearchIndexError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

MODE = "fix-url"


async def run_fix_url(
    repository: PostRepository,
    search_index: SearchIndexClient,
    *,
    start_at: datetime,
    end_at: datetime,
    index_name: str,
    chunk_size: int,
) -> RepairReport:
    """Rewrite the author key in the URL of every post created in ``[start_at, end_at]``.

    The relational row is written first and the search document second. A
    failed mirror leaves the row corrected and is reported as a failure for
    that post; nothing is rolled back in this mode.

    Raises ``RepositoryError`` when the candidate posts cannot be fetched.
    """
    report = RepairReport(mode=MODE)
    with tracer.start_as_current_span("repair.fix_url") as run_span:
        logger.info("fetching posts created between %s and %s", start_at.isoformat(), end_at.isoformat())
        posts = await repository.get_posts_by_created_at(start_at, end_at)
        report.total = len(posts)
        run_span.set_attribute("repair.total", report.total)

        chunks = chunk(posts, chunk_size)
        logger.info("got %s posts in %s chunks of up to %s", len(posts), len(chunks), max(1, chunk_size))

        for chunk_index, batch in enumerate(chunks, start=1):
            logger.info("[%d/%d] running chunk of %d posts", chunk_index, len(chunks), len(batch))
            for post in batch:
                with tracer.start_as_current_span("repair.fix_url.post") as span:
                    span.set_attribute("post.id", post.id)
                    await _repair_post(repository, search_index, report, post, index_name)

        annotate_report(run_span, report.summary())

    logger.info("run finished %s", report.summary())
    logger.info("unfixed: %s", pretty_json(report.descriptions()))
    return report


async def _repair_post(
    repository: PostRepository,
    search_index: SearchIndexClient,
    report: RepairReport,
    post: Post,
    index_name: str,
) -> None:
    try:
        author_key = await repository.get_author_key_by_post_id(post.id)
    except RepositoryError as exc:
        report.record_failure(post.id, "cannot find author for this post", exc)
        return
    if not author_key:
        report.record_failure(post.id, "cannot find author for this post")
        return

    try:
        fixed_url = rewrite_slug(post.full_url, author_key)
    except SlugStructureError as exc:
        report.record_failure(post.id, "failed fixing url for this post", exc)
        return

    if slug_author_key(post.full_url) == author_key:
        report.skipped += 1
        logger.info("post %s already carries author key %s; skipped", post.id, author_key)
        return

    try:
        await repository.update_post_url(post.id, fixed_url)
    except RepositoryError as exc:
        report.record_failure(post.id, "failed updating database for this post", exc)
        return

    try:
        await search_index.update_document(index_name, post.id, UrlMirrorPatch.for_url(fixed_url))
    except SearchIndexError as exc:
        report.record_failure(post.id, "failed updating search index for this post (database already updated)", exc)
        return

    report.repaired += 1
    logger.info("fixed post %s author_key=%s url: %s -> %s", post.id, author_key, post.full_url, fixed_url)
