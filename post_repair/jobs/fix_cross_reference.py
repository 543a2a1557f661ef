from __future__ import annotations

import logging

from opentelemetry import trace

from post_repair.core.chunks import chunk
from post_repair.core.slugs import SlugStructureError, rewrite_slug
from post_repair.core.telemetry import annotate_report
from post_repair.jobs.report import RepairReport, pretty_json
from post_repair.schemas.posts import Author, BrokenRecord, CrossReferenceMirrorPatch
from post_repair.services.repository import PostRepository, PostTransaction, RepositoryError
from post_repair.services.search_index import SearchIndexClient, SearchIndexError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

MODE = "fix-cross-reference"
PRIMARY_AUTHOR_ORDER = 0


async def run_fix_cross_reference(
    repository: PostRepository,
    search_index: SearchIndexClient,
    *,
    index_name: str,
    chunk_size: int,
    publisher: str,
) -> RepairReport:
    """Reconcile backlog posts with the author and creator found in the search index.

    Each record is repaired inside its own transaction. The search document is
    written before the commit, and any failure after the transaction has
    started rolls it back, so a record is either fully repaired in both
    stores or left untouched in the relational store.

    Raises ``RepositoryError`` when the backlog cannot be fetched.
    """
    report = RepairReport(mode=MODE)
    with tracer.start_as_current_span("repair.fix_cross_reference") as run_span:
        logger.info("fetching backlog records for publisher=%s", publisher)
        records = await repository.get_broken_records()
        report.total = len(records)
        run_span.set_attribute("repair.total", report.total)

        chunks = chunk(records, chunk_size)
        logger.info("got %s backlog records in %s chunks of up to %s", len(records), len(chunks), max(1, chunk_size))

        for chunk_index, batch in enumerate(chunks, start=1):
            logger.info("[%d/%d] running chunk of %d records", chunk_index, len(chunks), len(batch))
            for record in batch:
                with tracer.start_as_current_span("repair.fix_cross_reference.record") as span:
                    span.set_attribute("post.old_id", record.old_id)
                    await _repair_record(repository, search_index, report, record, index_name, publisher)

        annotate_report(run_span, report.summary())

    logger.info("run finished %s", report.summary())
    logger.info("unfixed: %s", pretty_json(report.descriptions()))
    return report


async def _repair_record(
    repository: PostRepository,
    search_index: SearchIndexClient,
    report: RepairReport,
    record: BrokenRecord,
    index_name: str,
    publisher: str,
) -> None:
    item_id = record.old_id

    author = await _lookup_author(search_index, report, item_id, record.author_id, "cannot find author of this post")
    if author is None:
        return
    creator = await _lookup_author(search_index, report, item_id, record.created_by, "cannot find creator of this post")
    if creator is None:
        return

    reason = f"cannot find post with old id {record.old_id} for publisher {publisher}"
    try:
        existing = await repository.get_post_by_old_id_and_publisher(record.old_id, publisher)
    except RepositoryError as exc:
        report.record_failure(item_id, reason, exc)
        return
    if existing is None:
        report.record_failure(item_id, reason)
        return

    try:
        txn = await repository.begin()
    except RepositoryError as exc:
        report.record_failure(item_id, "failed starting transaction", exc)
        return

    try:
        fixed_url = rewrite_slug(existing.full_url, author.key)
    except SlugStructureError as exc:
        await _abandon(repository, txn, report, item_id, "failed generating fixed url for this post", exc)
        return

    repaired = existing.model_copy(update={"full_url": fixed_url, "created_by": creator.key, "author_id": author.key})

    try:
        await repository.update_post(txn, repaired)
    except RepositoryError as exc:
        await _abandon(repository, txn, report, item_id, "failed updating database for this post", exc)
        return

    try:
        await repository.clear_post_authors(txn, repaired.id)
    except RepositoryError as exc:
        await _abandon(repository, txn, report, item_id, "failed flushing post authors for this post", exc)
        return

    try:
        await repository.add_post_author(txn, repaired.id, author.key, PRIMARY_AUTHOR_ORDER)
    except RepositoryError as exc:
        await _abandon(repository, txn, report, item_id, "failed setting post author for this post", exc)
        return

    patch = CrossReferenceMirrorPatch.for_url(fixed_url, authors=[author])
    try:
        await search_index.update_document(index_name, repaired.id, patch)
    except SearchIndexError as exc:
        await _abandon(repository, txn, report, item_id, "failed updating search index for this post", exc)
        return

    try:
        await repository.commit(txn)
    except RepositoryError as exc:
        # The index already holds the new URL; the recorded reason names the gap.
        report.record_failure(item_id, "failed committing transaction (search index already updated)", exc)
        return

    report.repaired += 1
    logger.info(
        "fixed post %s old_id=%s author_key=%s creator_key=%s url: %s -> %s",
        repaired.id,
        record.old_id,
        author.key,
        creator.key,
        existing.full_url,
        fixed_url,
    )


async def _lookup_author(
    search_index: SearchIndexClient,
    report: RepairReport,
    item_id: str,
    author_id: str,
    reason: str,
) -> Author | None:
    try:
        author = await search_index.get_author(author_id)
    except SearchIndexError as exc:
        report.record_failure(item_id, reason, exc)
        return None
    if author is None:
        report.record_failure(item_id, reason, LookupError(f"author {author_id} not found"))
        return None
    if not author.key:
        report.record_failure(item_id, reason, LookupError(f"author {author_id} has no key"))
        return None
    return author


async def _abandon(
    repository: PostRepository,
    txn: PostTransaction,
    report: RepairReport,
    item_id: str,
    reason: str,
    exc: Exception,
) -> None:
    try:
        await repository.rollback(txn)
    except RepositoryError as rollback_exc:
        report.record_failure(item_id, reason, RepositoryError(f"{exc}; rollback also failed: {rollback_exc}"))
        return
    report.record_failure(item_id, reason, exc)
