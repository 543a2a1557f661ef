from __future__ import annotations

import argparse
import asyncio
import logging
from collections.abc import Sequence
from datetime import datetime

from post_repair.core.config import Settings, get_settings
from post_repair.core.deadline import Deadline
from post_repair.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from post_repair.jobs.fix_cross_reference import run_fix_cross_reference
from post_repair.jobs.fix_url import run_fix_url
from post_repair.jobs.report import RepairReport, pretty_json
from post_repair.services.repository import PostRepository, RepositoryError, RepositoryUnavailableError
from post_repair.services.search_index import SearchIndexClient, SearchIndexUnavailableError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1


def parse_timestamp(value: str) -> datetime:
    raw = value.strip()
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not an ISO date or datetime: {value!r}") from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="post-url-repair",
        description="Repair post URLs in the database and mirror the fix into the search index.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    fix_url = subparsers.add_parser("fix-url", help="Rewrite the author key of posts created in a time window.")
    fix_url.add_argument("start_at", type=parse_timestamp, help="Inclusive lower bound on created_at (ISO 8601)")
    fix_url.add_argument("end_at", type=parse_timestamp, help="Inclusive upper bound on created_at (ISO 8601)")

    subparsers.add_parser(
        "fix-cross-reference",
        help="Repair backlog posts using the author and creator identities from the search index.",
    )
    return parser


async def run(
    args: argparse.Namespace,
    settings: Settings,
    *,
    repository: PostRepository | None = None,
    search_index: SearchIndexClient | None = None,
) -> int:
    deadline = Deadline(settings.run_timeout_seconds)
    repository = repository or PostRepository.from_settings(settings, deadline=deadline)
    search_index = search_index or SearchIndexClient.from_settings(settings, deadline=deadline)

    try:
        try:
            await repository.connect()
            logger.info("database is connected")
            await search_index.ping()
            logger.info("search index is connected")
        except (RepositoryUnavailableError, SearchIndexUnavailableError) as exc:
            logger.error("cannot start repair: %s", exc)
            return EXIT_FATAL

        try:
            report = await _dispatch(args, settings, repository, search_index)
        except RepositoryError as exc:
            logger.error("cannot load work items for %s: %s", args.command, exc)
            return EXIT_FATAL
    finally:
        await repository.close()

    print(f"UNFIXED: {pretty_json(report.descriptions())}")
    error = report.error
    if error is not None:
        print(f"Got some errors\n----------------------\n{error}")
    return EXIT_OK


async def _dispatch(
    args: argparse.Namespace,
    settings: Settings,
    repository: PostRepository,
    search_index: SearchIndexClient,
) -> RepairReport:
    if args.command == "fix-url":
        logger.info("repairing post urls")
        return await run_fix_url(
            repository,
            search_index,
            start_at=args.start_at,
            end_at=args.end_at,
            index_name=settings.post_index,
            chunk_size=settings.post_chunk_size,
        )

    logger.info("repairing backlog posts by cross reference")
    return await run_fix_cross_reference(
        repository,
        search_index,
        index_name=settings.post_index,
        chunk_size=settings.post_chunk_size,
        publisher=settings.backlog_publisher,
    )


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "fix-url":
        if (args.start_at.tzinfo is None) != (args.end_at.tzinfo is None):
            parser.error("start_at and end_at must both carry a UTC offset or neither")
        if args.start_at > args.end_at:
            parser.error("start_at must not be after end_at")

    settings = get_settings()
    configure_logging()
    telemetry_runtime = setup_telemetry(settings, mode=args.command)
    try:
        return asyncio.run(run(args, settings))
    finally:
        shutdown_telemetry(telemetry_runtime)


def cli() -> None:
    raise SystemExit(main())


if __name__ == "__main__":
    cli()
