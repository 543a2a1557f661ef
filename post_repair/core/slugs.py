from __future__ import annotations

PATH_SEPARATOR = "/"
SLUG_SEPARATOR = "-"
MIN_SLUG_COMPONENTS = 3


class SlugStructureError(ValueError):
    """Raised when a URL does not end in an `<title>-<author key>-<id>` slug."""


def rewrite_slug(url: str, new_author_key: str) -> str:
    """Swap the author key (second-to-last slug component) of ``url``."""
    segments, slug_parts = _split(url)
    slug_parts[-2] = new_author_key
    segments[-1] = SLUG_SEPARATOR.join(slug_parts)
    return PATH_SEPARATOR.join(segments)


def slug_author_key(url: str) -> str:
    _, slug_parts = _split(url)
    return slug_parts[-2]


def _split(url: str) -> tuple[list[str], list[str]]:
    if not url:
        raise SlugStructureError("empty or unparseable URL")
    segments = url.split(PATH_SEPARATOR)
    if len(segments) <= 1:
        raise SlugStructureError("empty or unparseable URL")

    slug_parts = segments[-1].split(SLUG_SEPARATOR)
    if len(slug_parts) < MIN_SLUG_COMPONENTS:
        raise SlugStructureError("insufficient slug components")
    return segments, slug_parts
