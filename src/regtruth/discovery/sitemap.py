from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from ..errors import FetchError, ValidationError
from ..models import Source
from ..utils import log_event, parse_date_value


@dataclass(frozen=True)
class SitemapEntry:
    url: str
    lastmod: datetime | None


@dataclass(frozen=True)
class SitemapDocument:
    kind: str
    entries: list[SitemapEntry]


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1] if "}" in tag else tag


def parse_sitemap(content: bytes) -> SitemapDocument:
    """Parse a ``<urlset>`` or ``<sitemapindex>`` document, namespace-agnostic."""
    try:
        root = ET.fromstring(content)
    except ET.ParseError as exc:
        raise ValidationError("invalid sitemap XML", payload=content[:500], stage="discovery") from exc
    root_tag = _local(root.tag)
    if root_tag not in ("urlset", "sitemapindex"):
        raise ValidationError(f"unexpected sitemap root <{root_tag}>", stage="discovery")
    kind = "index" if root_tag == "sitemapindex" else "urlset"
    entries = []
    for node in root:
        if _local(node.tag) not in ("url", "sitemap"):
            continue
        loc = None
        lastmod = None
        for child in node:
            name = _local(child.tag)
            text = (child.text or "").strip()
            if name == "loc" and text:
                loc = text
            elif name == "lastmod" and text:
                lastmod = parse_date_value(text)
        if loc:
            entries.append(SitemapEntry(url=loc, lastmod=lastmod))
    return SitemapDocument(kind=kind, entries=entries)


def walk_sitemap(
    fetcher: Any,
    source: Source,
    url: str,
    logger: logging.Logger,
    *,
    max_depth: int = 3,
    since: datetime | None = None,
    errors: list[dict[str, object]] | None = None,
) -> list[SitemapEntry]:
    """Expand a sitemap (index) into page entries.

    Child sitemaps whose ``lastmod`` is older than ``since`` are skipped, which
    keeps scheduled crawls forward-only. Child failures are recorded in
    ``errors`` and do not abort the walk.
    """
    collected: list[SitemapEntry] = []
    seen: set[str] = set()
    _walk(fetcher, source, url, logger, max_depth, since, errors, collected, seen, depth=0)
    return collected


def _walk(
    fetcher: Any,
    source: Source,
    url: str,
    logger: logging.Logger,
    max_depth: int,
    since: datetime | None,
    errors: list[dict[str, object]] | None,
    collected: list[SitemapEntry],
    seen: set[str],
    depth: int,
) -> None:
    if url in seen:
        return
    seen.add(url)
    try:
        response = fetcher.get(url, source)
        document = parse_sitemap(response.body)
    except (FetchError, ValidationError) as exc:
        if depth == 0 or errors is None:
            raise
        errors.append({"url": url, "message": str(exc)})
        log_event(logger, logging.WARNING, "sitemap_child_failed", source_id=source.id, url=url, error=str(exc))
        return
    if document.kind == "urlset":
        collected.extend(document.entries)
        return
    if depth >= max_depth:
        log_event(logger, logging.WARNING, "sitemap_depth_exceeded", source_id=source.id, url=url)
        return
    for entry in document.entries:
        if since is not None and entry.lastmod is not None and entry.lastmod < since:
            continue
        _walk(fetcher, source, entry.url, logger, max_depth, since, errors, collected, seen, depth + 1)
