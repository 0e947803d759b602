from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from urllib.parse import urljoin, urlsplit

import feedparser
from bs4 import BeautifulSoup

from ..models import Source
from ..utils import parse_date_value

_DATE_IN_TEXT = re.compile(r"\b(\d{4}-\d{2}-\d{2}|\d{1,2}\.\d{1,2}\.\d{4})\b")


@dataclass(frozen=True)
class ListingEntry:
    url: str
    published_at: datetime | None
    title: str | None = None


def parse_rss(content: bytes) -> list[ListingEntry]:
    parsed = feedparser.parse(content)
    entries = []
    for entry in parsed.entries:
        link = entry.get("link") or entry.get("id")
        if not link:
            continue
        published = entry.get("published_parsed") or entry.get("updated_parsed")
        published_at = None
        if published:
            published_at = parse_date_value(datetime(*published[:6]))
        else:
            published_at = parse_date_value(entry.get("published") or entry.get("updated"))
        entries.append(ListingEntry(url=link, published_at=published_at, title=entry.get("title")))
    return entries


def parse_html_listing(
    html: str | bytes,
    base_url: str,
    url_pattern: str | None = None,
) -> list[ListingEntry]:
    """Collect document links from a listing page.

    Only same-host links are kept; ``url_pattern`` (a regex) narrows them to
    document pages. A date is taken from a ``<time>`` element or a date-looking
    string in the link's enclosing block.
    """
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "nav", "footer", "header"]):
        tag.decompose()
    base_host = (urlsplit(base_url).hostname or "").lower()
    pattern = re.compile(url_pattern) if url_pattern else None
    seen: set[str] = set()
    entries = []
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href.startswith(("#", "mailto:", "javascript:", "tel:")):
            continue
        absolute = urljoin(base_url, href)
        if (urlsplit(absolute).hostname or "").lower() != base_host:
            continue
        if pattern and not pattern.search(absolute):
            continue
        if absolute in seen:
            continue
        seen.add(absolute)
        entries.append(
            ListingEntry(
                url=absolute,
                published_at=_nearby_date(anchor),
                title=anchor.get_text(" ", strip=True) or None,
            )
        )
    return entries


def _nearby_date(anchor) -> datetime | None:
    container = anchor.find_parent(["li", "article", "tr", "div"]) or anchor.parent
    if container is None:
        return None
    time_tag = container.find("time")
    if time_tag is not None:
        parsed = parse_date_value(time_tag.get("datetime") or time_tag.get_text(strip=True))
        if parsed:
            return parsed
    match = _DATE_IN_TEXT.search(container.get_text(" ", strip=True))
    if match:
        return parse_date_value(match.group(1))
    return None


def pagination_urls(source: Source, max_pages: int) -> list[str]:
    """Expand ``pagination_pattern`` (with a ``{page}`` placeholder) into page URLs."""
    pattern = source.pagination_pattern
    if not pattern:
        return [source.listing_url] if source.listing_url else []
    pages = max(1, min(max_pages, source.max_pages))
    return [pattern.replace("{page}", str(page)) for page in range(1, pages + 1)]
