from __future__ import annotations

import logging

import pytest

from regtruth.config import build_config, validate_source_dict
from regtruth.context import build_context
from regtruth.discovery.surface import Candidate, DiscoveryQueue
from regtruth.errors import PermanentFetchError
from regtruth.httpclient import FetchResponse
from regtruth.pipelines.extract import PatternExtractor
from regtruth.pipelines.fetch import fetch_item
from regtruth.storage import get_source, init_db, upsert_source


class FakeFetcher:
    """Serves canned responses by URL; unknown URLs are a permanent 404."""

    def __init__(self) -> None:
        self.routes: dict[str, object] = {}
        self.calls: list[str] = []

    def add(self, url: str, body: bytes | str, content_type: str = "text/html; charset=utf-8") -> None:
        if isinstance(body, str):
            body = body.encode("utf-8")
        self.routes[url] = FetchResponse(url=url, status=200, content_type=content_type, body=body)

    def fail(self, url: str, exc: Exception) -> None:
        self.routes[url] = exc

    def get(self, url, source=None):
        self.calls.append(url)
        route = self.routes.get(url)
        if route is None:
            raise PermanentFetchError("HTTP 404", url=url, status=404)
        if isinstance(route, Exception):
            raise route
        return route


class FakeOcrEngine:
    name = "fake"

    def __init__(self, text: str = "") -> None:
        self.text = text
        self.calls = 0

    def recognize(self, pdf_bytes: bytes) -> str:
        self.calls += 1
        return self.text


@pytest.fixture
def config(tmp_path):
    return build_config(
        {
            "paths": {
                "data_dir": str(tmp_path),
                "state_db": str(tmp_path / "state.sqlite3"),
                "sources_file": str(tmp_path / "sources.yml"),
            }
        }
    )


@pytest.fixture
def conn(config):
    connection = init_db(config.paths.state_db)
    yield connection
    connection.close()


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def ocr_engine():
    return FakeOcrEngine()


@pytest.fixture
def ctx(config, conn, fetcher, ocr_engine):
    return build_context(
        config,
        conn,
        logging.getLogger("regtruth.test"),
        fetcher=fetcher,
        extractors=[PatternExtractor()],
        ocr_engine=ocr_engine,
    )


@pytest.fixture
def add_source(conn):
    def _add(source_id: str = "tax-authority", **overrides):
        entry = {
            "id": source_id,
            "name": source_id.replace("-", " ").title(),
            "domain": "gov.example",
            "authority_level": "GUIDANCE",
            "priority_tier": "HIGH",
            "listing_kind": "SITEMAP",
            "sitemap_url": f"https://gov.example/{source_id}/sitemap.xml",
        }
        entry.update(overrides)
        upsert_source(conn, validate_source_dict(entry))
        return get_source(conn, source_id)

    return _add


@pytest.fixture
def capture(ctx, fetcher):
    """Serve ``sentences`` as an HTML page at ``url`` and fetch it; returns the evidence id."""

    def _capture(source, url: str, *sentences: str) -> str:
        body = "<html><body>" + "".join(f"<p>{sentence}</p>" for sentence in sentences) + "</body></html>"
        fetcher.add(url, body)
        offered = DiscoveryQueue(ctx).offer(source, Candidate(url=url), "SCHEDULED")
        return str(fetch_item(ctx, offered.item_id)["evidence_id"])

    return _capture
