from dataclasses import replace
from datetime import date

import pytest

from regtruth.discovery.backfill import (
    BackfillRequest,
    cancel_backfill,
    list_backfill_sources,
    resume_backfill,
    run_backfill,
)
from regtruth.discovery.surface import Candidate, DiscoveryQueue
from regtruth.errors import BackfillDisabledError
from regtruth.storage import (
    count_discovered_items,
    get_discovered_item_by_url,
    list_backfill_runs,
    list_jobs,
    request_backfill_cancel,
)


def _sitemap(urls, lastmods=None):
    lastmods = lastmods or {}
    body = "".join(
        f"<url><loc>{url}</loc>"
        + (f"<lastmod>{lastmods[url]}</lastmod>" if url in lastmods else "")
        + "</url>"
        for url in urls
    )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f'<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">{body}</urlset>'
    )


def _urls(prefix, count):
    return [f"https://gov.example/{prefix}/doc-{index}" for index in range(count)]


@pytest.fixture
def enabled(monkeypatch):
    monkeypatch.setenv("RT_BACKFILL_ENABLED", "true")


def test_backfill_queues_new_and_skips_existing(ctx, conn, fetcher, add_source, enabled):
    source = add_source("tax-authority")
    urls = _urls("rates", 3)
    fetcher.add(source.sitemap_url, _sitemap(urls), "application/xml")
    surface = DiscoveryQueue(ctx)
    for url in urls[:2]:
        surface.offer(source, Candidate(url=url), "SCHEDULED")

    run = run_backfill(ctx, BackfillRequest(sources=["tax-authority"]))

    assert run.status == "COMPLETED"
    assert run.discovered_count == 3
    assert run.queued_count == 1
    assert run.skipped_count == 2
    assert count_discovered_items(conn) == 3
    new_item = get_discovered_item_by_url(conn, "tax-authority", urls[2])
    assert new_item.discovery_method == "BACKFILL"
    assert new_item.backfill_run_id == run.id
    old_item = get_discovered_item_by_url(conn, "tax-authority", urls[0])
    assert old_item.discovery_method == "SCHEDULED"
    assert old_item.backfill_run_id is None


def test_malformed_sitemap_url_is_recorded_and_run_completes(ctx, conn, fetcher, add_source, enabled):
    source = add_source("tax-authority")
    urls = ["https://gov.example:abc/x"] + _urls("rates", 2)
    fetcher.add(source.sitemap_url, _sitemap(urls), "application/xml")

    run = run_backfill(ctx, BackfillRequest(sources=["tax-authority"]))

    assert run.status == "COMPLETED"
    assert run.discovered_count == 2
    assert run.queued_count == 2
    assert [(error["source"], error["url"]) for error in run.errors] == [("tax-authority", "https://gov.example:abc/x")]


def test_dry_run_respects_cap_and_persists_no_items(ctx, conn, fetcher, add_source, monkeypatch):
    monkeypatch.delenv("RT_BACKFILL_ENABLED", raising=False)
    source = add_source("tax-authority")
    fetcher.add(source.sitemap_url, _sitemap(_urls("archive", 360)), "application/xml")

    run = run_backfill(ctx, BackfillRequest(sources=["tax-authority"], max_urls=50, dry_run=True))

    assert run.status == "COMPLETED"
    assert run.dry_run is True
    assert run.discovered_count == 360
    assert run.would_queue_count == 50
    assert run.queued_count == 0
    assert count_discovered_items(conn) == 0
    assert list_jobs(conn, queue="fetch") == []


def test_rerun_skips_everything_discovered_before(ctx, conn, fetcher, add_source, enabled):
    source = add_source("tax-authority")
    fetcher.add(source.sitemap_url, _sitemap(_urls("guides", 5)), "application/xml")

    first = run_backfill(ctx, BackfillRequest(sources=["tax-authority"]))
    second = run_backfill(ctx, BackfillRequest(sources=["tax-authority"]))

    assert first.queued_count == 5
    assert second.queued_count == 0
    assert second.skipped_count == first.discovered_count
    assert len(list_jobs(conn, queue="fetch", limit=100)) == 5


def test_kill_switch_blocks_real_run_before_any_write(ctx, conn, fetcher, add_source, monkeypatch):
    monkeypatch.delenv("RT_BACKFILL_ENABLED", raising=False)
    add_source("tax-authority")

    with pytest.raises(BackfillDisabledError) as excinfo:
        run_backfill(ctx, BackfillRequest(sources=["tax-authority"]))

    assert "RT_BACKFILL_ENABLED=true" in str(excinfo.value)
    assert list_backfill_runs(conn) == []
    assert fetcher.calls == []


def test_unknown_source_is_rejected(ctx, conn, enabled):
    with pytest.raises(ValueError):
        run_backfill(ctx, BackfillRequest(sources=["nope"]))
    assert list_backfill_runs(conn) == []


def test_date_window_filters_dated_entries(ctx, conn, fetcher, add_source, enabled):
    source = add_source("tax-authority")
    urls = _urls("notices", 4)
    lastmods = {urls[0]: "2019-05-01", urls[1]: "2021-03-15", urls[2]: "2024-01-10"}
    fetcher.add(source.sitemap_url, _sitemap(urls, lastmods), "application/xml")

    run = run_backfill(
        ctx,
        BackfillRequest(
            sources=["tax-authority"],
            date_from=date(2020, 1, 1),
            date_to=date(2022, 12, 31),
        ),
    )

    assert run.discovered_count == 2
    assert get_discovered_item_by_url(conn, "tax-authority", urls[1]) is not None
    assert get_discovered_item_by_url(conn, "tax-authority", urls[3]) is not None
    assert get_discovered_item_by_url(conn, "tax-authority", urls[0]) is None


def test_per_source_cap(ctx, conn, fetcher, add_source, enabled):
    first = add_source("tax-authority")
    second = add_source("ministry", domain="ministry.example", sitemap_url="https://ministry.example/sitemap.xml")
    fetcher.add(first.sitemap_url, _sitemap(_urls("a", 10)), "application/xml")
    fetcher.add(
        second.sitemap_url,
        _sitemap([f"https://ministry.example/b/doc-{index}" for index in range(10)]),
        "application/xml",
    )

    run = run_backfill(ctx, BackfillRequest(sources=["tax-authority", "ministry"], max_per_source=3))

    assert run.queued_count == 6
    assert count_discovered_items(conn, "tax-authority") == 3
    assert count_discovered_items(conn, "ministry") == 3


def test_sitemap_index_child_failure_is_recorded(ctx, conn, fetcher, add_source, enabled):
    source = add_source("tax-authority")
    index = (
        '<?xml version="1.0"?><sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">'
        "<sitemap><loc>https://gov.example/s1.xml</loc></sitemap>"
        "<sitemap><loc>https://gov.example/s2.xml</loc></sitemap>"
        "</sitemapindex>"
    )
    fetcher.add(source.sitemap_url, index, "application/xml")
    fetcher.add("https://gov.example/s1.xml", _sitemap(_urls("s1", 2)), "application/xml")

    run = run_backfill(ctx, BackfillRequest(sources=["tax-authority"]))

    assert run.status == "COMPLETED"
    assert run.queued_count == 2
    assert run.error_count == 1
    assert run.errors[0]["url"] == "https://gov.example/s2.xml"
    assert set(run.errors[0]) == {"timestamp", "source", "url", "message"}


class _CancellingFetcher:
    """Cancels the newest run the first time ``trigger_url`` is requested."""

    def __init__(self, inner, conn, trigger_url):
        self._inner = inner
        self._conn = conn
        self._trigger_url = trigger_url
        self.fired = False

    def get(self, url, source=None):
        if url == self._trigger_url and not self.fired:
            self.fired = True
            request_backfill_cancel(self._conn, list_backfill_runs(self._conn, limit=1)[0].id)
        return self._inner.get(url, source)


def test_cancel_stops_at_next_batch_and_resume_continues(ctx, conn, fetcher, add_source, enabled):
    first = add_source("tax-authority")
    second = add_source("ministry", domain="ministry.example", sitemap_url="https://ministry.example/sitemap.xml")
    fetcher.add(first.sitemap_url, _sitemap(_urls("a", 4)), "application/xml")
    fetcher.add(
        second.sitemap_url,
        _sitemap([f"https://ministry.example/b/doc-{index}" for index in range(3)]),
        "application/xml",
    )
    cancelling = _CancellingFetcher(fetcher, conn, second.sitemap_url)
    cancelled = run_backfill(
        replace(ctx, fetcher=cancelling),
        BackfillRequest(sources=["tax-authority", "ministry"]),
    )

    assert cancelled.status == "CANCELLED"
    assert cancelled.queued_count == 4
    assert cancelled.last_processed_source == "tax-authority"
    assert count_discovered_items(conn, "ministry") == 0

    resumed = resume_backfill(ctx, cancelled.id)

    assert resumed.resumed_from == cancelled.id
    assert resumed.status == "COMPLETED"
    assert resumed.skipped_count == 4
    assert resumed.queued_count == 3
    assert count_discovered_items(conn, "ministry") == 3


def test_cancel_only_applies_to_active_runs(ctx, conn, fetcher, add_source):
    source = add_source("tax-authority")
    fetcher.add(source.sitemap_url, _sitemap(_urls("a", 1)), "application/xml")
    run = run_backfill(ctx, BackfillRequest(sources=["tax-authority"], dry_run=True))
    assert cancel_backfill(conn, run.id) is False


def test_pagination_mode_walks_pages_until_empty(ctx, conn, fetcher, add_source, enabled):
    add_source(
        "news",
        listing_kind="HTML",
        listing_url="https://gov.example/news",
        sitemap_url=None,
        pagination_pattern="https://gov.example/news?page={page}",
        max_pages=10,
    )
    fetcher.add(
        "https://gov.example/news?page=1",
        '<html><body><ul><li><a href="/news/a">A</a> 2024-02-01</li>'
        '<li><a href="/news/b">B</a> 2024-01-15</li></ul></body></html>',
    )
    fetcher.add(
        "https://gov.example/news?page=2",
        '<html><body><ul><li><a href="/news/c">C</a> 2023-11-30</li></ul></body></html>',
    )
    fetcher.add("https://gov.example/news?page=3", "<html><body><p>No more results</p></body></html>")

    run = run_backfill(ctx, BackfillRequest(sources=["news"], mode="pagination"))

    assert run.discovered_count == 3
    assert run.queued_count == 3
    assert "https://gov.example/news?page=4" not in fetcher.calls


def test_archive_mode_follows_sub_pages(ctx, conn, fetcher, add_source, enabled):
    add_source("archive", sitemap_url=None, archive_url="https://gov.example/archive")
    fetcher.add(
        "https://gov.example/archive",
        '<html><body><a href="/files/2020-rates.pdf">2020</a>'
        '<a href="/archive/2019">2019 archive</a></body></html>',
    )
    fetcher.add(
        "https://gov.example/archive/2019",
        '<html><body><a href="/files/2019-rates.pdf">2019</a></body></html>',
    )

    run = run_backfill(ctx, BackfillRequest(sources=["archive"], mode="ARCHIVE"))

    assert run.queued_count == 2
    nested = get_discovered_item_by_url(conn, "archive", "https://gov.example/files/2019-rates.pdf")
    assert nested.crawl_depth == 1


def test_list_backfill_sources_reports_modes(conn, add_source):
    add_source("tax-authority", archive_url="https://gov.example/archive")
    rows = list_backfill_sources(conn)
    assert rows[0]["id"] == "tax-authority"
    assert "SITEMAP" in rows[0]["modes"]
    assert "ARCHIVE" in rows[0]["modes"]
