"""Tests for sitemap parsing, the crawl frontier and streaming discovery."""

import asyncio

import pytest

from ingest.config import PipelineConfig
from ingest.discovery import (
    CandidateAcceptPolicy,
    CrawlFrontier,
    fetch_sitemap_urls,
    parse_sitemap,
    stream_product_urls,
)
from ingest.models import RawProduct

BASE = "https://supplier.example"

URLSET = """<?xml version="1.0" encoding="UTF-8"?>
<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <url><loc>{base}/catalog/plates/p1/</loc></url>
  <url><loc>{base}/about/</loc></url>
  <url><loc>{base}/catalog/plates/p2/</loc></url>
  <url><loc>{base}/catalog/plates/p1/</loc></url>
</urlset>"""

INDEX = """<?xml version="1.0" encoding="UTF-8"?>
<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <sitemap><loc>{base}/sitemap-1.xml</loc></sitemap>
  <sitemap><loc>{base}/sitemap-broken.xml</loc></sitemap>
</sitemapindex>"""


def _collect(agen):
    async def run():
        return [item async for item in agen]

    return asyncio.run(run())


class TestSitemap:
    """Tests for the sitemap strategy."""

    def test_parse_namespaced_urlset(self):
        """Namespaced urlset documents yield their locs."""
        kind, locs = parse_sitemap(URLSET.format(base=BASE))
        assert kind == "urlset"
        assert len(locs) == 4

    def test_parse_bare_document(self):
        """Sitemaps without a namespace are accepted too."""
        kind, locs = parse_sitemap("<urlset><url><loc> https://x/catalog/a/ </loc></url></urlset>")
        assert (kind, locs) == ("urlset", ["https://x/catalog/a/"])

    def test_index_followed_and_prefix_filtered(self, fetcher, fake_session):
        """Index children are fetched, broken children skipped, URLs deduped and filtered."""
        fake_session.add(f"{BASE}/sitemap.xml", INDEX.format(base=BASE))
        fake_session.add(f"{BASE}/sitemap-1.xml", URLSET.format(base=BASE))
        urls = asyncio.run(fetch_sitemap_urls(fetcher, f"{BASE}/sitemap.xml", "/catalog/"))
        assert urls == [f"{BASE}/catalog/plates/p1/", f"{BASE}/catalog/plates/p2/"]


class TestAcceptPolicy:
    """Tests for the speculative-parse accept policy."""

    @pytest.mark.parametrize("title,price,description,accepted", [
        ("Тарелка", 1500, "", True),
        ("Тарелка", None, "Описание длиннее двадцати символов", True),
        ("Тарелка", None, "Коротко", False),
        ("Ваз", 1500, "Описание длиннее двадцати символов", False),
    ])
    def test_accepts(self, title, price, description, accepted):
        """Title must exceed 3 chars and either price or a long description must be present."""
        product = RawProduct(url=f"{BASE}/product/x/", title=title, price=price, description=description)
        assert CandidateAcceptPolicy().accepts(product) is accepted


class TestCrawlFrontier:
    """Tests for the breadth-first crawl."""

    @pytest.fixture
    def config(self, tmp_path):
        return PipelineConfig(
            base_url=BASE,
            seed_url=f"{BASE}/catalog/plates/",
            url_prefix="/catalog/plates/",
            concurrency=2,
            data_dir=tmp_path,
        )

    @pytest.fixture
    def site(self, fake_session, product_page, category_page):
        fake_session.add(
            f"{BASE}/catalog/plates/",
            category_page([f"{BASE}/product/p1/", "/product/p2/"], ["?PAGEN_1=2", "/catalog/plates/deep/"]),
        )
        fake_session.add(f"{BASE}/catalog/plates/?PAGEN_1=2", category_page(["/product/p3/", "/product/p1/"]))
        fake_session.add(f"{BASE}/catalog/plates/deep/", product_page("Блюдо глубокое 30 см"))
        fake_session.add(f"{BASE}/product/p1/", product_page("Тарелка мелкая 20 см"))
        fake_session.add(f"{BASE}/product/p2/", product_page("Тар", price=None, description="Нет"))
        fake_session.add(f"{BASE}/product/p3/", product_page("Тарелка глубокая 22 см"))
        return fake_session

    def test_crawl_collects_sampled_products(self, fetcher, config, site):
        """Paginated listings are followed; rejected samples are not candidates."""
        candidates = asyncio.run(CrawlFrontier(fetcher, config).crawl())
        by_url = {c.url: c for c in candidates}
        assert set(by_url) == {
            f"{BASE}/product/p1/",
            f"{BASE}/product/p3/",
            f"{BASE}/catalog/plates/deep/",
        }
        assert by_url[f"{BASE}/product/p1/"].source == "sample"
        assert by_url[f"{BASE}/product/p1/"].product.title == "Тарелка мелкая 20 см"
        assert by_url[f"{BASE}/catalog/plates/deep/"].source == "page"

    def test_crawl_respects_candidate_limit(self, fetcher, config, site):
        """Dry runs stop at the dry-run limit."""
        config.dry_run = True
        config.dry_run_limit = 1
        candidates = asyncio.run(CrawlFrontier(fetcher, config).crawl())
        assert len(candidates) == 1

    def test_failed_pages_do_not_abort(self, fetcher, config, fake_session):
        """A seed that cannot be fetched is recorded and the crawl ends cleanly."""
        frontier = CrawlFrontier(fetcher, config)
        assert asyncio.run(frontier.crawl()) == []
        assert frontier.failed_pages == [f"{BASE}/catalog/plates/"]


class TestStreamProductUrls:
    """Tests for the streaming strategy."""

    @pytest.fixture
    def site(self, fake_session, category_page):
        fake_session.add(
            f"{BASE}/catalog/",
            category_page(["/product/p1/"], ["/catalog/plates/"]),
        )
        fake_session.add(
            f"{BASE}/catalog/plates/",
            category_page(["/product/p2/"], ["?PAGEN_1=2"]),
        )
        fake_session.add(
            f"{BASE}/catalog/plates/?PAGEN_1=2",
            category_page(["/product/p3/", "/product/p2/"]),
        )
        return fake_session

    def test_walks_categories_and_pages(self, fetcher, site):
        """Products are yielded once each across categories and pagination."""
        urls = _collect(stream_product_urls(fetcher, f"{BASE}/catalog/"))
        assert urls == [f"{BASE}/product/p1/", f"{BASE}/product/p2/", f"{BASE}/product/p3/"]

    def test_stops_at_max_products(self, fetcher, site):
        """Streaming stops as soon as the cap is reached."""
        urls = _collect(stream_product_urls(fetcher, f"{BASE}/catalog/", max_products=2))
        assert urls == [f"{BASE}/product/p1/", f"{BASE}/product/p2/"]
        assert f"{BASE}/catalog/plates/?PAGEN_1=2" not in site.calls
