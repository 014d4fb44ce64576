"""URL discovery: sitemap parsing, breadth-first crawl frontier and streaming crawl."""

import asyncio
import xml.etree.ElementTree as ET
from collections import deque
from dataclasses import dataclass
from typing import AsyncIterator, Deque, Dict, List, Optional, Set, Tuple
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from ingest.config import PipelineConfig
from ingest.errors import IngestError
from ingest.fetcher import Fetcher
from ingest.html_utils import (
    extract_links,
    extract_listing_product_links,
    extract_listing_tiles,
    extract_pagination_urls,
    extract_subcategory_links,
    is_product_page,
    make_soup,
    parse_product_page,
)
from ingest.logging_config import get_logger, log_event
from ingest.models import ListingCandidate, RawProduct
from ingest.url_validation import is_in_scope, strip_query

__all__ = [
    "parse_sitemap",
    "fetch_sitemap_urls",
    "CandidateAcceptPolicy",
    "CrawlFrontier",
    "stream_product_urls",
]

logger = get_logger("discovery")


# =============================================================================
# Sitemap strategy
# =============================================================================

def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def parse_sitemap(xml_text: str) -> Tuple[str, List[str]]:
    """Parse a sitemap document into ``(kind, locs)``.

    ``kind`` is ``"sitemapindex"`` or ``"urlset"``; namespaced and bare
    documents are both accepted.
    """
    root = ET.fromstring(xml_text.strip().encode("utf-8"))
    locs = [
        (el.text or "").strip()
        for el in root.iter()
        if _local(el.tag) == "loc" and (el.text or "").strip()
    ]
    return _local(root.tag), locs


async def fetch_sitemap_urls(fetcher: Fetcher, sitemap_url: str, prefix: str) -> List[str]:
    """Flat list of page URLs whose path starts with ``prefix``.

    A sitemap index is followed one level deep; child sitemaps that fail to
    load are logged and skipped.
    """
    kind, locs = parse_sitemap(await fetcher.afetch_text(sitemap_url))
    page_urls: List[str] = []
    if kind == "sitemapindex":
        for child in locs:
            try:
                _, child_locs = parse_sitemap(await fetcher.afetch_text(child))
            except (IngestError, ET.ParseError) as e:
                logger.warning(f"Skipping sitemap {child}: {e}")
                continue
            page_urls.extend(child_locs)
    else:
        page_urls = locs

    out: List[str] = []
    seen: Set[str] = set()
    for url in page_urls:
        if urlparse(url).path.startswith(prefix) and url not in seen:
            seen.add(url)
            out.append(url)
    logger.info(f"Sitemap {sitemap_url}: {len(out)} URLs under {prefix}")
    return out


# =============================================================================
# Crawl strategy
# =============================================================================

@dataclass
class CandidateAcceptPolicy:
    """Decides whether a speculatively parsed page is kept as a product.

    A page is kept when its title is longer than ``min_title`` characters and
    either its price exceeds ``min_price`` or its description is longer than
    ``min_description`` characters.
    """

    min_price: int = 0
    min_description: int = 20
    min_title: int = 3

    def accepts(self, product: RawProduct) -> bool:
        if len(product.title or "") <= self.min_title:
            return False
        return (product.price or 0) > self.min_price or len(product.description or "") > self.min_description


class CrawlFrontier:
    """Breadth-first crawl from a seed category page.

    Pages are processed in batches of at most ``concurrency`` URLs; a batch is
    awaited in full before more URLs are dequeued, which bounds both in-flight
    requests and frontier growth.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        config: PipelineConfig,
        accept_policy: Optional[CandidateAcceptPolicy] = None,
    ):
        self.fetcher = fetcher
        self.config = config
        self.accept_policy = accept_policy or CandidateAcceptPolicy()
        self.host = urlparse(config.seed_url).netloc.lower()
        self.visited: Set[str] = set()
        self.queue: Deque[str] = deque()
        self.candidates: Dict[str, ListingCandidate] = {}
        self.failed_pages: List[str] = []

    @property
    def limit(self) -> int:
        if self.config.dry_run and self.config.dry_run_limit > 0:
            return min(self.config.dry_run_limit, self.config.max_products)
        return self.config.max_products

    def _caps_reached(self) -> bool:
        if len(self.visited) >= self.config.max_visited:
            logger.info(f"Visited-page cap reached ({self.config.max_visited})")
            return True
        if len(self.candidates) >= self.limit:
            logger.info(f"Candidate cap reached ({self.limit})")
            return True
        return False

    def _depth_ok(self, url: str) -> bool:
        return len([p for p in urlparse(url).path.split("/") if p]) <= self.config.max_depth

    def _is_product_link(self, url: str) -> bool:
        parsed = urlparse(url)
        return parsed.netloc.lower() == self.host and parsed.path.startswith(self.config.product_prefix)

    async def crawl(self) -> List[ListingCandidate]:
        """Run the crawl and return candidates in discovery order."""
        sem = asyncio.Semaphore(max(1, self.config.concurrency))
        self.queue.append(self.config.seed_url)

        while self.queue:
            batch: List[str] = []
            while len(batch) < self.config.concurrency and self.queue:
                url = self.queue.popleft()
                if url not in self.visited:
                    self.visited.add(url)
                    batch.append(url)
            if not batch:
                break
            await asyncio.gather(*(self._process_page(url, sem) for url in batch))
            if self._caps_reached():
                break

        candidates = list(self.candidates.values())[: self.limit]
        logger.info(
            f"Crawl finished: {len(self.visited)} pages visited, "
            f"{len(candidates)} candidates, {len(self.failed_pages)} failed pages"
        )
        return candidates

    async def _process_page(self, url: str, sem: asyncio.Semaphore) -> None:
        try:
            async with sem:
                html = await self.fetcher.afetch_text(url)
            await self._handle_page(url, html, sem)
        except Exception as e:
            self.failed_pages.append(url)
            logger.warning(f"Crawl page failed {url}: {e}")
            log_event("page_error", {"url": url, "error": str(e)}, logger_name="discovery")

    async def _handle_page(self, url: str, html: str, sem: asyncio.Semaphore) -> None:
        soup = make_soup(html)

        # The page itself is a product
        if is_product_page(soup):
            product = parse_product_page(url, html)
            if product.title:
                self.candidates[strip_query(url)] = ListingCandidate(
                    url=product.url,
                    title=product.title,
                    price=product.price,
                    image_url=product.image_urls[0] if product.image_urls else None,
                    product=product,
                    source="page",
                )
                return

        # Listing tiles become low-confidence candidates
        for tile in extract_listing_tiles(soup, url, self.config.url_prefix, self.config.product_prefix):
            if self._is_product_link(tile.url):
                self.candidates.setdefault(tile.url, tile)

        # In-scope links feed the queue; product links are kept for sampling
        product_links: List[str] = []
        for link in extract_links(soup, url):
            if not self._depth_ok(link):
                continue
            if is_in_scope(link, self.host, self.config.url_prefix):
                if link not in self.visited and link not in self.queue:
                    self.queue.append(link)
            elif self._is_product_link(link):
                link = strip_query(link)
                if link not in product_links:
                    product_links.append(link)

        # Speculatively parse a bounded sample of product links
        sample = [
            link for link in product_links
            if link not in self.candidates or self.candidates[link].product is None
        ][: self.config.sample_anchors]
        await asyncio.gather(*(self._sample(link, sem) for link in sample))

    async def _sample(self, url: str, sem: asyncio.Semaphore) -> None:
        try:
            async with sem:
                html = await self.fetcher.afetch_text(url)
        except IngestError as e:
            logger.debug(f"Sample fetch failed {url}: {e}")
            return
        product = parse_product_page(url, html)
        if not self.accept_policy.accepts(product):
            logger.debug(f"Sample rejected {url}")
            return
        existing = self.candidates.get(url)
        self.candidates[url] = ListingCandidate(
            url=url,
            title=product.title,
            price=product.price,
            image_url=existing.image_url if existing else None,
            product=product,
            source="sample",
        )


# =============================================================================
# Streaming strategy
# =============================================================================

async def stream_product_urls(
    fetcher: Fetcher,
    root_url: str,
    max_products: int = 0,
    product_prefix: str = "/product/",
) -> AsyncIterator[str]:
    """Yield product URLs one at a time while walking categories under ``root_url``.

    Category pages, their pagination pages and nested subcategories are
    fetched sequentially, so memory stays bounded by the visited sets.
    """
    visited_categories: Set[str] = set()
    visited_pages: Set[str] = set()
    yielded: Set[str] = set()
    queue: Deque[str] = deque([root_url])

    while queue:
        category_url = queue.popleft()
        if category_url in visited_categories:
            continue
        visited_categories.add(category_url)
        try:
            html = await fetcher.afetch_text(category_url)
        except IngestError as e:
            logger.error(f"[stream] {category_url} => {e}")
            continue
        soup = make_soup(html)
        pager = extract_pagination_urls(soup, category_url)

        page: Optional[BeautifulSoup] = soup
        while page is not None:
            for url in extract_listing_product_links(page, category_url, product_prefix):
                if url in yielded:
                    continue
                yielded.add(url)
                yield url
                if max_products and len(yielded) >= max_products:
                    return

            page = None
            while pager and page is None:
                page_url = pager.pop(0)
                if page_url in visited_pages:
                    continue
                visited_pages.add(page_url)
                try:
                    page = make_soup(await fetcher.afetch_text(page_url))
                except IngestError as e:
                    logger.error(f"[stream] {page_url} => {e}")

        for sub in extract_subcategory_links(soup, category_url, root_url):
            if sub not in visited_categories:
                queue.append(sub)
