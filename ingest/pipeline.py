"""Pipeline orchestration: discovery -> fetch -> extract -> images -> persist."""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, List, Optional, Set, Union
from urllib.robotparser import RobotFileParser

from ingest.categories import CategoryRegistry
from ingest.config import PipelineConfig
from ingest.db import SqliteProductStore
from ingest.discovery import CandidateAcceptPolicy, CrawlFrontier, fetch_sitemap_urls, stream_product_urls
from ingest.errors import IngestError, RobotsDisallowedError
from ingest.fetcher import Fetcher
from ingest.html_utils import find_product_anchors, is_product_page, make_soup, parse_product_page
from ingest.images import BingImageSearch, ImagePipeline
from ingest.logging_config import RunLog, RunSummary, get_logger, log_event
from ingest.models import ListingCandidate, ProductRecord, RawProduct
from ingest.store import JsonProductStore, SerializedWriter
from ingest.validation import check_raw

__all__ = [
    "PipelineContext",
    "open_store",
    "build_context",
    "check_robots",
    "discover_candidates",
    "process_candidate",
    "run_pipeline",
    "run_url_list",
    "read_url_list",
    "finish_run",
]

logger = get_logger("pipeline")

# Product links followed from a listing page reached as a candidate
LISTING_EXPANSION_LIMIT = 24


@dataclass
class PipelineContext:
    """Everything one run needs, passed explicitly through the call graph."""

    config: PipelineConfig
    fetcher: Fetcher
    registry: CategoryRegistry
    store: Any
    images: ImagePipeline
    run_log: RunLog
    summary: RunSummary = field(default_factory=RunSummary)
    accept_policy: CandidateAcceptPolicy = field(default_factory=CandidateAcceptPolicy)
    seen_urls: Set[str] = field(default_factory=set)
    writer: Optional[SerializedWriter] = None

    def __post_init__(self) -> None:
        if self.writer is None:
            self.writer = SerializedWriter(self.store)


def open_store(config: PipelineConfig) -> Union[JsonProductStore, SqliteProductStore]:
    if config.mode == "db":
        return SqliteProductStore(config.db_path)
    return JsonProductStore(config.products_path)


def build_context(
    config: PipelineConfig,
    fetcher: Optional[Fetcher] = None,
    run_log: Optional[RunLog] = None,
) -> PipelineContext:
    fetcher = fetcher or Fetcher(headers=config.headers)
    search = BingImageSearch(config.bing_search_key, fetcher.session) if config.bing_search_key else None
    registry = CategoryRegistry.load(config.categories_path) if config.mode == "file" else CategoryRegistry()
    return PipelineContext(
        config=config,
        fetcher=fetcher,
        registry=registry,
        store=open_store(config),
        images=ImagePipeline(fetcher, config.asset_root, search=search),
        run_log=run_log or RunLog(config.log_dir),
    )


def check_robots(ctx: PipelineContext) -> None:
    """Raise RobotsDisallowedError when robots.txt forbids the seed URL.

    An unreachable robots.txt does not block the run.
    """
    robots_url = ctx.config.base_url.rstrip("/") + "/robots.txt"
    try:
        text = ctx.fetcher.fetch_text(robots_url, retries=0)
    except IngestError as e:
        logger.info(f"robots.txt not available ({e}), continuing")
        return

    parser = RobotFileParser()
    parser.parse(text.splitlines())
    agent = ctx.config.headers.get("User-Agent", "*")
    if parser.can_fetch(agent, ctx.config.seed_url):
        return
    if ctx.config.ignore_robots:
        logger.warning(f"robots.txt disallows {ctx.config.seed_url}; continuing because robots are ignored")
        return
    raise RobotsDisallowedError(f"robots.txt disallows crawling {ctx.config.seed_url}")


async def discover_candidates(ctx: PipelineContext) -> AsyncIterator[ListingCandidate]:
    """Yield candidates from the configured strategy (crawl, sitemap or stream)."""
    config = ctx.config
    limit = config.dry_run_limit if config.dry_run and config.dry_run_limit > 0 else config.max_products

    if config.strategy == "stream":
        count = 0
        async for url in stream_product_urls(ctx.fetcher, config.seed_url, limit, config.product_prefix):
            count += 1
            yield ListingCandidate(url=url, source="stream")
        logger.info(f"Stream discovery finished: {count} URLs")
        return

    if config.strategy == "sitemap":
        urls = await fetch_sitemap_urls(ctx.fetcher, config.sitemap_url, config.url_prefix)
        candidates = [ListingCandidate(url=u, source="sitemap") for u in urls[:limit]]
    else:
        frontier = CrawlFrontier(ctx.fetcher, config, ctx.accept_policy)
        candidates = await frontier.crawl()

    for candidate in candidates:
        yield candidate


def _dry_line(ctx: PipelineContext, raw: RawProduct) -> None:
    ctx.run_log.write("DRY " + json.dumps({
        "supplier_url": raw.url,
        "title": raw.title,
        "main_image_url": raw.image_urls[0] if raw.image_urls else None,
        "price_raw": raw.price_text,
        "parsed_price": raw.price,
        "category_slug": raw.category_slug,
        "subcategory_slug": raw.subcategory_slug,
        "specs": len(raw.spec_pairs()),
        "status": "ok",
    }, ensure_ascii=False))


async def _expand_listing(ctx: PipelineContext, url: str, soup: Any, sem: asyncio.Semaphore) -> None:
    anchors = [a for a in find_product_anchors(soup, url, ctx.config.product_prefix) if a not in ctx.seen_urls]
    anchors = anchors[:LISTING_EXPANSION_LIMIT]
    logger.info(f"Listing page {url}: following {len(anchors)} product links")
    for anchor in anchors:
        ctx.summary.discovered += 1
        await process_candidate(ctx, ListingCandidate(url=anchor, source="listing"), sem, expand=False)


async def process_candidate(
    ctx: PipelineContext,
    candidate: ListingCandidate,
    sem: asyncio.Semaphore,
    expand: bool = True,
) -> None:
    """Fetch, extract, validate, materialize images and persist one candidate.

    Failures are logged and counted; they never abort the run.
    """
    config = ctx.config
    if candidate.url in ctx.seen_urls:
        return
    ctx.seen_urls.add(candidate.url)

    ctx.summary.processed += 1
    index = ctx.summary.processed
    try:
        raw = candidate.product
        if raw is None:
            async with sem:
                html = await ctx.fetcher.afetch_text(candidate.url)
            soup = make_soup(html)
            if not is_product_page(soup):
                if expand:
                    ctx.run_log.write(f"[{index}] {candidate.url} listing page")
                    await _expand_listing(ctx, candidate.url, soup, sem)
                else:
                    ctx.summary.skipped += 1
                    ctx.run_log.write(f"[{index}] {candidate.url} (skipped: not-a-product)")
                return
            raw = parse_product_page(candidate.url, html, ctx.registry)
        else:
            ctx.registry.register_product(raw)

        if config.dry_run:
            ctx.summary.succeeded += 1
            _dry_line(ctx, raw)
            return

        check = check_raw(raw)
        sparse_ok = config.accept_sparse and check.has_title and check.has_slug
        if not check.text_ok and not sparse_ok:
            _record_skip(ctx, index, raw, check)
            return

        # a renamed product keeps its stored slug and asset directory
        slug = await asyncio.to_thread(ctx.store.resolve_slug, raw.slug, raw.url)
        if config.download_images:
            async with sem:
                images = await ctx.images.amaterialize_images(
                    raw.image_urls, slug, raw.title, config.image_mode
                )
        else:
            images = ctx.images.existing_images(slug)

        check = check_raw(raw, images)
        if not check.has_images and not config.accept_sparse:
            _record_skip(ctx, index, raw, check)
            return

        record = ProductRecord.from_raw(raw, images)
        record.slug = slug
        _, is_new = await ctx.writer.upsert(record)
        ctx.summary.succeeded += 1
        if is_new:
            ctx.summary.appended += 1
        _count_marks(ctx, check.marks())
        ctx.run_log.product_line(index, record.slug, check.marks(), status="appended ✓" if is_new else "merged")
        log_event("product_saved", {"slug": record.slug, "url": record.source_url, "new": is_new},
                  level=logging.DEBUG, logger_name="pipeline")

    except Exception as e:
        ctx.summary.errored += 1
        ctx.run_log.error_line(index, candidate.url, e)
        logger.error(f"Error processing {candidate.url}: {e}")
        log_event("product_error", {"url": candidate.url, "error": str(e)}, logger_name="pipeline")
        await ctx.writer.log_failure(candidate.url, str(e))


def _count_marks(ctx: PipelineContext, marks: dict) -> None:
    ctx.summary.descriptions_ok += int(marks["description"])
    ctx.summary.images_ok += int(marks["images"])
    ctx.summary.specs_ok += int(marks["specs"])


def _record_skip(ctx: PipelineContext, index: int, raw: RawProduct, check: Any) -> None:
    ctx.summary.skipped += 1
    _count_marks(ctx, check.marks())
    reasons = check.reasons()
    ctx.run_log.product_line(index, raw.slug, check.marks(), reasons=reasons)
    log_event("product_skipped", {"url": raw.url, "slug": raw.slug, "reasons": reasons}, logger_name="pipeline")


async def _process_batch(ctx: PipelineContext, batch: List[ListingCandidate], sem: asyncio.Semaphore) -> None:
    await asyncio.gather(*(process_candidate(ctx, c, sem) for c in batch))


async def _process_all(ctx: PipelineContext, candidates: AsyncIterator[ListingCandidate]) -> RunSummary:
    sem = asyncio.Semaphore(max(1, ctx.config.concurrency))
    batch: List[ListingCandidate] = []
    async for candidate in candidates:
        ctx.summary.discovered += 1
        batch.append(candidate)
        if len(batch) >= ctx.config.batch_size:
            await _process_batch(ctx, batch, sem)
            batch = []
    if batch:
        await _process_batch(ctx, batch, sem)
    finish_run(ctx)
    return ctx.summary


def finish_run(ctx: PipelineContext) -> None:
    """Write categories (file mode) and the run summary."""
    if ctx.config.mode == "file" and not ctx.config.dry_run:
        ctx.registry.save(ctx.config.categories_path)
    ctx.run_log.summary(ctx.summary)
    log_event("run_complete", {"message": "run complete", **ctx.summary.to_dict()}, logger_name="pipeline")
    logger.info(
        f"Done: discovered={ctx.summary.discovered} processed={ctx.summary.processed} "
        f"succeeded={ctx.summary.succeeded} skipped={ctx.summary.skipped} "
        f"errored={ctx.summary.errored} appended={ctx.summary.appended}"
    )


async def run_pipeline(ctx: PipelineContext) -> RunSummary:
    """Run a full discovery + import pass.

    Raises:
        RobotsDisallowedError: If robots.txt forbids the seed and it is not ignored
    """
    check_robots(ctx)
    logger.info(
        f"Start: {ctx.config.seed_url} strategy={ctx.config.strategy} mode={ctx.config.mode} "
        f"concurrency={ctx.config.concurrency} dry_run={ctx.config.dry_run}"
    )
    ctx.run_log.write(f"Start {ctx.run_log.started.isoformat()} strategy={ctx.config.strategy}")
    return await _process_all(ctx, discover_candidates(ctx))


def read_url_list(path: Union[str, Path]) -> List[str]:
    """Read one URL per line, skipping blanks and ``#`` comments.

    Raises:
        FileNotFoundError: If the list file does not exist
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"URL list not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        lines = [line.strip() for line in f]
    return [line for line in lines if line and not line.startswith("#")]


async def run_url_list(ctx: PipelineContext, urls: Iterable[str]) -> RunSummary:
    """Import a fixed list of product URLs, skipping discovery."""

    async def candidates() -> AsyncIterator[ListingCandidate]:
        for url in urls:
            yield ListingCandidate(url=url, source="list")

    ctx.run_log.write(f"Start {ctx.run_log.started.isoformat()} strategy=list")
    return await _process_all(ctx, candidates())
