"""Command-line interface for the ingestion pipeline."""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from ingest.config import PipelineConfig
from ingest.enrich import enrich_store, sync_images_with_disk
from ingest.errors import IngestError, RobotsDisallowedError
from ingest.fetcher import Fetcher
from ingest.images import ImagePipeline
from ingest.logging_config import get_logger, setup_logging
from ingest.pipeline import build_context, open_store, read_url_list, run_pipeline, run_url_list
from ingest.reports import check_integrity, store_stats
from ingest.verify import verify_store

__all__ = ["main", "parse_args", "build_config", "show_stats"]

logger = get_logger("cli")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Supplier catalog ingestion: crawl, extract, download images, persist",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Crawl the default catalog root into data/products.json
  python -m ingest.cli

  # Crawl one category, 8 workers, without touching the store
  python -m ingest.cli --seed https://complex-bar.kz/catalog/plates/ --concurrency 8 --dry-run

  # Import from the sitemap into SQLite
  python -m ingest.cli --strategy sitemap --mode db --db data/catalog.db

  # Import a fixed list of product URLs
  python -m ingest.cli --from-list urls.txt

  # Maintenance passes over the stored catalog
  python -m ingest.cli --verify
  python -m ingest.cli --enrich --generate-descriptions
  python -m ingest.cli --sync-images
  python -m ingest.cli --stats
  python -m ingest.cli --check
        """,
    )

    # Discovery
    parser.add_argument(
        "--strategy",
        choices=["crawl", "sitemap", "stream"],
        help="crawl: breadth-first from the seed (default); sitemap: URLs from sitemap.xml; "
             "stream: walk categories and paginate, yielding product URLs incrementally",
    )
    parser.add_argument("--seed", metavar="URL", help="Category root to crawl from")
    parser.add_argument("--sitemap", metavar="URL", help="Sitemap (or sitemap index) URL")
    parser.add_argument("--prefix", metavar="PATH", help="URL path prefix that scopes discovery (default: /catalog/)")

    # Persistence
    parser.add_argument(
        "--mode",
        choices=["file", "db"],
        help="file: data/products.json + categories.json (default); db: SQLite",
    )
    parser.add_argument("--data-dir", metavar="DIR", type=Path, help="Directory for products.json/categories.json")
    parser.add_argument("--db", metavar="PATH", type=Path, help="SQLite database path (db mode)")
    parser.add_argument("--assets", metavar="DIR", type=Path, help="Asset root; images go to <DIR>/products/<slug>/")
    parser.add_argument(
        "--image-mode",
        choices=["single", "gallery"],
        help="single: one main image (default); gallery: main + 2 alternates",
    )

    # Run shape
    parser.add_argument("--concurrency", type=int, help="Maximum in-flight fetches (default: 4)")
    parser.add_argument("--batch-size", type=int, help="Candidates processed per batch (default: 50)")
    parser.add_argument("--max-products", type=int, help="Stop discovery after this many candidates")
    parser.add_argument("--dry-run", action="store_true", default=None,
                        help="Log what would be imported (DRY lines) without writing anything")
    parser.add_argument("--dry-run-limit", type=int, help="Candidate cap in dry-run mode (default: 200)")
    parser.add_argument("--no-download", action="store_true",
                        help="Don't download images; use files already on disk")
    parser.add_argument("--accept-sparse", action="store_true", default=None,
                        help="Keep records missing description/specs/images (title still required)")
    parser.add_argument("--ignore-robots", action="store_true", default=None,
                        help="Continue even if robots.txt disallows the seed URL")
    parser.add_argument("--from-list", metavar="FILE", help="Import the product URLs listed in FILE (one per line)")

    # Maintenance
    parser.add_argument("--verify", action="store_true",
                        help="Dedupe, repair, validate and re-sort the stored catalog")
    parser.add_argument("--no-refetch", action="store_true",
                        help="With --verify: don't re-fetch source pages for thin records")
    parser.add_argument("--enrich", action="store_true",
                        help="Re-fetch every product's source page to refresh specs and description")
    parser.add_argument("--generate-descriptions", action="store_true",
                        help="Fill short descriptions with neutral placeholder copy")
    parser.add_argument("--sync-images", action="store_true",
                        help="Set each product's images to the WebP files present on disk")

    # Info
    parser.add_argument("--stats", action="store_true", help="Show store statistics and exit")
    parser.add_argument("--check", action="store_true", help="Run the integrity check and exit")

    parser.add_argument("--env-file", metavar="PATH", help="Load settings from this .env file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> PipelineConfig:
    """Environment config with CLI flags layered on top."""
    config = PipelineConfig.from_env(args.env_file)

    overrides: Dict[str, Any] = {
        "strategy": args.strategy,
        "sitemap_url": args.sitemap,
        "mode": args.mode,
        "data_dir": args.data_dir,
        "db_path": args.db,
        "asset_root": args.assets,
        "image_mode": args.image_mode,
        "concurrency": args.concurrency,
        "batch_size": args.batch_size,
        "max_products": args.max_products,
        "dry_run": args.dry_run,
        "dry_run_limit": args.dry_run_limit,
        "accept_sparse": args.accept_sparse,
        "ignore_robots": args.ignore_robots,
        "url_prefix": args.prefix,
    }
    if args.seed:
        parsed = urlparse(args.seed)
        overrides["seed_url"] = args.seed
        overrides["base_url"] = f"{parsed.scheme}://{parsed.netloc}"
        if not args.prefix:
            overrides["url_prefix"] = parsed.path or "/"
    if args.sitemap and not args.strategy:
        overrides["strategy"] = "sitemap"
    if args.no_download:
        overrides["download_images"] = False
    if args.data_dir and not args.db:
        overrides["db_path"] = args.data_dir / "catalog.db"

    return config.with_overrides(**overrides)


def show_stats(config: PipelineConfig) -> None:
    """Print store statistics."""
    stats = store_stats(open_store(config))
    target = config.db_path if config.mode == "db" else config.products_path
    print(f"\n{'='*50}")
    print(f"Store: {target}")
    print(f"{'='*50}")
    print(json.dumps(stats, indent=2))
    print()


def _run_import(config: PipelineConfig, from_list: Optional[str]) -> int:
    fetcher = Fetcher(headers=config.headers)
    try:
        ctx = build_context(config, fetcher)
        if from_list:
            urls = read_url_list(from_list)
            logger.info(f"Importing {len(urls)} URLs from {from_list}")
            summary = asyncio.run(run_url_list(ctx, urls))
        else:
            summary = asyncio.run(run_pipeline(ctx))
    finally:
        fetcher.close()

    print("\n" + "\n".join(summary.lines()))
    print(f"Run log: {ctx.run_log.path}")
    return 0


def _run_maintenance(args: argparse.Namespace, config: PipelineConfig, store: Any, images: ImagePipeline) -> int:
    """Post-import passes over an existing store: check, sync, enrich, verify."""
    if args.check:
        categories = config.categories_path if config.mode == "file" else None
        report = check_integrity(store, images, categories, log_path=config.log_dir / "final_import_check.log")
        print("\n".join(report.lines))
        return 0 if report.ok else 1

    if args.sync_images:
        updated, skipped = sync_images_with_disk(store, images)
        print(f"Synced images. Updated products: {updated}; Skipped: {skipped}")
        return 0

    if args.enrich or args.generate_descriptions:
        fetcher = images.fetcher if args.enrich else None
        report = enrich_store(store, fetcher, generate_descriptions=args.generate_descriptions)
        print("\n".join(report.lines()))
        return 0

    fetcher = None if args.no_refetch else images.fetcher
    report = verify_store(
        store,
        images,
        fetcher,
        image_mode=config.image_mode,
        summary_path=config.log_dir / "verify_summary.md",
    )
    print("\n".join(report.lines()))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for CLI. Returns the process exit code."""
    args = parse_args(argv)
    config = build_config(args)
    setup_logging(level=logging.DEBUG if args.verbose else logging.INFO, log_dir=config.log_dir)

    try:
        if args.stats:
            show_stats(config)
            return 0

        if not (args.check or args.sync_images or args.enrich or args.generate_descriptions or args.verify):
            return _run_import(config, args.from_list)

        store = open_store(config)
        fetcher = Fetcher(headers=config.headers)
        try:
            return _run_maintenance(args, config, store, ImagePipeline(fetcher, config.asset_root))
        finally:
            fetcher.close()

    except RobotsDisallowedError as e:
        logger.error(f"{e} (pass --ignore-robots to override)")
        return 1
    except FileNotFoundError as e:
        logger.error(str(e))
        return 1
    except IngestError as e:
        logger.error(f"Fatal: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
