"""Configuration and constants for the catalog ingestion pipeline."""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv

__all__ = [
    "DEFAULT_BASE_URL",
    "HEADERS",
    "REQUEST_TIMEOUT",
    "FETCH_RETRIES",
    "FETCH_BACKOFF_MS",
    "STORE_WRITE_ATTEMPTS",
    "STORE_BACKOFF_MS",
    "STORE_BACKOFF_CAP_MS",
    "IMAGE_MAX_WIDTH",
    "IMAGE_QUALITY",
    "IMAGE_RETRIES",
    "IMAGE_RETRY_DELAY",
    "IMAGE_CANDIDATES",
    "IMAGE_SLOTS",
    "PLACEHOLDER_COLOR",
    "PLACEHOLDER_SIZE",
    "MAX_PAGE_IMAGES",
    "DESCRIPTION_SENTENCES",
    "ENRICH_DESCRIPTION_SENTENCES",
    "MIN_DESCRIPTION_LENGTH",
    "MIN_SPECS",
    "MAX_SPEC_KEY_LENGTH",
    "MAX_SPEC_VALUE_LENGTH",
    "DEFAULT_TITLE",
    "SPEC_LABELS",
    "PipelineConfig",
    "env_flag",
]

DEFAULT_BASE_URL = "https://complex-bar.kz"

# HTTP headers for polite scraping
HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; catalog-ingest/0.1)",
    "Accept-Language": "ru-RU,ru;q=0.9,en;q=0.8",
}

# Request timeout (seconds)
REQUEST_TIMEOUT = 20

# Fetch retries: sleeps of FETCH_BACKOFF_MS * 2^attempt between attempts
FETCH_RETRIES = 3
FETCH_BACKOFF_MS = 400

# Atomic store writes: 100ms doubling, capped at 2s
STORE_WRITE_ATTEMPTS = 20
STORE_BACKOFF_MS = 100
STORE_BACKOFF_CAP_MS = 2000

# Image pipeline
IMAGE_MAX_WIDTH = 800
IMAGE_QUALITY = 82
IMAGE_RETRIES = 3
IMAGE_RETRY_DELAY = 0.3  # seconds, fixed
IMAGE_CANDIDATES = 5
IMAGE_SLOTS = ("main", "alt1", "alt2")
PLACEHOLDER_COLOR = "#e5e7eb"
PLACEHOLDER_SIZE = (800, 800)
MAX_PAGE_IMAGES = 10

# Text normalization
DESCRIPTION_SENTENCES = 4
ENRICH_DESCRIPTION_SENTENCES = 8
MIN_DESCRIPTION_LENGTH = 10  # a valid description is strictly longer
MIN_SPECS = 2
MAX_SPEC_KEY_LENGTH = 80
MAX_SPEC_VALUE_LENGTH = 500
DEFAULT_TITLE = "Товар"

# =============================================================================
# Spec label aliases
# =============================================================================
# Classification field -> list of possible characteristics-table labels.
# Looked up with pick_spec() (exact first, then case-insensitive).

SPEC_LABELS: Dict[str, List[str]] = {
    "material": ["Материал", "Материал изделия", "Material"],
    "color": ["Цвет", "Цвет изделия", "Color", "Colour"],
    "brand": ["Бренд", "Производитель", "Торговая марка", "Brand"],
}


def env_flag(value: Optional[str], default: bool = False) -> bool:
    """Interpret an environment string as a boolean flag."""
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(*names: str, default: int) -> int:
    for name in names:
        raw = os.getenv(name)
        if raw:
            try:
                return int(raw)
            except ValueError:
                continue
    return default


@dataclass
class PipelineConfig:
    """Runtime configuration for one pipeline run.

    Built from the environment (and an optional ``.env`` file) by
    :meth:`from_env`; CLI flags override individual fields via :meth:`with_overrides`.
    """

    base_url: str = DEFAULT_BASE_URL
    seed_url: str = DEFAULT_BASE_URL + "/catalog/"
    sitemap_url: str = DEFAULT_BASE_URL + "/sitemap.xml"
    url_prefix: str = "/catalog/"
    product_prefix: str = "/product/"
    strategy: str = "crawl"  # crawl | sitemap | stream
    mode: str = "file"  # file | db
    data_dir: Path = Path("data")
    db_path: Path = Path("data/catalog.db")
    asset_root: Path = Path("public")
    image_mode: str = "single"  # single | gallery
    concurrency: int = 4
    batch_size: int = 50
    dry_run: bool = False
    dry_run_limit: int = 200
    max_visited: int = 2000
    max_products: int = 5000
    max_depth: int = 8
    sample_anchors: int = 20
    ignore_robots: bool = False
    download_images: bool = True
    accept_sparse: bool = False
    bing_search_key: Optional[str] = None
    log_dir: Path = Path("logs")
    headers: Dict[str, str] = field(default_factory=lambda: dict(HEADERS))

    @property
    def products_path(self) -> Path:
        return self.data_dir / "products.json"

    @property
    def categories_path(self) -> Path:
        return self.data_dir / "categories.json"

    @property
    def host(self) -> str:
        return urlparse(self.base_url).netloc.lower()

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "PipelineConfig":
        """Build a config from environment variables (loading ``.env`` first)."""
        load_dotenv(env_file)

        base_url = (os.getenv("IMPORT_BASE_URL") or DEFAULT_BASE_URL).rstrip("/")
        seed_url = os.getenv("SUPPLIER_URL") or f"{base_url}/catalog/"
        url_prefix = os.getenv("IMPORT_URL_PREFIX") or "/catalog/"
        if os.getenv("SUPPLIER_URL"):
            url_prefix = urlparse(seed_url).path or url_prefix

        data_dir = Path(os.getenv("FILE_DB_DIR") or "data")
        return cls(
            base_url=base_url,
            seed_url=seed_url,
            sitemap_url=os.getenv("IMPORT_SITEMAP_URL") or f"{base_url}/sitemap.xml",
            url_prefix=url_prefix,
            product_prefix=os.getenv("IMPORT_PRODUCT_PREFIX") or "/product/",
            strategy=(os.getenv("IMPORT_STRATEGY") or "crawl").lower(),
            mode=(os.getenv("IMPORT_MODE") or "file").lower(),
            data_dir=data_dir,
            db_path=Path(os.getenv("IMPORT_DB_PATH") or data_dir / "catalog.db"),
            asset_root=Path(os.getenv("IMPORT_SAVE_IMAGES_DIR") or "public"),
            image_mode=(os.getenv("IMPORT_IMAGE_MODE") or "single").lower(),
            concurrency=_env_int("IMPORT_CONCURRENCY", "IMPORT_RATE_LIMIT_CONCURRENCY", default=4),
            batch_size=_env_int("IMPORT_BATCH_SIZE", "IMPORT_BATCH", default=50),
            dry_run=env_flag(os.getenv("DRY_RUN")),
            dry_run_limit=_env_int("DRY_RUN_LIMIT", default=200),
            max_visited=_env_int("IMPORT_MAX_VISITED", default=2000),
            max_products=_env_int("IMPORT_MAX_PRODUCTS", default=5000),
            ignore_robots=env_flag(os.getenv("IMPORT_IGNORE_ROBOTS")),
            bing_search_key=os.getenv("BING_SEARCH_KEY") or None,
            log_dir=Path(os.getenv("IMPORT_LOG_DIR") or "logs"),
        )

    def with_overrides(self, **overrides: Any) -> "PipelineConfig":
        """Return a copy with every non-None override applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes)
