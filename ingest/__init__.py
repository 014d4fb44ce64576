"""Supplier catalog ingestion package."""

__version__ = "0.1.0"

# Re-export main components for convenient imports
from ingest.categories import CategoryRegistry
from ingest.catalog import ProductCatalog
from ingest.config import PipelineConfig
from ingest.db import SqliteProductStore, init_db
from ingest.models import CategoryNode, ProductRecord, RawProduct
from ingest.pipeline import build_context, run_pipeline, run_url_list
from ingest.store import JsonProductStore
from ingest.text_utils import parse_price, slugify
from ingest.verify import verify_store

__all__ = [
    # Version
    "__version__",
    # Config
    "PipelineConfig",
    # Models
    "CategoryNode",
    "ProductRecord",
    "RawProduct",
    # Stores
    "JsonProductStore",
    "SqliteProductStore",
    "init_db",
    "CategoryRegistry",
    # Core functions
    "build_context",
    "run_pipeline",
    "run_url_list",
    "verify_store",
    "ProductCatalog",
    "parse_price",
    "slugify",
]
