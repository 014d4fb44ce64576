"""Append-only category registry populated while extracting product pages."""

import json
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union
from urllib.parse import unquote, urlparse

from ingest.logging_config import get_logger
from ingest.models import CategoryNode, Crumb, RawProduct
from ingest.store import write_json_atomic

__all__ = [
    "CategoryRegistry",
    "category_path_segments",
    "prettify_segment",
]

logger = get_logger("categories")

CATALOG_ROOT = "catalog"


def category_path_segments(url: str, root: str = CATALOG_ROOT) -> List[str]:
    """Path segments that follow ``root`` in ``url``.

    ``https://x/catalog/plates/deep/`` -> ``["plates", "deep"]``.
    """
    parts = [unquote(p) for p in urlparse(url).path.split("/") if p]
    if root not in parts:
        return []
    return parts[parts.index(root) + 1:]


def prettify_segment(segment: str) -> str:
    text = segment.replace("-", " ").replace("_", " ").strip()
    return text[:1].upper() + text[1:]


class CategoryRegistry:
    """Slug -> CategoryNode map where the first registration of a slug wins.

    Owned by the pipeline context; the extractor registers breadcrumbs into it
    as a side effect of parsing.
    """

    def __init__(self, nodes: Optional[Iterable[CategoryNode]] = None):
        self._nodes: Dict[str, CategoryNode] = {}
        for node in nodes or []:
            self.register(node.slug, node.name, node.parent_slug)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, slug: object) -> bool:
        return slug in self._nodes

    def get(self, slug: str) -> Optional[CategoryNode]:
        return self._nodes.get(slug)

    def nodes(self) -> List[CategoryNode]:
        return list(self._nodes.values())

    def register(self, slug: str, name: str, parent_slug: Optional[str] = None) -> bool:
        """Add a node unless the slug is already known. Returns True when added."""
        if not slug or slug in self._nodes:
            return False
        if parent_slug == slug:
            parent_slug = None
        self._nodes[slug] = CategoryNode(slug=slug, name=name or prettify_segment(slug), parent_slug=parent_slug)
        logger.debug(f"Registered category {slug} (parent: {parent_slug})")
        return True

    def register_crumbs(self, crumbs: List[Crumb]) -> None:
        """Register a breadcrumb trail, parenting each crumb to the previous one."""
        parent: Optional[str] = None
        for crumb in crumbs:
            self.register(crumb.slug, crumb.name, parent)
            parent = crumb.slug

    def register_path(self, url: str, root: str = CATALOG_ROOT) -> List[str]:
        """Register categories from URL path segments; returns the segment slugs."""
        segments = category_path_segments(url, root)
        parent: Optional[str] = None
        for segment in segments:
            self.register(segment, prettify_segment(segment), parent)
            parent = segment
        return segments

    def register_product(self, product: RawProduct) -> None:
        """Register a parsed product's breadcrumbs, or its URL segments without them."""
        if product.crumbs:
            self.register_crumbs(product.crumbs)
        else:
            self.register_path(product.url)

    def to_list(self) -> List[Dict[str, Optional[str]]]:
        return [node.to_dict() for node in self._nodes.values()]

    def save(self, path: Union[str, Path]) -> Path:
        """Write the registry as a JSON array of ``{slug, name, parentSlug}``."""
        path = Path(path)
        write_json_atomic(path, self.to_list())
        logger.info(f"Saved {len(self)} categories to {path}")
        return path

    @classmethod
    def load(cls, path: Union[str, Path]) -> "CategoryRegistry":
        path = Path(path)
        if not path.exists():
            return cls()
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if isinstance(data, dict):
            data = list(data.values())
        return cls(CategoryNode.from_dict(item) for item in data if isinstance(item, dict) and item.get("slug"))
