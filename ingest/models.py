"""Data models for extracted and persisted products."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ingest.text_utils import slugify

__all__ = [
    "Crumb",
    "CategoryNode",
    "RawProduct",
    "ListingCandidate",
    "ProductRecord",
    "utc_now",
]


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


@dataclass
class Crumb:
    """One breadcrumb step: display name and its category slug."""

    name: str
    slug: str


@dataclass
class CategoryNode:
    """Category discovered from breadcrumbs or URL path segments."""

    slug: str
    name: str
    parent_slug: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"slug": self.slug, "name": self.name, "parentSlug": self.parent_slug}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CategoryNode":
        return cls(
            slug=data["slug"],
            name=data.get("name") or data["slug"],
            parent_slug=data.get("parentSlug"),
        )


@dataclass
class RawProduct:
    """Extractor output for a single product page, before images and persistence."""

    url: str
    title: str
    price: Optional[int] = None
    price_text: Optional[str] = None
    description: str = ""
    specs: Dict[str, str] = field(default_factory=dict)
    image_urls: List[str] = field(default_factory=list)
    brand: Optional[str] = None
    material: Optional[str] = None
    color: Optional[str] = None
    category_slug: Optional[str] = None
    subcategory_slug: Optional[str] = None
    crumbs: List[Crumb] = field(default_factory=list)

    @property
    def slug(self) -> str:
        return slugify(self.title)

    def spec_pairs(self) -> Dict[str, str]:
        """Specs with empty keys or values removed."""
        return {k: v for k, v in self.specs.items() if k and v}


@dataclass
class ListingCandidate:
    """A URL the crawl frontier believes may be a product.

    ``product`` is set when the page was already parsed during discovery
    (sample-parse or product-page hit) so the pipeline need not refetch it.
    """

    url: str
    title: Optional[str] = None
    price: Optional[int] = None
    image_url: Optional[str] = None
    product: Optional[RawProduct] = None
    source: str = "page"  # page | tile | sample | sitemap | stream | list


# Optional classification fields, emitted after sourceUrl when non-empty
_OPTIONAL_FIELDS = [
    ("brand", "brand"),
    ("material", "material"),
    ("color", "color"),
    ("category_slug", "categorySlug"),
    ("subcategory_slug", "subcategorySlug"),
]


@dataclass
class ProductRecord:
    """Normalized product as persisted by the stores.

    ``images`` holds content-relative paths under the product's own asset
    directory, e.g. ``/products/<slug>/main.webp``.
    """

    slug: str
    title: str
    price: Optional[int] = None
    description: str = ""
    specs: Dict[str, str] = field(default_factory=dict)
    images: List[str] = field(default_factory=list)
    source_url: Optional[str] = None
    brand: Optional[str] = None
    material: Optional[str] = None
    color: Optional[str] = None
    category_slug: Optional[str] = None
    subcategory_slug: Optional[str] = None
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize with a stable key order for diff-friendly JSON."""
        data: Dict[str, Any] = {
            "slug": self.slug,
            "title": self.title,
            "price": self.price,
            "description": self.description,
            "specs": dict(self.specs),
            "images": list(self.images),
        }
        if self.source_url:
            data["sourceUrl"] = self.source_url
        for attr, key in _OPTIONAL_FIELDS:
            value = getattr(self, attr)
            if value:
                data[key] = value
        if self.created_at:
            data["createdAt"] = self.created_at
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProductRecord":
        title = data.get("title") or data.get("name") or ""
        price = data.get("price")
        specs = data.get("specs") or {}
        if isinstance(specs, list):
            specs = {s.get("name"): s.get("value") for s in specs if isinstance(s, dict)}
        brand = data.get("brand")
        if isinstance(brand, dict):
            brand = brand.get("name")
        return cls(
            slug=data.get("slug") or slugify(title),
            title=title,
            price=int(price) if isinstance(price, (int, float)) and price else None,
            description=data.get("description") or "",
            specs={str(k): str(v) for k, v in specs.items() if k and v is not None},
            images=[str(p) for p in data.get("images") or [] if p],
            source_url=data.get("sourceUrl") or data.get("supplierUrl"),
            brand=brand,
            material=data.get("material"),
            color=data.get("color"),
            category_slug=data.get("categorySlug"),
            subcategory_slug=data.get("subcategorySlug"),
            created_at=data.get("createdAt"),
        )

    @classmethod
    def from_raw(cls, raw: RawProduct, images: List[str]) -> "ProductRecord":
        return cls(
            slug=raw.slug,
            title=raw.title,
            price=raw.price,
            description=raw.description,
            specs=raw.spec_pairs(),
            images=list(images),
            source_url=raw.url,
            brand=raw.brand,
            material=raw.material,
            color=raw.color,
            category_slug=raw.category_slug,
            subcategory_slug=raw.subcategory_slug,
        )

    def spec_count(self) -> int:
        return sum(1 for k, v in self.specs.items() if k and v and str(v).strip())
