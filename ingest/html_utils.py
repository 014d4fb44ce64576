"""HTML parsing and extraction utilities.

Every product field is extracted by an ordered list of named strategies. Each
strategy is a plain function over a parsed document, and
:func:`first_non_empty` returns the first strategy result that is not empty,
so the site-specific heuristics stay isolated and testable one by one.
"""

import json
import re
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from bs4 import BeautifulSoup, Tag

from ingest.categories import CategoryRegistry, category_path_segments
from ingest.config import (
    DEFAULT_TITLE,
    DESCRIPTION_SENTENCES,
    MAX_PAGE_IMAGES,
    MAX_SPEC_KEY_LENGTH,
    MAX_SPEC_VALUE_LENGTH,
    SPEC_LABELS,
)
from ingest.models import Crumb, ListingCandidate, RawProduct
from ingest.text_utils import collapse_ws, parse_price, sanitize_description, sanitize_text
from ingest.url_validation import absolute_url, is_in_scope, looks_like_image_url, strip_query

__all__ = [
    "make_soup",
    "first_non_empty",
    "TITLE_STRATEGIES",
    "PRICE_STRATEGIES",
    "DESCRIPTION_STRATEGIES",
    "IMAGE_STRATEGIES",
    "BREADCRUMB_STRATEGIES",
    "extract_title",
    "extract_price",
    "extract_description",
    "extract_specs",
    "extract_images",
    "extract_breadcrumbs",
    "is_image_candidate",
    "pick_spec",
    "is_product_page",
    "parse_product_page",
    "extract_listing_tiles",
    "extract_links",
    "find_product_anchors",
    "extract_listing_product_links",
    "extract_pagination_urls",
    "extract_subcategory_links",
]

Strategy = Tuple[str, Callable[[BeautifulSoup], Any]]

PRODUCT_LD_RE = re.compile(r'"@type"\s*:\s*"Product"', re.IGNORECASE)

# Gallery containers, most specific first
GALLERY_SELECTORS = [
    ".product-gallery",
    ".swiper-wrapper",
    ".cm-image-gallery",
    ".ty-product-img",
    ".ty-product-images",
    "#product_images",
    ".product-main-image",
    ".product-images",
    "[data-gallery]",
]

# Data attributes that hold the full-size image, checked before src/href
IMAGE_DATA_ATTRS = ["data-ca-image-path", "data-large-src", "data-src", "data-lazy", "data-lazy-src", "data-original"]

IMAGE_REJECT_RE = re.compile(r"placeholder|no-image|sprite|\.svg(\?|$)", re.IGNORECASE)
LOGO_RE = re.compile(r"(/images/logos/|(^|/)logo(\.|-|_|/))", re.IGNORECASE)
CDN_HINT_RE = re.compile(r"(scalesta-cdn\.com|/images/detailed/|/product/)", re.IGNORECASE)

DESCRIPTION_SELECTORS = [
    "#content_description",
    '[id*="описан" i]',
    ".ty-wysiwyg-content",
    ".product-description",
    '[itemprop="description"]',
]

# Navigation labels that show up in two-column menus, never real specs
MENU_KEYS_RE = re.compile(
    r"^\s*(Бренды|Серии|Новинки|Ликвидация|Блог|Каталог по заведениям|Фуршетные линии|"
    r"Технологическое оборудование|Вспомогательный инвентарь|Униформа|Хозяйственные товары)\s*$",
    re.IGNORECASE,
)

PAGINATION_SELECTORS = 'a[href*="PAGEN_"], a[href*="page="], .pagination a[href], .ty-pagination a[href], link[rel="next"]'


def make_soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "html.parser")


def first_non_empty(soup: BeautifulSoup, strategies: Sequence[Strategy]) -> Tuple[Any, Optional[str]]:
    """Run strategies in order; return the first non-empty value and its strategy name."""
    for name, strategy in strategies:
        value = strategy(soup)
        if value:
            return value, name
    return None, None


def _text(el: Optional[Tag]) -> str:
    return collapse_ws(el.get_text(" ", strip=True)) if el is not None else ""


def _attr(el: Tag, name: str) -> str:
    value = el.get(name)
    if isinstance(value, list):
        value = " ".join(value)
    return str(value).strip() if value else ""


# =============================================================================
# Structured data
# =============================================================================

def _json_ld_items(soup: BeautifulSoup) -> Iterator[Dict[str, Any]]:
    """Yield every JSON-LD object on the page, flattening lists and @graph."""
    for script in soup.find_all("script", type="application/ld+json"):
        raw = script.string or script.get_text()
        if not raw:
            continue
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            continue
        stack = data if isinstance(data, list) else [data]
        while stack:
            item = stack.pop(0)
            if not isinstance(item, dict):
                continue
            if isinstance(item.get("@graph"), list):
                stack.extend(item["@graph"])
            yield item


def _is_type(item: Dict[str, Any], type_name: str) -> bool:
    t = item.get("@type")
    if isinstance(t, list):
        return type_name in t
    return t == type_name


def _ld_products(soup: BeautifulSoup) -> List[Dict[str, Any]]:
    return [item for item in _json_ld_items(soup) if _is_type(item, "Product")]


# =============================================================================
# Title
# =============================================================================

def title_from_h1(soup: BeautifulSoup) -> str:
    return _text(soup.find("h1"))


def title_from_structured_data(soup: BeautifulSoup) -> str:
    for item in _ld_products(soup):
        name = collapse_ws(item.get("name"))
        if name:
            return name
    el = soup.select_one('[itemtype*="Product"] [itemprop="name"]') or soup.select_one('[itemprop="name"]')
    if el is not None:
        return collapse_ws(_attr(el, "content") or _text(el))
    return ""


TITLE_STRATEGIES: List[Strategy] = [
    ("h1", title_from_h1),
    ("structured_data", title_from_structured_data),
]


def extract_title(soup: BeautifulSoup) -> str:
    title, _ = first_non_empty(soup, TITLE_STRATEGIES)
    return title or DEFAULT_TITLE


# =============================================================================
# Price
# =============================================================================

def price_from_structured_data(soup: BeautifulSoup) -> Optional[int]:
    el = soup.select_one('[itemprop="price"]')
    if el is not None:
        price = parse_price(_attr(el, "content") or _text(el))
        if price:
            return price
    for item in _ld_products(soup):
        offers = item.get("offers")
        for offer in offers if isinstance(offers, list) else [offers]:
            if isinstance(offer, dict):
                price = parse_price(str(offer.get("price") or offer.get("lowPrice") or ""))
                if price:
                    return price
    return None


def price_from_price_elements(soup: BeautifulSoup) -> Optional[int]:
    """Longest digit-bearing text among elements whose class or id mentions "price"."""
    best = ""
    for el in soup.select('[class*="price" i], [id*="price" i]'):
        text = _attr(el, "data-price") or _text(el)
        if any(ch.isdigit() for ch in text) and len(text) > len(best):
            best = text
    return parse_price(best)


PRICE_STRATEGIES: List[Strategy] = [
    ("structured_data", price_from_structured_data),
    ("price_elements", price_from_price_elements),
]


def extract_price(soup: BeautifulSoup) -> Optional[int]:
    price, _ = first_non_empty(soup, PRICE_STRATEGIES)
    return price


# =============================================================================
# Description
# =============================================================================

def description_from_containers(soup: BeautifulSoup) -> str:
    for selector in DESCRIPTION_SELECTORS:
        el = soup.select_one(selector)
        text = _text(el)
        if len(text) > 10:
            return text
    return ""


def description_from_longest_paragraph(soup: BeautifulSoup) -> str:
    best = ""
    for p in soup.find_all("p"):
        text = _text(p)
        if len(text) > len(best):
            best = text
    return best


DESCRIPTION_STRATEGIES: List[Strategy] = [
    ("containers", description_from_containers),
    ("longest_paragraph", description_from_longest_paragraph),
]


def extract_description(soup: BeautifulSoup, max_sentences: int = DESCRIPTION_SENTENCES) -> str:
    text, _ = first_non_empty(soup, DESCRIPTION_STRATEGIES)
    return sanitize_description(text or "", max_sentences)


# =============================================================================
# Specs
# =============================================================================

def extract_specs(soup: BeautifulSoup) -> Dict[str, str]:
    """Collect characteristics from tables, definition lists and feature blocks.

    Pairs with an over-long key or value are noise and are dropped; the first
    value seen for a key is kept.
    """
    specs: Dict[str, str] = {}

    def add(raw_key: str, raw_value: str) -> None:
        key = collapse_ws(raw_key).rstrip(":").strip()
        value = sanitize_text(raw_value)
        if not key or not value:
            return
        if len(key) > MAX_SPEC_KEY_LENGTH or len(value) > MAX_SPEC_VALUE_LENGTH:
            return
        if MENU_KEYS_RE.match(key) or key in specs:
            return
        specs[key] = value

    for table in soup.find_all("table"):
        for tr in table.find_all("tr"):
            cells = tr.find_all(["td", "th"])
            if len(cells) >= 2:
                add(_text(cells[0]), _text(cells[1]))

    for dl in soup.find_all("dl"):
        for dt in dl.find_all("dt"):
            dd = dt.find_next_sibling("dd")
            if dd is not None:
                add(_text(dt), _text(dd))

    for block in soup.select('[class*="product-feature" i]'):
        name_el = block.select_one('[class*="label" i], [class*="name" i]')
        value_el = block.select_one('[class*="value" i]')
        if name_el is not None and value_el is not None and name_el is not value_el:
            add(_text(name_el), _text(value_el))

    return specs


def pick_spec(specs: Dict[str, str], keys: List[str]) -> Optional[str]:
    """Pick a spec value by trying a list of possible labels (case-insensitive)."""
    for k in keys:
        if k in specs:
            return specs[k]

    lower_map = {kk.lower(): vv for kk, vv in specs.items()}
    for k in keys:
        if k.lower() in lower_map:
            return lower_map[k.lower()]
    return None


def extract_brand(soup: BeautifulSoup, specs: Dict[str, str]) -> Optional[str]:
    for item in _ld_products(soup):
        brand = item.get("brand")
        if isinstance(brand, dict):
            brand = brand.get("name")
        if brand:
            return collapse_ws(str(brand))
    el = soup.select_one('[itemprop="brand"]')
    if el is not None:
        name = _attr(el, "content") or _text(el)
        if name:
            return name
    return pick_spec(specs, SPEC_LABELS["brand"])


# =============================================================================
# Images
# =============================================================================

def is_image_candidate(url: str) -> bool:
    """Reject placeholders, sprites, SVGs and site logos."""
    return not IMAGE_REJECT_RE.search(url) and not LOGO_RE.search(url)


def _srcset_urls(value: str) -> List[str]:
    return [part.strip().split(" ")[0] for part in value.split(",") if part.strip()]


def _element_image_urls(el: Tag) -> List[str]:
    urls = _srcset_urls(_attr(el, "srcset"))
    for attr in IMAGE_DATA_ATTRS:
        value = _attr(el, attr)
        if value:
            urls.append(value)
            break
    src = _attr(el, "src")
    if src:
        urls.append(src)
    href = _attr(el, "href")
    if href and looks_like_image_url(href):
        urls.append(href)
    return urls


class _ImageCollector:
    def __init__(self, base_url: str):
        self.base_url = base_url
        self.seen: set = set()
        self.urls: List[str] = []

    def add(self, raw: str) -> None:
        url = absolute_url(raw, self.base_url)
        if not url or not is_image_candidate(url) or url in self.seen:
            return
        self.seen.add(url)
        self.urls.append(url)


def images_from_gallery(soup: BeautifulSoup, base_url: str) -> List[str]:
    collector = _ImageCollector(base_url)
    for selector in GALLERY_SELECTORS:
        for container in soup.select(selector):
            for el in container.find_all(["img", "a", "source"]):
                for url in _element_image_urls(el):
                    collector.add(url)
    return collector.urls


def images_from_document(soup: BeautifulSoup, base_url: str) -> List[str]:
    """Document-wide scan restricted to likely product CDN paths."""
    collector = _ImageCollector(base_url)
    for meta in soup.select('meta[property="og:image"], [itemprop="image"]'):
        collector.add(_attr(meta, "content") or _attr(meta, "src"))
    for el in soup.find_all(["img", "a"]):
        for url in _element_image_urls(el):
            if CDN_HINT_RE.search(url) or looks_like_image_url(url):
                collector.add(url)
    return collector.urls


IMAGE_STRATEGIES = [
    ("gallery", images_from_gallery),
    ("document", images_from_document),
]


def extract_images(soup: BeautifulSoup, base_url: str, limit: int = MAX_PAGE_IMAGES) -> List[str]:
    for _, strategy in IMAGE_STRATEGIES:
        urls = strategy(soup, base_url)
        if urls:
            return urls[:limit]
    return []


# =============================================================================
# Breadcrumbs / categories
# =============================================================================

def _crumb(name: str, href: str, base_url: str) -> Optional[Crumb]:
    name = collapse_ws(name)
    url = absolute_url(href, base_url) if href else None
    if not name or not url:
        return None
    segments = category_path_segments(url)
    if not segments:
        return None
    return Crumb(name=name, slug=segments[-1])


def breadcrumbs_from_json_ld(soup: BeautifulSoup, base_url: str) -> List[Crumb]:
    crumbs: List[Crumb] = []
    for item in _json_ld_items(soup):
        if not _is_type(item, "BreadcrumbList"):
            continue
        for element in item.get("itemListElement") or []:
            if not isinstance(element, dict):
                continue
            target = element.get("item")
            name = element.get("name") or ""
            href = ""
            if isinstance(target, dict):
                href = target.get("@id") or target.get("id") or target.get("url") or ""
                name = name or target.get("name") or ""
            elif isinstance(target, str):
                href = target
            crumb = _crumb(str(name), str(href), base_url)
            if crumb:
                crumbs.append(crumb)
    return crumbs


def breadcrumbs_from_microdata(soup: BeautifulSoup, base_url: str) -> List[Crumb]:
    crumbs: List[Crumb] = []
    for el in soup.select('[itemtype*="BreadcrumbList"] [itemprop="itemListElement"]'):
        link = el.select_one('a, [itemprop="item"]')
        if link is None:
            continue
        name_el = el.select_one('[itemprop="name"]')
        name = _attr(link, "title") or _text(name_el) or _text(link)
        crumb = _crumb(name, _attr(link, "href") or _attr(link, "content"), base_url)
        if crumb:
            crumbs.append(crumb)
    return crumbs


def breadcrumbs_from_css(soup: BeautifulSoup, base_url: str) -> List[Crumb]:
    crumbs: List[Crumb] = []
    for link in soup.select('.breadcrumb a, .breadcrumbs a, .ty-breadcrumbs a, nav[aria-label*="bread" i] a'):
        crumb = _crumb(_attr(link, "title") or _text(link), _attr(link, "href"), base_url)
        if crumb:
            crumbs.append(crumb)
    return crumbs


BREADCRUMB_STRATEGIES = [
    ("json_ld", breadcrumbs_from_json_ld),
    ("microdata", breadcrumbs_from_microdata),
    ("css", breadcrumbs_from_css),
]


def extract_breadcrumbs(soup: BeautifulSoup, base_url: str) -> List[Crumb]:
    for _, strategy in BREADCRUMB_STRATEGIES:
        crumbs = strategy(soup, base_url)
        if crumbs:
            unique: List[Crumb] = []
            for crumb in crumbs:
                if all(c.slug != crumb.slug for c in unique):
                    unique.append(crumb)
            return unique
    return []


# =============================================================================
# Page classification and product parsing
# =============================================================================

def has_product_marker(soup: BeautifulSoup) -> bool:
    for script in soup.find_all("script", type="application/ld+json"):
        if PRODUCT_LD_RE.search(script.string or script.get_text() or ""):
            return True
    return soup.select_one('[itemtype*="Product"]') is not None


def is_product_page(soup: BeautifulSoup) -> bool:
    """A product page carries a product structured-data marker and an <h1>."""
    return has_product_marker(soup) and soup.find("h1") is not None


def parse_product_page(
    url: str,
    html: str,
    registry: Optional[CategoryRegistry] = None,
    max_sentences: int = DESCRIPTION_SENTENCES,
) -> RawProduct:
    """Parse a product page into a RawProduct.

    Breadcrumbs (or, failing that, catalog URL segments) are registered into
    ``registry`` as a side effect.
    """
    soup = make_soup(html)
    specs = extract_specs(soup)
    crumbs = extract_breadcrumbs(soup, url)
    category_path = [c.slug for c in crumbs] or category_path_segments(url)

    price_text = None
    price_el = soup.select_one('[itemprop="price"], [class*="price" i]')
    if price_el is not None:
        price_text = _attr(price_el, "content") or _text(price_el) or None

    material = pick_spec(specs, SPEC_LABELS["material"])
    color = pick_spec(specs, SPEC_LABELS["color"])

    product = RawProduct(
        url=strip_query(url),
        title=extract_title(soup),
        price=extract_price(soup),
        price_text=price_text,
        description=extract_description(soup, max_sentences),
        specs=specs,
        image_urls=extract_images(soup, url),
        brand=extract_brand(soup, specs),
        material=material,
        color=color,
        category_slug=category_path[0] if category_path else None,
        subcategory_slug=category_path[1] if len(category_path) > 1 else None,
        crumbs=crumbs,
    )
    if registry is not None:
        registry.register_product(product)
    return product


# =============================================================================
# Listing pages
# =============================================================================

def _in_product_scope(url: str, host: str, prefix: str, product_prefix: str) -> bool:
    path = urlparse(url).path
    return path.startswith(product_prefix) or is_in_scope(url, host, prefix)


def extract_listing_tiles(
    soup: BeautifulSoup,
    page_url: str,
    prefix: str,
    product_prefix: str = "/product/",
) -> List[ListingCandidate]:
    """Image+title anchors on a listing page as low-confidence candidates."""
    host = urlparse(page_url).netloc
    tiles: List[ListingCandidate] = []
    seen: set = set()
    for img in soup.select("a[href] img"):
        anchor = img.find_parent("a")
        url = absolute_url(_attr(anchor, "href"), page_url) if anchor is not None else None
        if not url or "#" in url:
            continue
        url = strip_query(url)
        if url in seen or not _in_product_scope(url, host, prefix, product_prefix):
            continue
        node = anchor.find_parent(class_=re.compile(r"product|card|item", re.IGNORECASE)) or anchor.parent
        heading = node.find(["h2", "h3", "h4"]) if node is not None else None
        name = _attr(img, "alt") or _attr(anchor, "title") or _text(heading)
        if not name:
            continue
        price = None
        if node is not None:
            price_el = node.select_one('[itemprop="price"], [class*="price" i]')
            if price_el is not None:
                price = parse_price(_attr(price_el, "content") or _text(price_el))
        src = next(iter(_element_image_urls(img)), "")
        seen.add(url)
        tiles.append(ListingCandidate(
            url=url,
            title=collapse_ws(name),
            price=price,
            image_url=absolute_url(src, page_url) if src else None,
            source="tile",
        ))
    return tiles


def extract_links(soup: BeautifulSoup, page_url: str) -> List[str]:
    """All absolute http(s) links on the page in DOM order, fragments dropped."""
    links: List[str] = []
    seen: set = set()
    for a in soup.find_all("a", href=True):
        url = absolute_url(_attr(a, "href"), page_url)
        if not url:
            continue
        url = url.split("#", 1)[0]
        if url not in seen:
            seen.add(url)
            links.append(url)
    return links


def find_product_anchors(soup: BeautifulSoup, page_url: str, product_prefix: str = "/product/") -> List[str]:
    """Links that point at product detail pages, in DOM order."""
    host = urlparse(page_url).netloc
    out: List[str] = []
    seen: set = set()
    for url in extract_links(soup, page_url):
        parsed = urlparse(url)
        if parsed.netloc != host or not parsed.path.startswith(product_prefix):
            continue
        url = strip_query(url)
        if url not in seen:
            seen.add(url)
            out.append(url)
    return out


def extract_listing_product_links(soup: BeautifulSoup, page_url: str, product_prefix: str = "/product/") -> List[str]:
    """Product links anywhere in a listing page (``/product/`` in the path)."""
    out: List[str] = []
    for a in soup.select(f'a[href*="{product_prefix}"]'):
        url = absolute_url(_attr(a, "href"), page_url)
        if url and product_prefix in urlparse(url).path:
            url = strip_query(url)
            if url not in out:
                out.append(url)
    return out


def extract_pagination_urls(soup: BeautifulSoup, page_url: str) -> List[str]:
    urls: List[str] = []
    for el in soup.select(PAGINATION_SELECTORS):
        url = absolute_url(_attr(el, "href"), page_url)
        if url and url != page_url and url not in urls:
            urls.append(url)
    return urls


def extract_subcategory_links(soup: BeautifulSoup, page_url: str, root_url: str) -> List[str]:
    """Category pages nested under ``root_url`` (brand and product links excluded)."""
    links: List[str] = []
    for a in soup.select('a[href*="/catalog/"]'):
        href = _attr(a, "href")
        if "/product/" in href or "/brands" in href or "/brand-" in href:
            continue
        url = absolute_url(href, page_url)
        if not url:
            continue
        url = strip_query(url)
        if re.search(r"/catalog/.+/$", url) and url.startswith(root_url) and url != page_url and url not in links:
            links.append(url)
    return links
