"""Shared fixtures: an in-memory HTTP session and HTML page builders."""

import json
from io import BytesIO
from typing import Callable, Dict, List, Optional, Union

import pytest
from PIL import Image

from ingest.fetcher import Fetcher

BASE = "https://supplier.example"


class FakeResponse:
    def __init__(self, status_code: int, content: bytes, content_type: str = "text/html; charset=utf-8"):
        self.status_code = status_code
        self.content = content
        self.headers = {"Content-Type": content_type}

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")


class FakeSession:
    """Maps URL -> response; a list of responses is served in order, the last one repeating."""

    def __init__(self):
        self.routes: Dict[str, Union[FakeResponse, List[FakeResponse]]] = {}
        self.calls: List[str] = []

    def add(self, url: str, body: Union[str, bytes], status: int = 200, content_type: Optional[str] = None) -> None:
        if isinstance(body, str):
            body = body.encode("utf-8")
        self.routes[url] = FakeResponse(status, body, content_type or "text/html; charset=utf-8")

    def add_sequence(self, url: str, responses: List[tuple]) -> None:
        """Serve ``(status, body)`` pairs in order."""
        self.routes[url] = [FakeResponse(status, body) for status, body in responses]

    def get(self, url: str, timeout: float = 0, **kwargs) -> FakeResponse:
        self.calls.append(url)
        route = self.routes.get(url)
        if route is None:
            return FakeResponse(404, b"not found")
        if isinstance(route, list):
            return route.pop(0) if len(route) > 1 else route[0]
        return route

    def close(self) -> None:
        pass


def make_png(size=(40, 30), color=(200, 30, 30, 255)) -> bytes:
    buf = BytesIO()
    Image.new("RGBA", size, color).save(buf, format="PNG")
    return buf.getvalue()


def build_product_page(
    title: str,
    price: Optional[int] = 1500,
    description: str = "Тарелка из прочного фарфора. Подходит для ресторанов и кафе.",
    specs: Optional[Dict[str, str]] = None,
    images: Optional[List[str]] = None,
    crumbs: Optional[List[tuple]] = None,
) -> str:
    """Product page with a JSON-LD Product marker, breadcrumbs, specs table and gallery."""
    if specs is None:
        specs = {"Материал": "Фарфор", "Диаметр": "20 см"}
    if images is None:
        images = []
    if crumbs is None:
        crumbs = [("Главная", f"{BASE}/"), ("Тарелки", f"{BASE}/catalog/plates/")]
    product_ld = {"@context": "https://schema.org", "@type": "Product", "name": title}
    if price:
        product_ld["offers"] = {"@type": "Offer", "price": str(price), "priceCurrency": "KZT"}
    crumbs_ld = {
        "@context": "https://schema.org",
        "@type": "BreadcrumbList",
        "itemListElement": [
            {"@type": "ListItem", "position": i + 1, "name": name, "item": href}
            for i, (name, href) in enumerate(crumbs)
        ],
    }
    rows = "".join(f"<tr><td>{k}</td><td>{v}</td></tr>" for k, v in specs.items())
    gallery = "".join(f'<img src="{src}" alt="{title}">' for src in images)
    price_html = f'<span class="product-price">{price:,} ₸</span>'.replace(",", " ") if price else ""
    return f"""<html><head>
<title>{title}</title>
<script type="application/ld+json">{json.dumps(product_ld, ensure_ascii=False)}</script>
<script type="application/ld+json">{json.dumps(crumbs_ld, ensure_ascii=False)}</script>
</head><body>
<h1>{title}</h1>
{price_html}
<div class="product-gallery">{gallery}</div>
<div class="product-description"><p>{description}</p></div>
<table class="characteristics">{rows}</table>
</body></html>"""


def build_category_page(product_links: List[str], extra_links: Optional[List[str]] = None) -> str:
    items = "".join(f'<li class="product-item"><a href="{href}">Товар</a></li>' for href in product_links)
    extra = "".join(f'<a href="{href}">ещё</a>' for href in extra_links or [])
    return f"""<html><body>
<h2>Тарелки</h2>
<ul class="products">{items}</ul>
<div class="category-links">{extra}</div>
<a href="/">Главная</a>
</body></html>"""


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def fetcher(fake_session, sleeps) -> Fetcher:
    return Fetcher(session=fake_session, sleep=sleeps.append)


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture
def product_page() -> Callable[..., str]:
    return build_product_page


@pytest.fixture
def category_page() -> Callable[..., str]:
    return build_category_page


@pytest.fixture
def png_factory() -> Callable[..., bytes]:
    return make_png
