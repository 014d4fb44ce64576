"""Read interface over persisted products for storefront consumers.

Lookups by slug, filtered listing and facet counts. Material and color values
are folded through synonym tables so "фарфоровый", "Porcelain" and
"ФАРФОР" count as one facet value.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Pattern, Tuple

from ingest.categories import CategoryRegistry
from ingest.config import SPEC_LABELS
from ingest.html_utils import pick_spec
from ingest.models import ProductRecord
from ingest.text_utils import collapse_ws, title_sort_key

__all__ = [
    "normalize_label",
    "normalize_material",
    "normalize_color",
    "QueryResult",
    "ProductCatalog",
]


def _rules(pairs: List[Tuple[str, str]]) -> List[Tuple[Pattern[str], str]]:
    return [(re.compile(p, re.IGNORECASE), name) for p, name in pairs]


# Order matters: more specific families come before their generic parent
MATERIAL_SYNONYMS = _rules([
    (r"костян|bone\s*china", "Костяной фарфор"),
    (r"фарфор|porcelain", "Фарфор"),
    (r"фаянс|earthenware", "Фаянс"),
    (r"stone\s*ware|каменн|грс|грэс", "Каменная керамика"),
    (r"стеклокерам|glass\s*ceramic", "Стеклокерамика"),
    (r"керамик|ceramic", "Керамика"),
    (r"боросил|borosilicate", "Боросиликатное стекло"),
    (r"опал|opale", "Опаловое стекло"),
    (r"стекл|glass", "Стекло"),
    (r"нерж|stainless", "Нержавеющая сталь"),
    (r"алюм|alumin", "Алюминий"),
    (r"чугун|cast\s*iron", "Чугун"),
    (r"медн|медь|copper", "Медь"),
    (r"латун|brass", "Латунь"),
    (r"эмал|enamel", "Эмаль"),
    (r"меламин|melamine", "Меламин"),
    (r"поликарбонат|\bpc\b", "Поликарбонат"),
    (r"полипропилен|\bpp\b", "Полипропилен"),
    (r"полиэтилен|\bpe\b", "Полиэтилен"),
    (r"акрил|pmma|plexi", "Акрил"),
    (r"тритан|tritan", "Тритан"),
    (r"пвх|pvc", "ПВХ"),
    (r"пластик|plastic", "Пластик"),
    (r"дерев|wood", "Дерево"),
    (r"бамбук|bamboo", "Бамбук"),
    (r"ротанг|rattan", "Ротанг"),
    (r"сланец|slate", "Сланец"),
    (r"мрамор|marble", "Мрамор"),
    (r"гранит|granite", "Гранит"),
    (r"камень|stone", "Камень"),
    (r"силикон|silicone", "Силикон"),
])

COLOR_SYNONYMS = _rules([
    (r"прозр|transparent|clear", "Прозрачный"),
    (r"ч[её]рн|black", "Черный"),
    (r"бел[ыао.]|white", "Белый"),
    (r"бордов|марсал|burgundy", "Бордовый"),
    (r"красн|\bred\b", "Красный"),
    (r"син(ий|\.)|blue", "Синий"),
    (r"голуб|cyan|azure|sky", "Голубой"),
    (r"бирюз|teal|turquoise", "Бирюзовый"),
    (r"фиолет|пурпур|лилов|сирен|violet|purple|lilac", "Фиолетовый"),
    (r"розов|pink|fuchsia|magenta", "Розовый"),
    (r"оранж|orange", "Оранжевый"),
    (r"ж[её]лт|yellow", "Желтый"),
    (r"зел[её]н|green", "Зеленый"),
    (r"дымч|smok", "Дымчатый"),
    (r"янтар|amber", "Янтарный"),
    (r"золот|gold", "Золотистый"),
    (r"серебр|silver", "Серебристый"),
    (r"бронз|bronze", "Бронзовый"),
    (r"медн|copper", "Медный"),
    (r"графит|graphite", "Графитовый"),
    (r"сер(ый|ая|ое|\.)|grey|gray", "Серый"),
    (r"бежев|beige", "Бежевый"),
    (r"коричн|шоколад|brown", "Коричневый"),
    (r"кремов|молочн|ivory", "Кремовый"),
])


def normalize_label(value: Optional[str]) -> str:
    """First letter upper case, the rest lower case."""
    text = collapse_ws(value).lower()
    return text[:1].upper() + text[1:]


def _canonical(value: Optional[str], rules: List[Tuple[Pattern[str], str]]) -> str:
    text = collapse_ws(value)
    if not text:
        return ""
    for pattern, name in rules:
        if pattern.search(text):
            return name
    return normalize_label(text)


def normalize_material(value: Optional[str]) -> str:
    return _canonical(value, MATERIAL_SYNONYMS)


def normalize_color(value: Optional[str]) -> str:
    return _canonical(value, COLOR_SYNONYMS)


@dataclass
class QueryResult:
    total: int
    page: int
    page_size: int
    items: List[ProductRecord] = field(default_factory=list)


SORTS = ("title", "price_asc", "price_desc", "new")


class ProductCatalog:
    """Read-only view over a product store.

    Records are loaded on each call; there is no cache, so a consumer always
    sees the latest store contents.
    """

    def __init__(self, store: Any, registry: Optional[CategoryRegistry] = None):
        self.store = store
        self.registry = registry

    @staticmethod
    def material_of(record: ProductRecord) -> str:
        return normalize_material(record.material or pick_spec(record.specs, SPEC_LABELS["material"]))

    @staticmethod
    def color_of(record: ProductRecord) -> str:
        return normalize_color(record.color or pick_spec(record.specs, SPEC_LABELS["color"]))

    @staticmethod
    def brand_of(record: ProductRecord) -> str:
        return normalize_label(record.brand or pick_spec(record.specs, SPEC_LABELS["brand"]))

    def get(self, slug: str) -> Optional[ProductRecord]:
        return self.store.get(slug)

    def query(
        self,
        category: Optional[str] = None,
        subcategory: Optional[str] = None,
        material: Optional[str] = None,
        color: Optional[str] = None,
        brand: Optional[str] = None,
        price_min: Optional[int] = None,
        price_max: Optional[int] = None,
        q: Optional[str] = None,
        sort: str = "title",
        page: int = 1,
        page_size: int = 24,
    ) -> QueryResult:
        """Filter, sort and paginate products.

        Args:
            category: Exact ``category_slug`` match
            subcategory: Exact ``subcategory_slug`` match
            material: Compared after synonym normalization
            color: Compared after synonym normalization
            brand: Case-insensitive brand match
            price_min: Inclusive lower bound; products without a price are excluded
            price_max: Inclusive upper bound; products without a price are excluded
            q: Case-insensitive substring of title or description
            sort: One of ``title``, ``price_asc``, ``price_desc``, ``new``
            page: 1-based page number
            page_size: Items per page

        Raises:
            ValueError: On an unknown sort key
        """
        if sort not in SORTS:
            raise ValueError(f"Unknown sort '{sort}', expected one of {', '.join(SORTS)}")

        items = self.store.load_all()
        if category:
            items = [r for r in items if r.category_slug == category]
        if subcategory:
            items = [r for r in items if r.subcategory_slug == subcategory]
        if material:
            wanted = normalize_material(material)
            items = [r for r in items if self.material_of(r) == wanted]
        if color:
            wanted = normalize_color(color)
            items = [r for r in items if self.color_of(r) == wanted]
        if brand:
            wanted = normalize_label(brand)
            items = [r for r in items if self.brand_of(r) == wanted]
        if price_min is not None:
            items = [r for r in items if r.price is not None and r.price >= price_min]
        if price_max is not None:
            items = [r for r in items if r.price is not None and r.price <= price_max]
        if q:
            needle = collapse_ws(q).casefold()
            items = [
                r for r in items
                if needle in (r.title or "").casefold() or needle in (r.description or "").casefold()
            ]

        items.sort(key=lambda r: title_sort_key(r.title, r.slug))
        if sort == "price_asc":
            items.sort(key=lambda r: (r.price is None, r.price or 0))
        elif sort == "price_desc":
            items.sort(key=lambda r: (r.price is None, -(r.price or 0)))
        elif sort == "new":
            items.sort(key=lambda r: r.created_at or "", reverse=True)

        page = max(1, page)
        start = (page - 1) * page_size
        return QueryResult(total=len(items), page=page, page_size=page_size, items=items[start:start + page_size])

    def facet_counts(self) -> Dict[str, Any]:
        """Counts per category, subcategory, brand, material and color.

        Value lists are sorted by count (descending), then name.
        """
        categories: Dict[str, int] = {}
        subcategories: Dict[str, Dict[str, int]] = {}
        brands: Dict[str, int] = {}
        materials: Dict[str, int] = {}
        colors: Dict[str, int] = {}

        def bump(counter: Dict[str, int], key: str) -> None:
            if key:
                counter[key] = counter.get(key, 0) + 1

        for record in self.store.load_all():
            bump(categories, record.category_slug or "")
            if record.category_slug and record.subcategory_slug:
                bump(subcategories.setdefault(record.category_slug, {}), record.subcategory_slug)
            bump(brands, self.brand_of(record))
            bump(materials, self.material_of(record))
            bump(colors, self.color_of(record))

        return {
            "categories": [
                {"slug": slug, "name": self._category_name(slug), "count": count}
                for slug, count in _ranked(categories)
            ],
            "subcategoriesByCategory": {
                parent: [
                    {"slug": slug, "name": self._category_name(slug), "count": count}
                    for slug, count in _ranked(counter)
                ]
                for parent, counter in subcategories.items()
            },
            "brands": [{"name": n, "count": c} for n, c in _ranked(brands)],
            "materials": [{"name": n, "count": c} for n, c in _ranked(materials)],
            "colors": [{"name": n, "count": c} for n, c in _ranked(colors)],
        }

    def _category_name(self, slug: str) -> str:
        node = self.registry.get(slug) if self.registry is not None else None
        return node.name if node is not None else slug


def _ranked(counter: Dict[str, int]) -> List[Tuple[str, int]]:
    return sorted(counter.items(), key=lambda kv: (-kv[1], kv[0]))
