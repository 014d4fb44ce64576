"""Tests for the storefront read interface."""

import pytest

from ingest.catalog import ProductCatalog, normalize_color, normalize_label, normalize_material
from ingest.categories import CategoryRegistry
from ingest.models import ProductRecord
from ingest.store import JsonProductStore


class TestNormalization:
    """Tests for synonym folding."""

    @pytest.mark.parametrize("value,expected", [
        ("фарфоровый", "Фарфор"),
        ("Porcelain", "Фарфор"),
        ("ФАРФОР", "Фарфор"),
        ("Костяной фарфор", "Костяной фарфор"),
        ("стекло закаленное", "Стекло"),
        ("Нерж. сталь", "Нержавеющая сталь"),
        ("войлок", "Войлок"),
        ("", ""),
    ])
    def test_material(self, value, expected):
        assert normalize_material(value) == expected

    @pytest.mark.parametrize("value,expected", [
        ("ЧЁРНЫЙ", "Черный"),
        ("white", "Белый"),
        ("прозрачное", "Прозрачный"),
        ("Мятный", "Мятный"),
    ])
    def test_color(self, value, expected):
        assert normalize_color(value) == expected

    def test_label(self):
        assert normalize_label("  PORLAND ") == "Porland"


class TestProductCatalog:
    """Tests for ProductCatalog queries and facets."""

    @pytest.fixture
    def catalog(self, tmp_path):
        store = JsonProductStore(tmp_path / "products.json")
        store.replace_all([
            ProductRecord(slug="tarelka", title="Тарелка мелкая", price=1500, category_slug="plates",
                          subcategory_slug="flat", material="фарфоровый", color="белый", brand="Porland",
                          created_at="2024-01-02T00:00:00.000Z"),
            ProductRecord(slug="bokal", title="Бокал для вина", price=2400, category_slug="glass",
                          specs={"Материал": "Стекло", "Цвет": "Прозрачный"}, brand="PASABAHCE",
                          description="Бокал из стекла", created_at="2024-01-03T00:00:00.000Z"),
            ProductRecord(slug="blyudo", title="Блюдо овальное", price=None, category_slug="plates",
                          subcategory_slug="serving", material="Porcelain", color="White", brand="porland",
                          created_at="2024-01-01T00:00:00.000Z"),
        ])
        registry = CategoryRegistry()
        registry.register("plates", "Тарелки")
        return ProductCatalog(store, registry)

    def test_get(self, catalog):
        assert catalog.get("bokal").title == "Бокал для вина"
        assert catalog.get("missing") is None

    def test_default_sort_by_title(self, catalog):
        result = catalog.query()
        assert result.total == 3
        assert [r.slug for r in result.items] == ["blyudo", "bokal", "tarelka"]

    def test_filters(self, catalog):
        """Material, color and brand filters compare normalized values."""
        assert [r.slug for r in catalog.query(material="Фарфор").items] == ["blyudo", "tarelka"]
        assert [r.slug for r in catalog.query(color="прозрачный").items] == ["bokal"]
        assert [r.slug for r in catalog.query(brand="PORLAND").items] == ["blyudo", "tarelka"]
        assert [r.slug for r in catalog.query(category="plates", subcategory="flat").items] == ["tarelka"]
        assert [r.slug for r in catalog.query(q="стекла").items] == ["bokal"]

    def test_price_filters_exclude_unknown_prices(self, catalog):
        result = catalog.query(price_min=1000, price_max=2000)
        assert [r.slug for r in result.items] == ["tarelka"]

    def test_sorts(self, catalog):
        """Unknown prices sort last; ``new`` orders by creation time descending."""
        assert [r.slug for r in catalog.query(sort="price_asc").items] == ["tarelka", "bokal", "blyudo"]
        assert [r.slug for r in catalog.query(sort="price_desc").items] == ["bokal", "tarelka", "blyudo"]
        assert [r.slug for r in catalog.query(sort="new").items] == ["bokal", "tarelka", "blyudo"]

    def test_unknown_sort_rejected(self, catalog):
        with pytest.raises(ValueError):
            catalog.query(sort="popular")

    def test_pagination(self, catalog):
        result = catalog.query(page=2, page_size=2)
        assert (result.total, result.page) == (3, 2)
        assert [r.slug for r in result.items] == ["tarelka"]

    def test_facet_counts(self, catalog):
        """Facets are counted on normalized values and ranked by count."""
        facets = catalog.facet_counts()
        assert facets["categories"] == [
            {"slug": "plates", "name": "Тарелки", "count": 2},
            {"slug": "glass", "name": "glass", "count": 1},
        ]
        assert facets["subcategoriesByCategory"]["plates"] == [
            {"slug": "flat", "name": "flat", "count": 1},
            {"slug": "serving", "name": "serving", "count": 1},
        ]
        assert facets["brands"] == [{"name": "Porland", "count": 2}, {"name": "Pasabahce", "count": 1}]
        assert facets["materials"] == [{"name": "Фарфор", "count": 2}, {"name": "Стекло", "count": 1}]
        assert facets["colors"] == [{"name": "Белый", "count": 2}, {"name": "Прозрачный", "count": 1}]
