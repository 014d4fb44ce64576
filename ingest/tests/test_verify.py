"""Tests for the post-import verification pass."""

import pytest

from ingest.images import ImagePipeline, write_placeholder
from ingest.models import ProductRecord
from ingest.store import JsonProductStore
from ingest.verify import dedupe_records, pick_better, refresh_record, verify_records, verify_store

BASE = "https://supplier.example"


def _specs(n):
    return {f"Свойство {i}": f"значение {i}" for i in range(n)}


def _record(slug, title=None, specs=2, images=1, description="Описание товара для проверки.", **kwargs):
    return ProductRecord(
        slug=slug,
        title=title or slug.capitalize(),
        description=description,
        specs=_specs(specs),
        images=[f"/products/{slug}/main.webp"] if images else [],
        source_url=kwargs.pop("source_url", f"{BASE}/product/{slug}/"),
        **kwargs,
    )


class TestPickBetter:
    """Tests for duplicate resolution."""

    def test_more_specs_wins(self):
        """Spec count decides before description length."""
        a = _record("a", specs=3, description="x" * 50)
        b = _record("b", specs=5, description="x" * 30)
        assert pick_better(a, b) is b

    def test_more_images_then_longer_description(self):
        """Ties on specs fall through to images, then description length."""
        a = _record("a", images=0)
        b = _record("b")
        assert pick_better(a, b) is b
        c = _record("c", description="x" * 40)
        d = _record("d", description="x" * 20)
        assert pick_better(d, c) is c

    def test_full_tie_keeps_first(self):
        a, b = _record("a"), _record("b")
        assert pick_better(a, b) is a


class TestDedupe:
    """Tests for the slug-then-title dedupe cascade."""

    def test_title_duplicates_collapse_to_richer(self):
        """Same title in different case collapses to the record with more specs."""
        a = _record("tarelka-a", title="Тарелка белая", specs=3, description="x" * 50)
        b = _record("tarelka-b", title="ТАРЕЛКА  БЕЛАЯ", specs=5, description="x" * 30)
        survivors, removed = dedupe_records([a, b])
        assert removed == 1
        assert [r.slug for r in survivors] == ["tarelka-b"]

    def test_slug_duplicates_collapse(self):
        """Duplicate slugs keep the richer record in first-seen position."""
        first = _record("vaza", specs=2)
        other = _record("chashka")
        second = _record("vaza", specs=4)
        survivors, removed = dedupe_records([first, other, second])
        assert removed == 1
        assert [r.slug for r in survivors] == ["vaza", "chashka"]
        assert survivors[0].spec_count() == 4


class TestVerifyRecords:
    """Tests for verify_records and verify_store."""

    @pytest.fixture
    def images(self, fetcher, tmp_path):
        return ImagePipeline(fetcher, tmp_path / "public", sleep=lambda s: None)

    def _on_disk(self, images, *slugs):
        for slug in slugs:
            write_placeholder(images.slot_path(slug, "main"))

    def test_drops_records_without_images(self, images):
        """Records whose image files are missing are filtered out."""
        self._on_disk(images, "a")
        verified, report = verify_records([_record("a"), _record("b")], images)
        assert [r.slug for r in verified] == ["a"]
        assert report.images_dropped == 1
        assert report.invalid_dropped == 1

    def test_sorted_by_title_and_descriptions_capped(self, images):
        """Output is sorted by title and descriptions are limited to four sentences."""
        self._on_disk(images, "a", "b")
        long_description = "Раз. Два. Три. Четыре. Пять. Шесть."
        records = [_record("b", title="Ёмкость"), _record("a", title="Бокал", description=long_description)]
        verified, _ = verify_records(records, images)
        assert [r.title for r in verified] == ["Бокал", "Ёмкость"]
        assert verified[0].description == "Раз. Два. Три. Четыре."

    def test_refreshes_thin_records(self, images, fetcher, fake_session, product_page):
        """A record with too few specs is repaired from its source page."""
        self._on_disk(images, "thin")
        fake_session.add(f"{BASE}/product/thin/", product_page("Thin", specs={"Материал": "Стекло", "Объем": "1 л"}))
        verified, report = verify_records([_record("thin", specs=1)], images, fetcher)
        assert report.refreshed == 1
        assert verified[0].specs == {"Материал": "Стекло", "Объем": "1 л"}

    def test_refresh_failure_is_not_fatal(self, fetcher):
        """An unreachable source page leaves the record unchanged."""
        record = _record("gone", specs=1)
        assert refresh_record(record, fetcher) is False
        assert record.spec_count() == 1

    def test_verify_store_idempotent(self, images, tmp_path):
        """A second pass over the verified store changes nothing."""
        self._on_disk(images, "a", "b", "c")
        store = JsonProductStore(tmp_path / "products.json")
        store.replace_all([
            _record("c", title="Чашка"),
            _record("a", title="Бокал", specs=1),
            _record("b", title="Блюдо"),
            _record("b", title="Блюдо", specs=3),
        ])
        summary = tmp_path / "logs" / "verify_summary.md"

        first = verify_store(store, images, summary_path=summary)
        snapshot = store.path.read_bytes()
        second = verify_store(store, images, summary_path=summary)

        assert first.total_out == 2
        assert first.duplicates_removed == 1
        assert store.path.read_bytes() == snapshot
        assert second.total_out == second.total_in == 2
        assert summary.read_text(encoding="utf-8").count("## Verify summary") == 2
