"""Tests for configuration loading and the per-run log."""

import json
import logging
from pathlib import Path

import pytest

from ingest.config import PipelineConfig, env_flag
from ingest.logging_config import RunLog, RunSummary, log_event, setup_logging
from ingest.models import ProductRecord


class TestPipelineConfig:
    """Tests for PipelineConfig."""

    def test_defaults(self):
        config = PipelineConfig()
        assert config.products_path == Path("data/products.json")
        assert config.categories_path == Path("data/categories.json")
        assert config.host == "complex-bar.kz"
        assert (config.mode, config.image_mode, config.concurrency) == ("file", "single", 4)

    def test_from_env(self, monkeypatch):
        """Environment variables override the defaults."""
        monkeypatch.setenv("IMPORT_BASE_URL", "https://supplier.example/")
        monkeypatch.setenv("SUPPLIER_URL", "https://supplier.example/catalog/bar/")
        monkeypatch.setenv("IMPORT_MODE", "DB")
        monkeypatch.setenv("IMPORT_RATE_LIMIT_CONCURRENCY", "6")
        monkeypatch.setenv("IMPORT_BATCH_SIZE", "not-a-number")
        monkeypatch.setenv("DRY_RUN", "true")
        monkeypatch.setenv("FILE_DB_DIR", "/tmp/catalog-data")

        config = PipelineConfig.from_env()

        assert config.base_url == "https://supplier.example"
        assert config.seed_url == "https://supplier.example/catalog/bar/"
        assert config.url_prefix == "/catalog/bar/"
        assert config.mode == "db"
        assert config.concurrency == 6
        assert config.batch_size == 50, "Unparseable numbers fall back to the default"
        assert config.dry_run is True
        assert config.db_path == Path("/tmp/catalog-data/catalog.db")

    def test_with_overrides_ignores_none(self):
        config = PipelineConfig().with_overrides(concurrency=8, mode=None)
        assert config.concurrency == 8
        assert config.mode == "file"

    @pytest.mark.parametrize("value,expected", [
        ("1", True), ("yes", True), ("TRUE", True), ("0", False), ("off", False), (None, False), ("", False),
    ])
    def test_env_flag(self, value, expected):
        assert env_flag(value) is expected


class TestRunLog:
    """Tests for the per-run text log."""

    def test_product_and_skip_lines(self, tmp_path):
        """Outcome lines carry pass/fail marks and skip reasons."""
        run_log = RunLog(tmp_path)
        ok = run_log.product_line(1, "tarelka", {"description": True, "images": True, "specs": True},
                                  status="appended ✓")
        skipped = run_log.product_line(2, "vaza", {"description": True, "images": False, "specs": False},
                                       reasons=["specs<2"])

        assert ok == "[1] tarelka ✓ description ✓ images ✓ specs appended ✓"
        assert skipped == "[2] vaza ✓ description ✗ images ✗ specs (skipped: specs<2)"
        assert run_log.skipped_lines("specs<2") == [skipped]
        assert run_log.path.read_text(encoding="utf-8").splitlines() == [ok, skipped]

    def test_summary_lines(self, tmp_path):
        run_log = RunLog(tmp_path)
        run_log.summary(RunSummary(discovered=5, processed=5, succeeded=3, skipped=2))
        text = run_log.path.read_text(encoding="utf-8")
        assert "Total processed: 5" in text
        assert "Skipped: 2" in text
        assert "Finished: " in text

    def test_disabled_log_keeps_memory_only(self, tmp_path):
        run_log = RunLog(tmp_path / "logs", enabled=False)
        run_log.write("hello")
        assert run_log.lines == ["hello"]
        assert not (tmp_path / "logs").exists()


class TestStructuredLogging:
    """Tests for the JSONL event log."""

    @pytest.fixture
    def log_dir(self, tmp_path):
        setup_logging(level=logging.DEBUG, log_to_console=False, log_dir=tmp_path)
        yield tmp_path
        logging.getLogger("ingest").handlers.clear()
        logging.getLogger("ingest").setLevel(logging.NOTSET)

    def test_log_event_writes_jsonl(self, log_dir):
        """Events land in the daily JSONL file with their payload."""
        log_event("product_saved", {"slug": "tarelka", "new": True}, logger_name="pipeline")
        files = list(log_dir.glob("ingest_*.jsonl"))
        assert len(files) == 1
        entry = json.loads(files[0].read_text(encoding="utf-8").splitlines()[-1])
        assert entry["event_type"] == "product_saved"
        assert entry["logger"] == "ingest.pipeline"
        assert entry["slug"] == "tarelka"


class TestProductRecord:
    """Tests for record serialization."""

    def test_from_dict_accepts_legacy_shapes(self):
        """Spec lists, brand objects and supplierUrl are accepted on load."""
        record = ProductRecord.from_dict({
            "name": "Тарелка",
            "price": 0,
            "specs": [{"name": "Материал", "value": "Фарфор"}],
            "brand": {"name": "Porland"},
            "supplierUrl": "https://supplier.example/product/t/",
        })
        assert record.slug == "tarelka"
        assert record.price is None
        assert record.specs == {"Материал": "Фарфор"}
        assert record.brand == "Porland"
        assert record.source_url == "https://supplier.example/product/t/"

    def test_to_dict_omits_empty_optionals(self):
        data = ProductRecord(slug="a", title="A").to_dict()
        assert list(data) == ["slug", "title", "price", "description", "specs", "images"]
