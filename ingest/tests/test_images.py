"""Tests for image download, WebP transcoding and the fallback chain."""

import asyncio

import pytest
from PIL import Image

from ingest.errors import ImageError
from ingest.images import ImagePipeline, is_valid_image, slots_for_mode, transcode_to_webp, write_placeholder

BASE = "https://supplier.example"


class TestTranscode:
    """Tests for transcode_to_webp."""

    def test_downscales_wide_images(self, tmp_path, png_factory):
        """Images wider than the limit are resized keeping aspect ratio."""
        dest = transcode_to_webp(png_factory(size=(1600, 400)), tmp_path / "main.webp")
        with Image.open(dest) as img:
            assert img.format == "WEBP"
            assert img.size == (800, 200)

    def test_never_upscales(self, tmp_path, png_factory):
        """Small images keep their size."""
        dest = transcode_to_webp(png_factory(size=(40, 30)), tmp_path / "main.webp")
        with Image.open(dest) as img:
            assert img.size == (40, 30)

    def test_rejects_non_images(self, tmp_path):
        """Undecodable payloads raise ImageError and write nothing."""
        with pytest.raises(ImageError):
            transcode_to_webp(b"<html>not an image</html>", tmp_path / "main.webp")
        assert not (tmp_path / "main.webp").exists()

    def test_placeholder_is_valid_webp(self, tmp_path):
        """Placeholders are real decodable images."""
        assert is_valid_image(write_placeholder(tmp_path / "p" / "main.webp"))


class TestImagePipeline:
    """Tests for ImagePipeline.materialize_images."""

    @pytest.fixture
    def pipeline(self, fetcher, tmp_path):
        return ImagePipeline(fetcher, tmp_path / "public", sleep=lambda s: None)

    def test_downloads_main_image(self, pipeline, fake_session, png_bytes):
        """A reachable image becomes /products/<slug>/main.webp."""
        fake_session.add(f"{BASE}/upload/a.png", png_bytes, content_type="image/png")
        paths = pipeline.materialize_images([f"{BASE}/upload/a.png"], "tarelka")
        assert paths == ["/products/tarelka/main.webp"]
        assert pipeline.exists(paths[0])
        assert is_valid_image(pipeline.resolve(paths[0]))

    def test_falls_through_broken_candidates(self, pipeline, fake_session, png_bytes):
        """Failed candidates are retried, then the next URL is tried."""
        good = f"{BASE}/upload/good.png"
        fake_session.add(good, png_bytes, content_type="image/png")
        paths = pipeline.materialize_images([f"{BASE}/upload/missing.png", good], "tarelka")
        assert paths == ["/products/tarelka/main.webp"]
        assert fake_session.calls.count(f"{BASE}/upload/missing.png") == 3

    def test_placeholder_when_nothing_downloads(self, pipeline):
        """With no reachable image a placeholder file is synthesized."""
        paths = pipeline.materialize_images([], "vaza")
        assert paths == ["/products/vaza/main.webp"]
        assert is_valid_image(pipeline.resolve(paths[0]))

    def test_no_fallback_returns_nothing(self, fetcher, tmp_path):
        """Without the fallback chain a product may end up with no images."""
        pipeline = ImagePipeline(fetcher, tmp_path, fallback=False, sleep=lambda s: None)
        assert pipeline.materialize_images([f"{BASE}/upload/missing.png"], "vaza") == []

    def test_gallery_mode_fills_three_slots(self, pipeline, fake_session, png_bytes):
        """Gallery mode keeps main plus two alternates, placeholders filling gaps."""
        fake_session.add(f"{BASE}/upload/a.png", png_bytes, content_type="image/png")
        paths = pipeline.materialize_images([f"{BASE}/upload/a.png"], "bokal", mode="gallery")
        assert paths == [
            "/products/bokal/main.webp",
            "/products/bokal/alt1.webp",
            "/products/bokal/alt2.webp",
        ]
        assert all(pipeline.exists(p) for p in paths)

    def test_single_mode_prunes_alternates(self, pipeline, fake_session, png_bytes):
        """Switching back to single mode deletes stale alternate files."""
        write_placeholder(pipeline.slot_path("bokal", "alt1"))
        fake_session.add(f"{BASE}/upload/a.png", png_bytes, content_type="image/png")
        paths = pipeline.materialize_images([f"{BASE}/upload/a.png"], "bokal")
        assert paths == ["/products/bokal/main.webp"]
        assert not pipeline.slot_path("bokal", "alt1").exists()

    def test_async_wrapper(self, pipeline):
        """amaterialize_images runs in a worker thread."""
        paths = asyncio.run(pipeline.amaterialize_images([], "chashka"))
        assert paths == ["/products/chashka/main.webp"]

    def test_existing_images_order(self, pipeline):
        """Files on disk are listed main first, then alternates by number."""
        for slot in ("alt2", "zoom", "alt10", "main", "alt1"):
            write_placeholder(pipeline.slot_path("chashka", slot))
        assert pipeline.existing_images("chashka") == [
            "/products/chashka/main.webp",
            "/products/chashka/alt1.webp",
            "/products/chashka/alt2.webp",
            "/products/chashka/alt10.webp",
            "/products/chashka/zoom.webp",
        ]
        assert pipeline.existing_images("unknown") == []

    def test_slots_for_mode(self):
        """Single mode has one slot, gallery mode three."""
        assert list(slots_for_mode("single")) == ["main"]
        assert list(slots_for_mode("gallery")) == ["main", "alt1", "alt2"]
