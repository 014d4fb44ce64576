"""Image pipeline: download, transcode to WebP, store under the product slug.

Every product ends up with at least one raster asset. When no source image can
be downloaded, the fallback chain tries an image search keyed by the product
name and finally synthesizes a neutral placeholder locally.
"""

import asyncio
import os
import re
from io import BytesIO
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

import requests  # type: ignore[import-untyped]
from PIL import Image, UnidentifiedImageError

from ingest.config import (
    IMAGE_CANDIDATES,
    IMAGE_MAX_WIDTH,
    IMAGE_QUALITY,
    IMAGE_RETRIES,
    IMAGE_RETRY_DELAY,
    IMAGE_SLOTS,
    PLACEHOLDER_COLOR,
    PLACEHOLDER_SIZE,
    REQUEST_TIMEOUT,
)
from ingest.errors import ImageError, IngestError
from ingest.fetcher import Fetcher
from ingest.logging_config import get_logger, log_event
from ingest.retry import RetryPolicy, constant, retry_on

__all__ = [
    "ImagePipeline",
    "BingImageSearch",
    "transcode_to_webp",
    "write_placeholder",
    "is_valid_image",
    "slots_for_mode",
]

logger = get_logger("images")

BING_ENDPOINT = "https://api.bing.microsoft.com/v7.0/images/search"

ALT_SLOT_RE = re.compile(r"^alt(\d+)$")


def _slot_order(name: str) -> Tuple[int, int, str]:
    if name == "main":
        return (0, 0, name)
    match = ALT_SLOT_RE.match(name)
    if match:
        return (1, int(match.group(1)), name)
    return (2, 0, name)


def slots_for_mode(mode: str) -> Sequence[str]:
    """``single`` keeps one canonical image; ``gallery`` keeps main + 2 alternates."""
    return IMAGE_SLOTS if mode == "gallery" else IMAGE_SLOTS[:1]


def _to_rgb(img: Image.Image) -> Image.Image:
    # Transparent images are flattened onto white
    if img.mode in ("RGBA", "LA", "P"):
        if img.mode == "P":
            img = img.convert("RGBA")
        background = Image.new("RGB", img.size, (255, 255, 255))
        background.paste(img, mask=img.split()[-1])
        return background
    if img.mode != "RGB":
        return img.convert("RGB")
    return img


def transcode_to_webp(
    data: bytes,
    dest: Path,
    max_width: int = IMAGE_MAX_WIDTH,
    quality: int = IMAGE_QUALITY,
) -> Path:
    """Decode ``data``, shrink to ``max_width`` (never upscale) and write WebP.

    Raises:
        ImageError: If the payload is not a decodable image
    """
    try:
        with Image.open(BytesIO(data)) as src:
            src.load()
            img = _to_rgb(src)
            if img.width > max_width:
                height = max(1, round(img.height * max_width / img.width))
                img = img.resize((max_width, height), Image.LANCZOS)
            dest.parent.mkdir(parents=True, exist_ok=True)
            tmp = dest.with_name(dest.name + ".tmp")
            img.save(tmp, format="WEBP", quality=quality)
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise ImageError(f"cannot transcode image for {dest.name}: {e}") from e
    os.replace(tmp, dest)
    return dest


def write_placeholder(dest: Path, color: str = PLACEHOLDER_COLOR, quality: int = IMAGE_QUALITY) -> Path:
    """Synthesize a neutral solid-color WebP (no network)."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", PLACEHOLDER_SIZE, color).save(dest, format="WEBP", quality=quality)
    return dest


def is_valid_image(path: Path) -> bool:
    try:
        with Image.open(path) as img:
            img.verify()
        return True
    except (UnidentifiedImageError, OSError, ValueError):
        return False


class BingImageSearch:
    """Image search fallback backed by the Bing Image Search API."""

    def __init__(self, api_key: str, session: Optional[requests.Session] = None):
        self.api_key = api_key
        self.session = session or requests.Session()

    def search(self, query: str, count: int = 3) -> List[str]:
        try:
            resp = self.session.get(
                BING_ENDPOINT,
                params={"q": query, "safeSearch": "Strict", "count": count},
                headers={"Ocp-Apim-Subscription-Key": self.api_key},
                timeout=REQUEST_TIMEOUT,
            )
            resp.raise_for_status()
            data = resp.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.warning(f"Image search failed for '{query}': {e}")
            return []
        return [v["contentUrl"] for v in data.get("value", []) if v.get("contentUrl")][:count]


class ImagePipeline:
    """Materialize product images under ``<asset_root>/<subdir>/<slug>/<slot>.webp``.

    Returned paths are content-relative (``/products/<slug>/main.webp``) and
    only ever name files that exist on disk.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        asset_root: Path,
        subdir: str = "products",
        max_width: int = IMAGE_MAX_WIDTH,
        quality: int = IMAGE_QUALITY,
        retries: int = IMAGE_RETRIES,
        retry_delay: float = IMAGE_RETRY_DELAY,
        search: Optional[BingImageSearch] = None,
        fallback: bool = True,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.fetcher = fetcher
        self.asset_root = Path(asset_root)
        self.subdir = subdir
        self.max_width = max_width
        self.quality = quality
        self.search = search
        self.fallback = fallback
        self.policy = RetryPolicy(
            max_attempts=retries,
            backoff=constant(retry_delay),
            retryable=retry_on(IngestError),
            name="image download",
        )
        if sleep is not None:
            self.policy.sleep = sleep

    # -- paths ---------------------------------------------------------------

    def product_dir(self, slug: str) -> Path:
        return self.asset_root / self.subdir / slug

    def slot_path(self, slug: str, slot: str) -> Path:
        return self.product_dir(slug) / f"{slot}.webp"

    def relative(self, slug: str, slot: str) -> str:
        return f"/{self.subdir}/{slug}/{slot}.webp"

    def resolve(self, rel_path: str) -> Path:
        """Map a content-relative path back to the file on disk."""
        return self.asset_root / rel_path.lstrip("/")

    def exists(self, rel_path: str) -> bool:
        return self.resolve(rel_path).is_file()

    # -- download ------------------------------------------------------------

    def _download(self, url: str, dest: Path) -> None:
        data = self.fetcher.fetch_bytes(url)
        transcode_to_webp(data, dest, self.max_width, self.quality)

    def download(self, url: str, dest: Path) -> bool:
        """Download and transcode one image with retries; False on failure."""
        try:
            self.policy.call(self._download, url, dest)
            return True
        except IngestError as e:
            logger.debug(f"Image failed {url}: {e}")
            log_event("image_failed", {"url": url, "dest": str(dest), "error": str(e)}, logger_name="images")
            return False

    def _fill(self, slots: List[str], urls: Sequence[str], slug: str, done: List[str]) -> None:
        for url in urls:
            pending = [s for s in slots if s not in done]
            if not pending:
                return
            if self.download(url, self.slot_path(slug, pending[0])):
                done.append(pending[0])

    def materialize_images(
        self,
        urls: Sequence[str],
        slug: str,
        name: str = "",
        mode: str = "single",
    ) -> List[str]:
        """Download up to the mode's slot count and return content-relative paths.

        Args:
            urls: Candidate source URLs in preference order
            slug: Product slug; names the asset directory
            name: Product name used as the image-search query
            mode: ``single`` or ``gallery``

        Returns:
            Paths of the slots that exist on disk, main first
        """
        slots = list(slots_for_mode(mode))
        candidates: List[str] = []
        for url in urls:
            if url and url not in candidates:
                candidates.append(url)
        candidates = candidates[:IMAGE_CANDIDATES]

        done: List[str] = []
        self._fill(slots, candidates, slug, done)

        if self.fallback and len(done) < len(slots):
            if self.search is not None and name:
                found = [u for u in self.search.search(name, count=len(slots)) if u not in candidates]
                self._fill(slots, found, slug, done)
                if found:
                    logger.info(f"Image search filled {len(done)} slot(s) for {slug}")
            for slot in slots:
                if slot not in done:
                    write_placeholder(self.slot_path(slug, slot), quality=self.quality)
                    done.append(slot)
                    logger.info(f"Placeholder image written for {slug}/{slot}")

        if mode != "gallery":
            self.prune(slug, keep=slots)
        return [self.relative(slug, s) for s in slots if s in done and self.slot_path(slug, s).is_file()]

    async def amaterialize_images(
        self,
        urls: Sequence[str],
        slug: str,
        name: str = "",
        mode: str = "single",
    ) -> List[str]:
        return await asyncio.to_thread(self.materialize_images, urls, slug, name, mode)

    # -- local maintenance ---------------------------------------------------

    def existing_images(self, slug: str) -> List[str]:
        """WebP files already on disk for ``slug``: main first, then altN by number."""
        directory = self.product_dir(slug)
        if not directory.is_dir():
            return []
        names = [p.stem for p in directory.glob("*.webp") if p.is_file()]
        return [self.relative(slug, name) for name in sorted(names, key=_slot_order)]

    def prune(self, slug: str, keep: Sequence[str]) -> int:
        """Delete slot files not listed in ``keep``; returns the number removed."""
        removed = 0
        for slot in IMAGE_SLOTS:
            path = self.slot_path(slug, slot)
            if slot not in keep and path.is_file():
                path.unlink()
                removed += 1
        return removed
