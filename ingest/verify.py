"""Verification pass over the persisted store.

Run after imports to collapse duplicates, repair thin records from their
source pages, drop records that still fail the validity filter and re-sort
the store so repeated runs produce identical files.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from ingest.config import DESCRIPTION_SENTENCES
from ingest.errors import IngestError
from ingest.fetcher import Fetcher
from ingest.html_utils import parse_product_page
from ingest.images import ImagePipeline
from ingest.logging_config import LOG_DIR, get_logger, log_event
from ingest.models import ProductRecord
from ingest.text_utils import limit_sentences, title_key, title_sort_key
from ingest.validation import is_valid_record, needs_refresh

__all__ = [
    "pick_better",
    "dedupe_records",
    "refresh_record",
    "VerifyReport",
    "verify_records",
    "verify_store",
]

logger = get_logger("verify")


def pick_better(a: ProductRecord, b: ProductRecord) -> ProductRecord:
    """Richer of two duplicates: more specs, then more images, then longer description.

    A full tie keeps ``a``.
    """
    if a.spec_count() != b.spec_count():
        return a if a.spec_count() > b.spec_count() else b
    if len(a.images) != len(b.images):
        return a if len(a.images) > len(b.images) else b
    return a if len(a.description or "") >= len(b.description or "") else b


def _collapse(records: List[ProductRecord], key_fn: Any) -> Tuple[List[ProductRecord], int]:
    out: List[ProductRecord] = []
    index: Dict[str, int] = {}
    removed = 0
    for record in records:
        key = key_fn(record)
        if key and key in index:
            i = index[key]
            out[i] = pick_better(out[i], record)
            removed += 1
            continue
        if key:
            index[key] = len(out)
        out.append(record)
    return out, removed


def dedupe_records(records: List[ProductRecord]) -> Tuple[List[ProductRecord], int]:
    """Drop duplicates by slug, then by normalized title.

    Returns the survivors in first-seen order and the number removed.
    """
    by_slug, removed_slug = _collapse(records, lambda r: r.slug)
    by_title, removed_title = _collapse(by_slug, lambda r: title_key(r.title))
    return by_title, removed_slug + removed_title


def refresh_record(
    record: ProductRecord,
    fetcher: Fetcher,
    images: Optional[ImagePipeline] = None,
    image_mode: str = "single",
) -> bool:
    """Re-fetch ``record.source_url`` and fill in thin fields in place.

    Specs are replaced when the page yields at least two pairs; the
    description when the page's is longer; images only when the record has
    none. Returns True when anything changed.
    """
    if not record.source_url:
        return False
    try:
        html = fetcher.fetch_text(record.source_url)
    except IngestError as e:
        logger.warning(f"Refresh failed for {record.slug}: {e}")
        return False

    fresh = parse_product_page(record.source_url, html)
    changed = False
    fresh_specs = fresh.spec_pairs()
    if len(fresh_specs) >= 2 and fresh_specs != record.specs:
        record.specs = fresh_specs
        changed = True
    if len(fresh.description) > len(record.description or ""):
        record.description = fresh.description
        changed = True
    if not record.images and images is not None:
        record.images = images.materialize_images(fresh.image_urls, record.slug, record.title, image_mode)
        changed = changed or bool(record.images)
    return changed


@dataclass
class VerifyReport:
    """Counters for one verification pass."""

    total_in: int = 0
    total_out: int = 0
    duplicates_removed: int = 0
    images_dropped: int = 0
    refreshed: int = 0
    invalid_dropped: int = 0
    with_images: int = 0
    with_specs: int = 0
    started: datetime = field(default_factory=datetime.now)
    finished: Optional[datetime] = None

    def lines(self) -> List[str]:
        return [
            "Validation complete",
            f"Total products: {self.total_out} (was {self.total_in})",
            f"With images: {self.with_images}",
            f"With specs: {self.with_specs}",
            f"Missing image paths dropped: {self.images_dropped}",
            f"Refreshed from source: {self.refreshed}",
            f"Invalid records dropped: {self.invalid_dropped}",
            f"Duplicates removed: {self.duplicates_removed}",
            f"Started: {self.started.isoformat()}",
            f"Finished: {(self.finished or datetime.now()).isoformat()}",
        ]

    def to_markdown(self) -> str:
        stamp = (self.finished or datetime.now()).isoformat()
        return f"\n\n## Verify summary ({stamp})\n\n" + "\n".join(self.lines()) + "\n"


def verify_records(
    records: List[ProductRecord],
    images: ImagePipeline,
    fetcher: Optional[Fetcher] = None,
    image_mode: str = "single",
    max_sentences: int = DESCRIPTION_SENTENCES,
) -> Tuple[List[ProductRecord], VerifyReport]:
    """Pure-ish core of the pass: returns the verified list and its report.

    Without a fetcher no source pages are re-fetched.
    """
    report = VerifyReport(total_in=len(records))
    products, report.duplicates_removed = dedupe_records(records)

    for record in products:
        on_disk = [p for p in record.images if images.exists(p)]
        report.images_dropped += len(record.images) - len(on_disk)
        record.images = on_disk

        if fetcher is not None and needs_refresh(record):
            if refresh_record(record, fetcher, images, image_mode):
                report.refreshed += 1

        record.description = limit_sentences(record.description or "", max_sentences)
        report.with_images += int(bool(record.images))
        report.with_specs += int(record.spec_count() >= 2)

    valid = [r for r in products if is_valid_record(r)]
    report.invalid_dropped = len(products) - len(valid)
    valid.sort(key=lambda r: title_sort_key(r.title, r.slug))
    report.total_out = len(valid)
    report.finished = datetime.now()
    return valid, report


def verify_store(
    store: Any,
    images: ImagePipeline,
    fetcher: Optional[Fetcher] = None,
    image_mode: str = "single",
    summary_path: Union[str, Path, None] = None,
) -> VerifyReport:
    """Run the verification pass over ``store`` and write the result back.

    Running it again on its own output changes nothing.
    """
    records = store.load_all()
    verified, report = verify_records(records, images, fetcher, image_mode)
    store.replace_all(verified)

    summary_path = Path(summary_path) if summary_path else LOG_DIR / "verify_summary.md"
    summary_path.parent.mkdir(parents=True, exist_ok=True)
    with open(summary_path, "a", encoding="utf-8") as f:
        f.write(report.to_markdown())

    for line in report.lines():
        logger.info(line)
    log_event("verify_complete", {
        "total_in": report.total_in,
        "total_out": report.total_out,
        "duplicates_removed": report.duplicates_removed,
        "invalid_dropped": report.invalid_dropped,
    }, logger_name="verify")
    return report
