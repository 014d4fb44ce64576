"""Enrichment passes over stored products: refetch, placeholder copy, image sync."""

from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from ingest.config import ENRICH_DESCRIPTION_SENTENCES
from ingest.errors import IngestError
from ingest.fetcher import Fetcher
from ingest.html_utils import extract_description, extract_specs, make_soup
from ingest.images import ImagePipeline
from ingest.logging_config import get_logger, log_event
from ingest.models import ProductRecord

__all__ = [
    "EnrichReport",
    "enrich_record",
    "enrich_store",
    "generate_description",
    "sync_images_with_disk",
]

logger = get_logger("enrich")

# Descriptions shorter than this get placeholder copy when generation is on
GENERATE_BELOW = 60
MIN_FRESH_DESCRIPTION = 20


@dataclass
class EnrichReport:
    total: int = 0
    updated: int = 0
    failed: int = 0
    generated: int = 0

    def lines(self) -> List[str]:
        return [
            f"Total products: {self.total}",
            f"Updated from source: {self.updated}",
            f"Failed: {self.failed}",
            f"Generated descriptions: {self.generated}",
        ]


def enrich_record(record: ProductRecord, fetcher: Fetcher) -> Tuple[bool, Optional[str]]:
    """Refresh specs and description from the record's source page in place.

    Returns ``(updated, failure_reason)``.
    """
    if not record.source_url:
        return False, "no-source"
    try:
        html = fetcher.fetch_text(record.source_url)
    except IngestError as e:
        return False, str(e)

    soup = make_soup(html)
    updated = False
    specs = extract_specs(soup)
    if len(specs) >= 2 and specs != record.specs:
        record.specs = specs
        updated = True
    description = extract_description(soup, ENRICH_DESCRIPTION_SENTENCES)
    if len(description) > MIN_FRESH_DESCRIPTION and description != record.description:
        record.description = description
        updated = True
    return updated, None


def generate_description(record: ProductRecord) -> str:
    """Neutral placeholder copy built from the record's own fields."""
    sentences = [f"{record.title}."]
    details = []
    if record.material:
        details.append(f"материал: {record.material.lower()}")
    if record.color:
        details.append(f"цвет: {record.color.lower()}")
    if record.brand:
        details.append(f"бренд: {record.brand}")
    if details:
        sentences.append("Характеристики: " + ", ".join(details) + ".")
    sentences.append("Подходит для ресторанов, кафе и домашнего использования.")
    return " ".join(sentences)


def enrich_store(
    store: Any,
    fetcher: Optional[Fetcher] = None,
    generate_descriptions: bool = False,
) -> EnrichReport:
    """Refetch every record's source page and write the store back.

    With ``generate_descriptions`` thin descriptions get placeholder copy.
    Pass ``fetcher=None`` to only generate.
    """
    records = store.load_all()
    report = EnrichReport(total=len(records))
    for i, record in enumerate(records, 1):
        if fetcher is not None:
            updated, reason = enrich_record(record, fetcher)
            if updated:
                report.updated += 1
            elif reason and reason != "no-source":
                report.failed += 1
                logger.warning(f"[{i}/{len(records)}] {record.slug}: {reason}")
        if generate_descriptions and len(record.description or "") < GENERATE_BELOW:
            record.description = generate_description(record)
            report.generated += 1

    if report.updated or report.generated:
        store.replace_all(records)
    for line in report.lines():
        logger.info(line)
    log_event("enrich_complete", {
        "total": report.total,
        "updated": report.updated,
        "failed": report.failed,
        "generated": report.generated,
    }, logger_name="enrich")
    return report


def sync_images_with_disk(store: Any, images: ImagePipeline) -> Tuple[int, int]:
    """Set each record's ``images`` to exactly the WebP files in its asset directory.

    Records without any files on disk are left untouched. Returns
    ``(updated, skipped)``.
    """
    records = store.load_all()
    updated = skipped = 0
    for record in records:
        on_disk = images.existing_images(record.slug) if record.slug else []
        if not on_disk:
            skipped += 1
            continue
        if on_disk != record.images:
            record.images = on_disk
            updated += 1
    if updated:
        store.replace_all(records)
    logger.info(f"Synced images. Updated products: {updated}; Skipped: {skipped}")
    return updated, skipped
