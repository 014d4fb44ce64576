"""Minimum-validity checks for extracted and persisted products."""

from dataclasses import dataclass
from typing import Dict, List, Optional

from ingest.config import MIN_DESCRIPTION_LENGTH, MIN_SPECS
from ingest.models import ProductRecord, RawProduct

__all__ = ["RecordCheck", "check_raw", "check_record", "is_valid_record", "needs_refresh"]


@dataclass
class RecordCheck:
    """Validity flags for one product.

    ``has_images`` is None while images have not been materialized yet.
    """

    has_slug: bool
    has_title: bool
    has_description: bool
    has_specs: bool
    has_images: Optional[bool] = None

    @property
    def text_ok(self) -> bool:
        return self.has_slug and self.has_title and self.has_description and self.has_specs

    @property
    def ok(self) -> bool:
        return self.text_ok and bool(self.has_images)

    def reasons(self) -> List[str]:
        out = []
        if not (self.has_slug and self.has_title):
            out.append("no-title")
        if not self.has_description:
            out.append("no-description")
        if not self.has_specs:
            out.append("specs<2")
        if self.has_images is False:
            out.append("no-images")
        return out

    def marks(self) -> Dict[str, bool]:
        """Per-field pass/fail marks for the run log."""
        return {
            "description": self.has_description,
            "images": bool(self.has_images),
            "specs": self.has_specs,
        }


def _spec_count(specs: Dict[str, str]) -> int:
    return sum(1 for k, v in specs.items() if k and v and str(v).strip())


def check_raw(raw: RawProduct, images: Optional[List[str]] = None) -> RecordCheck:
    return RecordCheck(
        has_slug=bool(raw.slug),
        has_title=bool(raw.title),
        has_description=len(raw.description or "") > MIN_DESCRIPTION_LENGTH,
        has_specs=_spec_count(raw.specs) >= MIN_SPECS,
        has_images=None if images is None else len(images) > 0,
    )


def check_record(record: ProductRecord) -> RecordCheck:
    return RecordCheck(
        has_slug=bool(record.slug),
        has_title=bool(record.title),
        has_description=len(record.description or "") > MIN_DESCRIPTION_LENGTH,
        has_specs=_spec_count(record.specs) >= MIN_SPECS,
        has_images=len(record.images) > 0,
    )


def is_valid_record(record: ProductRecord) -> bool:
    """Slug, title, at least one image, two specs and a description over 10 chars."""
    return check_record(record).ok


def needs_refresh(record: ProductRecord) -> bool:
    """True when a stored record is below the richness threshold."""
    check = check_record(record)
    return not (check.has_specs and check.has_description and check.has_images)
