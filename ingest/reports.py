"""Store statistics and post-import integrity checks."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ingest.images import ImagePipeline
from ingest.logging_config import LOG_DIR, get_logger

__all__ = ["store_stats", "IntegrityReport", "check_integrity"]

logger = get_logger("reports")

INTEGRITY_SAMPLE = 10


def store_stats(store: Any) -> Dict[str, int]:
    """Counts of records by image and spec coverage."""
    records = store.load_all()
    stats = {
        "total": len(records),
        "zeroImages": 0,
        "moreThanOneImage": 0,
        "missingSpecs": 0,
    }
    for record in records:
        if not record.images:
            stats["zeroImages"] += 1
        elif len(record.images) > 1:
            stats["moreThanOneImage"] += 1
        if record.spec_count() < 2:
            stats["missingSpecs"] += 1
    return stats


@dataclass
class IntegrityReport:
    lines: List[str] = field(default_factory=list)
    ok: bool = True

    def add(self, line: str, ok: bool = True) -> None:
        self.lines.append(line)
        if not ok:
            self.ok = False
            logger.warning(line)
        else:
            logger.info(line)


def check_integrity(
    store: Any,
    images: ImagePipeline,
    categories_path: Optional[Union[str, Path]] = None,
    sample: int = INTEGRITY_SAMPLE,
    log_path: Optional[Union[str, Path]] = None,
) -> IntegrityReport:
    """Check the store loads, sampled local images exist and categories parse.

    The report is also written to ``logs/final_import_check.log``.
    """
    report = IntegrityReport()
    report.add(f"Import integrity check {datetime.now().isoformat()}")
    report.add(f"Asset root: {images.asset_root} {'OK' if images.asset_root.is_dir() else 'MISSING'}",
               ok=images.asset_root.is_dir())

    try:
        records = store.load_all()
    except (OSError, ValueError) as e:
        report.add(f"Store: ERROR reading {e}", ok=False)
        records = []
    else:
        report.add(f"Store: OK {len(records)} items")

    found = 0
    for record in records[:sample]:
        if not record.slug or not record.title:
            report.add(f"WARN product shape: {record.slug or '(no-slug)'} missing title/slug", ok=False)
        for rel in record.images:
            if images.exists(rel):
                found += 1
            else:
                report.add(f"WARN missing local image: {images.resolve(rel)}", ok=False)
    report.add(f"Sampled local images found: {found}")

    if categories_path is not None:
        path = Path(categories_path)
        if not path.exists():
            report.add("categories.json: MISSING (optional)")
        else:
            try:
                with open(path, "r", encoding="utf-8") as f:
                    categories = json.load(f)
                report.add(f"categories.json: OK {len(categories)} categories")
            except (OSError, ValueError) as e:
                report.add(f"categories.json: ERROR parsing {e}", ok=False)

    report.add("Check completed.")

    log_path = Path(log_path) if log_path else LOG_DIR / "final_import_check.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with open(log_path, "w", encoding="utf-8") as f:
        f.write("\n".join(report.lines) + "\n")
    return report
