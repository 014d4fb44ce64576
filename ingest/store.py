"""Flat-file product store: one JSON array rewritten atomically."""

import asyncio
import json
import os
import tempfile
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from ingest.config import STORE_BACKOFF_CAP_MS, STORE_BACKOFF_MS, STORE_WRITE_ATTEMPTS
from ingest.errors import StoreReadError, StoreWriteError
from ingest.logging_config import get_logger
from ingest.models import ProductRecord, utc_now
from ingest.retry import RetryPolicy, exponential, retry_on

__all__ = [
    "store_write_policy",
    "write_json_atomic",
    "merge_records",
    "owned_images",
    "JsonProductStore",
    "SerializedWriter",
]

logger = get_logger("store")


def store_write_policy(sleep: Optional[Callable[[float], None]] = None) -> RetryPolicy:
    """20 attempts, 100ms doubling up to 2s, on OS-level rename/write failures."""
    policy = RetryPolicy(
        max_attempts=STORE_WRITE_ATTEMPTS,
        backoff=exponential(STORE_BACKOFF_MS / 1000.0, cap=STORE_BACKOFF_CAP_MS / 1000.0),
        retryable=retry_on(OSError),
        name="store write",
    )
    if sleep is not None:
        policy.sleep = sleep
    return policy


def write_json_atomic(
    path: Union[str, Path],
    data: Any,
    policy: Optional[RetryPolicy] = None,
    replace: Callable[[str, str], None] = os.replace,
) -> None:
    """Write ``data`` as JSON through a temp file and an atomic rename.

    The rename is retried on transient failures (file locks held by other
    processes); a failure after the last attempt raises StoreWriteError and
    leaves the previous file untouched.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=path.name + ".", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
            f.write("\n")
        (policy or store_write_policy()).call(replace, tmp_name, str(path))
    except OSError as e:
        Path(tmp_name).unlink(missing_ok=True)
        raise StoreWriteError(f"could not write {path}: {e}") from e


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def merge_records(old: ProductRecord, new: ProductRecord) -> ProductRecord:
    """Merge ``new`` over ``old``.

    Non-empty new fields win, populated fields are never blanked by empty
    ones, specs are merged key by key and ``created_at`` is preserved.
    """
    merged = ProductRecord(slug=old.slug or new.slug, title=old.title)
    for name in ("title", "price", "description", "images", "source_url", "brand",
                 "material", "color", "category_slug", "subcategory_slug"):
        new_value = getattr(new, name)
        setattr(merged, name, getattr(old, name) if _is_empty(new_value) else new_value)

    specs = dict(old.specs)
    for key, value in new.specs.items():
        if key and not _is_empty(value):
            specs[key] = value
    merged.specs = specs
    if new.slug != merged.slug:
        # images must stay under the stored slug's own asset directory
        owned = owned_images(new.images, merged.slug)
        merged.images = owned or list(old.images)
    merged.created_at = old.created_at or new.created_at or utc_now()
    return merged


def owned_images(images: Iterable[str], slug: str) -> List[str]:
    """Image paths that live directly under ``/<subdir>/<slug>/``."""
    return [p for p in images if PurePosixPath(p).parent.name == slug]


class JsonProductStore:
    """Product records kept in a single JSON array file keyed by slug."""

    def __init__(self, path: Union[str, Path], policy: Optional[RetryPolicy] = None):
        self.path = Path(path)
        self.policy = policy or store_write_policy()

    def load_all(self) -> List[ProductRecord]:
        if not self.path.exists():
            return []
        with open(self.path, "r", encoding="utf-8") as f:
            text = f.read()
        if not text.strip():
            return []
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise StoreReadError(f"{self.path} is not valid JSON: {e}") from e
        if not isinstance(data, list):
            raise StoreReadError(f"{self.path} does not hold a JSON array")
        return [ProductRecord.from_dict(item) for item in data if isinstance(item, dict)]

    def _save(self, records: Iterable[ProductRecord]) -> None:
        write_json_atomic(self.path, [r.to_dict() for r in records], self.policy)

    def get(self, slug: str) -> Optional[ProductRecord]:
        for record in self.load_all():
            if record.slug == slug:
                return record
        return None

    def slugs(self) -> List[str]:
        return [r.slug for r in self.load_all()]

    @staticmethod
    def _match(records: List[ProductRecord], slug: str, source_url: Optional[str]) -> Optional[int]:
        index = next((i for i, r in enumerate(records) if r.slug == slug), None)
        if index is None and source_url:
            index = next((i for i, r in enumerate(records) if r.source_url == source_url), None)
        return index

    def resolve_slug(self, slug: str, source_url: Optional[str] = None) -> str:
        """Slug an upsert of ``slug``/``source_url`` would be stored under."""
        records = self.load_all()
        index = self._match(records, slug, source_url)
        return slug if index is None else records[index].slug

    def upsert(self, record: ProductRecord) -> Tuple[ProductRecord, bool]:
        """Insert or merge ``record``. Returns the stored record and whether it was new.

        Lookup is by slug, then by source URL; the file is only rewritten when
        the stored data actually changes.
        """
        records = self.load_all()
        index = self._match(records, record.slug, record.source_url)

        if index is None:
            if not record.created_at:
                record.created_at = utc_now()
            records.append(record)
            self._save(records)
            return record, True

        merged = merge_records(records[index], record)
        if merged.to_dict() != records[index].to_dict():
            records[index] = merged
            self._save(records)
        return merged, False

    def append(self, new_records: Iterable[ProductRecord]) -> int:
        """Append records whose slug is not stored yet; returns how many were added."""
        records = self.load_all()
        known = {r.slug for r in records}
        added = 0
        for record in new_records:
            if record.slug in known:
                continue
            if not record.created_at:
                record.created_at = utc_now()
            records.append(record)
            known.add(record.slug)
            added += 1
        if added:
            self._save(records)
        return added

    def replace_all(self, records: Iterable[ProductRecord]) -> None:
        self._save(list(records))

    def count(self) -> int:
        return len(self.load_all())

    def log_failure(self, url: str, error: str) -> None:
        """Failures are reported through the run log in file mode."""
        logger.debug(f"Failure for {url}: {error}")


class SerializedWriter:
    """Single write path for concurrent product tasks.

    Every store mutation goes through one asyncio.Lock and runs in a worker
    thread, so read-modify-write cycles never interleave.
    """

    def __init__(self, store: Any):
        self.store = store
        self._lock = asyncio.Lock()

    async def upsert(self, record: ProductRecord) -> Tuple[ProductRecord, bool]:
        async with self._lock:
            return await asyncio.to_thread(self.store.upsert, record)

    async def log_failure(self, url: str, error: str) -> None:
        async with self._lock:
            await asyncio.to_thread(self.store.log_failure, url, error)
