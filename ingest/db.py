"""SQLite product store with brands, prices and media as related rows."""

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Generator, Iterable, List, Optional, Tuple, Union

from ingest.logging_config import get_logger
from ingest.models import ProductRecord, utc_now
from ingest.store import merge_records

__all__ = [
    "DEFAULT_DB_PATH",
    "get_connection",
    "init_db",
    "get_product_count",
    "SqliteProductStore",
]

logger = get_logger("db")

DEFAULT_DB_PATH = "data/catalog.db"


@contextmanager
def get_connection(db_path: Union[str, Path] = DEFAULT_DB_PATH) -> Generator[sqlite3.Connection, None, None]:
    """Context manager for database connections."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        yield conn
    finally:
        conn.close()


def init_db(db_path: Union[str, Path] = DEFAULT_DB_PATH) -> None:
    """Initialize the database schema."""
    with get_connection(db_path) as conn:
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS brands (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT UNIQUE NOT NULL
            )
        """)

        # Core products table
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS products (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                slug TEXT UNIQUE NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                specs_json TEXT,
                brand_id INTEGER,
                material TEXT,
                color TEXT,
                category_slug TEXT,
                subcategory_slug TEXT,
                created_at TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (brand_id) REFERENCES brands(id)
            )
        """)

        # Price history: a row is added only when the amount changes
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS prices (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                product_id INTEGER NOT NULL,
                amount INTEGER NOT NULL,
                currency TEXT DEFAULT 'KZT',
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (product_id) REFERENCES products(id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS media (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                product_id INTEGER NOT NULL,
                url TEXT NOT NULL,
                position INTEGER NOT NULL,
                FOREIGN KEY (product_id) REFERENCES products(id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS supplier_refs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                product_id INTEGER NOT NULL,
                supplier_url TEXT UNIQUE NOT NULL,
                FOREIGN KEY (product_id) REFERENCES products(id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS import_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                url TEXT NOT NULL,
                status TEXT NOT NULL,
                error TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_products_category ON products(category_slug)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_prices_product_id ON prices(product_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_media_product_id ON media(product_id)")

        conn.commit()


def get_product_count(db_path: Union[str, Path] = DEFAULT_DB_PATH) -> int:
    with get_connection(db_path) as conn:
        row = conn.execute("SELECT COUNT(*) AS n FROM products").fetchone()
        return int(row["n"])


def _brand_id(cursor: sqlite3.Cursor, name: Optional[str]) -> Optional[int]:
    if not name:
        return None
    cursor.execute("INSERT OR IGNORE INTO brands (name) VALUES (?)", (name,))
    cursor.execute("SELECT id FROM brands WHERE name = ?", (name,))
    return int(cursor.fetchone()["id"])


class SqliteProductStore:
    """Relational backend with the same contract as JsonProductStore."""

    def __init__(self, db_path: Union[str, Path] = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        init_db(self.db_path)

    # -- reads ---------------------------------------------------------------

    def _row_to_record(self, conn: sqlite3.Connection, row: sqlite3.Row) -> ProductRecord:
        product_id = row["id"]
        price = conn.execute(
            "SELECT amount FROM prices WHERE product_id = ? ORDER BY id DESC LIMIT 1", (product_id,)
        ).fetchone()
        images = [r["url"] for r in conn.execute(
            "SELECT url FROM media WHERE product_id = ? ORDER BY position", (product_id,)
        )]
        ref = conn.execute(
            "SELECT supplier_url FROM supplier_refs WHERE product_id = ? ORDER BY id LIMIT 1", (product_id,)
        ).fetchone()
        return ProductRecord(
            slug=row["slug"],
            title=row["title"],
            price=price["amount"] if price else None,
            description=row["description"] or "",
            specs=json.loads(row["specs_json"]) if row["specs_json"] else {},
            images=images,
            source_url=ref["supplier_url"] if ref else None,
            brand=row["brand_name"],
            material=row["material"],
            color=row["color"],
            category_slug=row["category_slug"],
            subcategory_slug=row["subcategory_slug"],
            created_at=row["created_at"],
        )

    _SELECT = """
        SELECT p.*, b.name AS brand_name
        FROM products p LEFT JOIN brands b ON b.id = p.brand_id
    """

    def load_all(self) -> List[ProductRecord]:
        with get_connection(self.db_path) as conn:
            rows = conn.execute(self._SELECT + " ORDER BY p.id").fetchall()
            return [self._row_to_record(conn, row) for row in rows]

    def get(self, slug: str) -> Optional[ProductRecord]:
        with get_connection(self.db_path) as conn:
            row = conn.execute(self._SELECT + " WHERE p.slug = ?", (slug,)).fetchone()
            return self._row_to_record(conn, row) if row else None

    def _find(self, conn: sqlite3.Connection, record: ProductRecord) -> Optional[sqlite3.Row]:
        row = conn.execute(self._SELECT + " WHERE p.slug = ?", (record.slug,)).fetchone()
        if row is None and record.source_url:
            row = conn.execute(
                self._SELECT + " JOIN supplier_refs s ON s.product_id = p.id WHERE s.supplier_url = ?",
                (record.source_url,),
            ).fetchone()
        return row

    def resolve_slug(self, slug: str, source_url: Optional[str] = None) -> str:
        """Slug an upsert of ``slug``/``source_url`` would be stored under."""
        with get_connection(self.db_path) as conn:
            row = self._find(conn, ProductRecord(slug=slug, title=slug, source_url=source_url))
            return row["slug"] if row else slug

    def slugs(self) -> List[str]:
        with get_connection(self.db_path) as conn:
            return [r["slug"] for r in conn.execute("SELECT slug FROM products ORDER BY id")]

    def count(self) -> int:
        return get_product_count(self.db_path)

    # -- writes --------------------------------------------------------------

    def _write(self, cursor: sqlite3.Cursor, record: ProductRecord, product_id: Optional[int]) -> int:
        brand_id = _brand_id(cursor, record.brand)
        specs_json = json.dumps(record.specs, ensure_ascii=False) if record.specs else None
        values: Tuple[Any, ...] = (
            record.slug, record.title, record.description, specs_json, brand_id,
            record.material, record.color, record.category_slug, record.subcategory_slug,
        )
        if product_id is None:
            cursor.execute("""
                INSERT INTO products (slug, title, description, specs_json, brand_id,
                                      material, color, category_slug, subcategory_slug, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, values + (record.created_at or utc_now(),))
            product_id = int(cursor.lastrowid)
        else:
            cursor.execute("""
                UPDATE products SET
                    slug = ?, title = ?, description = ?, specs_json = ?, brand_id = ?,
                    material = ?, color = ?, category_slug = ?, subcategory_slug = ?,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
            """, values + (product_id,))

        if record.price:
            cursor.execute(
                "SELECT amount FROM prices WHERE product_id = ? ORDER BY id DESC LIMIT 1", (product_id,)
            )
            last = cursor.fetchone()
            if last is None or last["amount"] != record.price:
                cursor.execute("INSERT INTO prices (product_id, amount) VALUES (?, ?)", (product_id, record.price))

        cursor.execute("DELETE FROM media WHERE product_id = ?", (product_id,))
        cursor.executemany(
            "INSERT INTO media (product_id, url, position) VALUES (?, ?, ?)",
            [(product_id, url, i) for i, url in enumerate(record.images)],
        )

        if record.source_url:
            cursor.execute(
                "INSERT OR IGNORE INTO supplier_refs (product_id, supplier_url) VALUES (?, ?)",
                (product_id, record.source_url),
            )
        return product_id

    def upsert(self, record: ProductRecord) -> Tuple[ProductRecord, bool]:
        """Insert or merge by slug (then supplier URL); returns (stored record, is_new)."""
        with get_connection(self.db_path) as conn:
            cursor = conn.cursor()
            row = self._find(conn, record)
            if row is None:
                if not record.created_at:
                    record.created_at = utc_now()
                self._write(cursor, record, None)
                conn.commit()
                return record, True

            existing = self._row_to_record(conn, row)
            merged = merge_records(existing, record)
            if merged.to_dict() != existing.to_dict():
                self._write(cursor, merged, row["id"])
                conn.commit()
            return merged, False

    def append(self, records: Iterable[ProductRecord]) -> int:
        added = 0
        with get_connection(self.db_path) as conn:
            cursor = conn.cursor()
            for record in records:
                cursor.execute("SELECT 1 FROM products WHERE slug = ?", (record.slug,))
                if cursor.fetchone():
                    continue
                if not record.created_at:
                    record.created_at = utc_now()
                self._write(cursor, record, None)
                added += 1
            conn.commit()
        return added

    def replace_all(self, records: Iterable[ProductRecord]) -> None:
        """Rewrite the product tables in one transaction."""
        records = list(records)
        with get_connection(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM products")
            for record in records:
                self._write(cursor, record, None)
            conn.commit()
        logger.info(f"Rewrote {len(records)} products in {self.db_path}")

    def log_failure(self, url: str, error: str) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute(
                "INSERT INTO import_log (url, status, error) VALUES (?, ?, ?)",
                (url, "error", error[:2000]),
            )
            conn.commit()

    def failures(self) -> List[Dict[str, Any]]:
        with get_connection(self.db_path) as conn:
            return [dict(r) for r in conn.execute(
                "SELECT url, status, error, created_at FROM import_log ORDER BY id"
            )]
