"""SQLite listing store adapter.

Implements the core ListingStorePort using a simple SQLite database.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
import json
import sqlite3
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from listingfeed.core.models import ListingRecord, PendingNotice, SourceTag
from listingfeed.core.rules_engine import CATEGORY_SLUGS
from listingfeed.core.trust import AUTHOR_ID_PREFIX, author_identity


class SQLiteListingStore:
    """Thin SQLite wrapper that satisfies the ListingStorePort contract."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def init_db(self) -> None:
        """Create tables if they do not exist and seed the category set.

        Tables:
        - categories: closed set of category slugs
        - listings: one row per (source_channel, source_message_id)
        """

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS categories (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    slug TEXT NOT NULL UNIQUE
                )
                """
            )
            # listings is keyed twice: an independent id for references and the
            # (source_channel, source_message_id) pair for idempotent imports.
            # Fields:
            # - source_channel: channel username; compared case-insensitively
            # - source_message_id: Telegram message id within the channel
            # - price: decimal stored as text to keep it exact
            # - images: JSON list of public image URLs
            # - author_username / author_id: author identity for trust scoring
            # - author_verified: trust flag, only ever set to 1
            # - sources: JSON list of {channel, message_id}, own origin first
            # - notified_at: when the original author was told about the listing
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS listings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    source_channel TEXT NOT NULL COLLATE NOCASE,
                    source_message_id INTEGER NOT NULL,
                    category_id INTEGER REFERENCES categories(id),
                    title TEXT NOT NULL,
                    description TEXT,
                    price TEXT,
                    currency TEXT NOT NULL,
                    images TEXT NOT NULL DEFAULT '[]',
                    status TEXT NOT NULL DEFAULT 'active',
                    created_at TIMESTAMP NOT NULL,
                    author_username TEXT,
                    author_id INTEGER,
                    author_verified INTEGER NOT NULL DEFAULT 0,
                    sources TEXT NOT NULL DEFAULT '[]',
                    notified_at TIMESTAMP,
                    UNIQUE (source_channel, source_message_id)
                )
                """
            )
            conn.executemany(
                "INSERT OR IGNORE INTO categories (slug) VALUES (?)",
                [(slug,) for slug in CATEGORY_SLUGS],
            )

    def category_ids(self) -> Dict[str, int]:
        with self._connect() as conn:
            rows = conn.execute("SELECT id, slug FROM categories").fetchall()
        return {row["slug"]: int(row["id"]) for row in rows}

    @staticmethod
    def _row_values(record: ListingRecord) -> dict:
        return {
            "source_channel": record.source_channel,
            "source_message_id": record.source_message_id,
            "category_id": record.category_id,
            "title": record.title,
            "description": record.description or None,
            "price": str(record.price) if record.price is not None else None,
            "currency": record.currency,
            "images": json.dumps(record.images),
            "status": record.status,
            "created_at": record.created_at.isoformat(),
            "author_username": record.author_username,
            "author_id": record.author_id,
            "sources": json.dumps(
                [SourceTag(record.source_channel, record.source_message_id).to_dict()]
            ),
        }

    def _insert(self, conn: sqlite3.Connection, record: ListingRecord) -> Optional[int]:
        cur = conn.execute(
            """
            INSERT INTO listings (
                source_channel,
                source_message_id,
                category_id,
                title,
                description,
                price,
                currency,
                images,
                status,
                created_at,
                author_username,
                author_id,
                sources
            ) VALUES (
                :source_channel,
                :source_message_id,
                :category_id,
                :title,
                :description,
                :price,
                :currency,
                :images,
                :status,
                :created_at,
                :author_username,
                :author_id,
                :sources
            )
            ON CONFLICT (source_channel, source_message_id) DO NOTHING
            """,
            self._row_values(record),
        )
        if cur.rowcount == 0:
            return None
        return int(cur.lastrowid)

    def insert_listing(self, record: ListingRecord) -> Optional[int]:
        """Insert a listing; an existing (channel, message_id) is a silent no-op."""

        with self._connect() as conn:
            return self._insert(conn, record)

    def upsert_listing(self, record: ListingRecord) -> Tuple[int, bool]:
        """Insert or refresh a listing by (channel, message_id).

        Updates only touch content fields. Source tags, the verified flag,
        the status and the notification marker belong to the stored row.
        """

        with self._connect() as conn:
            row = conn.execute(
                "SELECT id FROM listings WHERE source_channel = ? AND source_message_id = ?",
                (record.source_channel, record.source_message_id),
            ).fetchone()
            if row is None:
                listing_id = self._insert(conn, record)
                if listing_id is not None:
                    return listing_id, True
                row = conn.execute(
                    "SELECT id FROM listings WHERE source_channel = ? AND source_message_id = ?",
                    (record.source_channel, record.source_message_id),
                ).fetchone()

            values = self._row_values(record)
            values["id"] = int(row["id"])
            conn.execute(
                """
                UPDATE listings SET
                    category_id = :category_id,
                    title = :title,
                    description = :description,
                    price = :price,
                    currency = :currency,
                    created_at = :created_at,
                    author_username = COALESCE(:author_username, author_username),
                    author_id = COALESCE(:author_id, author_id),
                    images = CASE WHEN :images = '[]' THEN images ELSE :images END
                WHERE id = :id
                """,
                values,
            )
            return values["id"], False

    def find_listing_id(self, channel: str, message_id: int) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id FROM listings WHERE source_channel = ? AND source_message_id = ?",
                (channel, message_id),
            ).fetchone()
        return int(row["id"]) if row else None

    def find_by_source(self, channel: str, message_id: int) -> Optional[int]:
        """Return the listing whose merged sources include this origin.

        A listing's own origin is also stored in its sources, so rows keyed by
        the same (channel, message_id) are excluded.
        """

        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT listings.id
                FROM listings, json_each(listings.sources) AS tag
                WHERE lower(json_extract(tag.value, '$.channel')) = lower(:channel)
                  AND json_extract(tag.value, '$.message_id') = :message_id
                  AND NOT (listings.source_channel = :channel AND listings.source_message_id = :message_id)
                ORDER BY listings.id
                LIMIT 1
                """,
                {"channel": channel, "message_id": message_id},
            ).fetchone()
        return int(row["id"]) if row else None

    def get_sources(self, listing_id: int) -> List[SourceTag]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT source_channel, source_message_id, sources FROM listings WHERE id = ?",
                (listing_id,),
            ).fetchone()
        if row is None:
            raise KeyError(f"Listing {listing_id} does not exist")
        tags = [SourceTag.from_dict(item) for item in json.loads(row["sources"] or "[]")]
        if not tags:
            tags = [SourceTag(row["source_channel"], int(row["source_message_id"]))]
        return tags

    def set_sources(self, listing_id: int, sources: Iterable[SourceTag]) -> None:
        payload = json.dumps([tag.to_dict() for tag in sources])
        with self._connect() as conn:
            conn.execute("UPDATE listings SET sources = ? WHERE id = ?", (payload, listing_id))

    def author_counts(self, channel: str) -> Dict[str, int]:
        """Count active listings per author identity within a channel."""

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT author_username, author_id, COUNT(*) AS total
                FROM listings
                WHERE source_channel = ?
                  AND status = 'active'
                  AND (author_username IS NOT NULL OR author_id IS NOT NULL)
                GROUP BY author_username, author_id
                """,
                (channel,),
            ).fetchall()

        counts: Dict[str, int] = {}
        for row in rows:
            identity = author_identity(row["author_username"], row["author_id"])
            if identity is None:
                continue
            counts[identity] = counts.get(identity, 0) + int(row["total"])
        return counts

    def active_count(self, channel: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM listings WHERE source_channel = ? AND status = 'active'",
                (channel,),
            ).fetchone()
        return int(row["total"])

    def mark_verified(self, channel: str, authors: Optional[Iterable[str]] = None) -> int:
        """Set the verified flag; return how many rows changed.

        Without ``authors`` every listing of the channel is flagged. Author
        identities of the form ``id:<n>`` match rows by author id.
        """

        query = "UPDATE listings SET author_verified = 1 WHERE source_channel = ? AND author_verified = 0"
        params: list = [channel]

        if authors is not None:
            usernames: List[str] = []
            author_ids: List[int] = []
            for author in authors:
                if author.startswith(AUTHOR_ID_PREFIX):
                    author_ids.append(int(author[len(AUTHOR_ID_PREFIX):]))
                else:
                    usernames.append(author)

            clauses = []
            if usernames:
                clauses.append(f"author_username IN ({', '.join('?' * len(usernames))})")
                params.extend(usernames)
            if author_ids:
                clauses.append(
                    f"(author_username IS NULL AND author_id IN ({', '.join('?' * len(author_ids))}))"
                )
                params.extend(author_ids)
            if not clauses:
                return 0
            query += f" AND ({' OR '.join(clauses)})"

        with self._connect() as conn:
            return conn.execute(query, params).rowcount

    def pending_notifications(self, channel: Optional[str] = None) -> List[PendingNotice]:
        """Return active listings whose authors have not been notified yet, oldest first."""

        query = (
            "SELECT id, title, source_channel, source_message_id FROM listings "
            "WHERE notified_at IS NULL AND status = 'active'"
        )
        params: list = []
        if channel:
            query += " AND source_channel = ?"
            params.append(channel)
        query += " ORDER BY created_at ASC, id ASC"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            PendingNotice(
                listing_id=int(row["id"]),
                title=row["title"],
                source_channel=row["source_channel"],
                source_message_id=int(row["source_message_id"]),
            )
            for row in rows
        ]

    def mark_notified(self, listing_id: int) -> None:
        now = datetime.now(timezone.utc)
        with self._connect() as conn:
            conn.execute(
                "UPDATE listings SET notified_at = ? WHERE id = ?",
                (now.isoformat(), listing_id),
            )

    def get_listing(self, listing_id: int) -> Optional[dict]:
        """Return one listing as a plain dict with decoded JSON columns."""

        with self._connect() as conn:
            row = conn.execute("SELECT * FROM listings WHERE id = ?", (listing_id,)).fetchone()
        if row is None:
            return None
        listing = dict(row)
        listing["images"] = json.loads(listing["images"])
        listing["sources"] = [SourceTag.from_dict(item) for item in json.loads(listing["sources"])]
        listing["price"] = Decimal(listing["price"]) if listing["price"] is not None else None
        listing["author_verified"] = bool(listing["author_verified"])
        return listing

    def count_listings(self, channel: Optional[str] = None) -> int:
        query = "SELECT COUNT(*) AS total FROM listings"
        params: tuple = ()
        if channel:
            query += " WHERE source_channel = ?"
            params = (channel,)
        with self._connect() as conn:
            return int(conn.execute(query, params).fetchone()["total"])
