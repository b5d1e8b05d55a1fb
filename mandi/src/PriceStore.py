"""PriceStore: Persistent market data (history) and alert subscriptions.

The store is an external collaborator of the engine. This module defines its
interface plus two implementations: an in-memory store for tests and local
runs, and an aiosqlite-backed store.

Rows are upserted on (commodity, market, date): the latest aggregation of a
day replaces earlier ones.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import threading
from abc import ABC, abstractmethod
from datetime import date, timedelta
from pathlib import Path

import aiosqlite

from .AlertDispatcher import SubscriptionStore
from .models import AlertSubscription, HistoryEntry, MarketRecord, PriceSnapshot, utcnow

logger = logging.getLogger(__name__)

UNKNOWN_MARKET = "Unknown"


def record_from_snapshot(snapshot: PriceSnapshot) -> MarketRecord:
    """Build the row stored for a snapshot."""
    return MarketRecord(
        commodity=snapshot.commodity,
        market=snapshot.market or UNKNOWN_MARKET,
        date=snapshot.last_updated.date(),
        min_price=snapshot.price_range.min,
        max_price=snapshot.price_range.max,
        modal_price=snapshot.price_range.modal,
        arrivals=snapshot.arrivals,
        volatility=snapshot.volatility,
        sources=list(snapshot.sources),
        state=snapshot.state,
    )


def _usable(price: float) -> bool:
    return math.isfinite(price) and price > 0


class PriceStore(ABC):
    """Persistent market data store."""

    @abstractmethod
    async def insert_or_update_snapshot(self, snapshot: PriceSnapshot) -> None:
        """Upsert the day's row for the snapshot's commodity and market."""
        pass

    @abstractmethod
    async def query_latest(self, commodity: str) -> MarketRecord | None:
        """Most recent row for a commodity across all markets."""
        pass

    @abstractmethod
    async def query_range(self, commodity: str, days: int) -> list[HistoryEntry]:
        """History for the last ``days`` days, newest first.

        Rows with non-positive or non-finite prices are dropped.
        """
        pass

    async def close(self) -> None:
        return None


class InMemoryPriceStore(PriceStore, SubscriptionStore):
    """Dict-backed store, safe for concurrent access."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rows: dict[tuple[str, str, date], MarketRecord] = {}
        self._subscriptions: dict[str, list[AlertSubscription]] = {}

    def add_record(self, record: MarketRecord) -> None:
        """Insert or replace a row directly."""
        with self._lock:
            self._rows[(record.commodity, record.market, record.date)] = record

    async def insert_or_update_snapshot(self, snapshot: PriceSnapshot) -> None:
        self.add_record(record_from_snapshot(snapshot))

    async def query_latest(self, commodity: str) -> MarketRecord | None:
        with self._lock:
            rows = [r for r in self._rows.values() if r.commodity == commodity]
        if not rows:
            return None
        return max(rows, key=lambda r: r.date)

    async def query_range(self, commodity: str, days: int) -> list[HistoryEntry]:
        cutoff = utcnow().date() - timedelta(days=days)
        with self._lock:
            rows = [
                r
                for r in self._rows.values()
                if r.commodity == commodity and r.date >= cutoff and _usable(r.modal_price)
            ]
        rows.sort(key=lambda r: r.date, reverse=True)
        return [r.to_history_entry() for r in rows]

    async def list_subscribers(self, commodity: str) -> list[AlertSubscription]:
        with self._lock:
            return [
                s
                for subs in self._subscriptions.values()
                for s in subs
                if s.commodity == commodity
            ]

    async def replace_subscriptions(
        self, vendor_id: str, subscriptions: list[AlertSubscription]
    ) -> None:
        with self._lock:
            self._subscriptions[vendor_id] = list(subscriptions)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS market_data (
    commodity TEXT NOT NULL,
    market TEXT NOT NULL,
    state TEXT,
    date TEXT NOT NULL,
    min_price REAL NOT NULL,
    max_price REAL NOT NULL,
    modal_price REAL NOT NULL,
    arrivals INTEGER DEFAULT 0,
    sources TEXT,
    volatility REAL DEFAULT 0,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (commodity, market, date)
);
CREATE INDEX IF NOT EXISTS idx_market_data_commodity_date
    ON market_data (commodity, date DESC);
CREATE TABLE IF NOT EXISTS price_alerts (
    vendor_id TEXT NOT NULL,
    commodity TEXT NOT NULL,
    alert_type TEXT NOT NULL DEFAULT 'volatility',
    threshold REAL NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (vendor_id, commodity, alert_type)
);
"""


class SqlitePriceStore(PriceStore, SubscriptionStore):
    """aiosqlite-backed store.

    .. code-block:: python

        store = SqlitePriceStore("data/mandi.db")
        await store.initialize()
        await store.insert_or_update_snapshot(snapshot)
        history = await store.query_range("Wheat", 30)
        await store.close()

    :ivar path: Database file path (":memory:" for a private in-memory db).
    """

    def __init__(self, path: str | Path = ":memory:") -> None:
        self.path = str(path)
        self._conn: aiosqlite.Connection | None = None
        self._init_lock = asyncio.Lock()
        # Writers share one connection; each transaction runs alone
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open the connection and create the schema (idempotent)."""
        async with self._init_lock:
            if self._conn is not None:
                return
            if self.path != ":memory:":
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            conn = await aiosqlite.connect(self.path)
            conn.row_factory = aiosqlite.Row
            if self.path != ":memory:":
                await conn.execute("PRAGMA journal_mode=WAL")
            await conn.executescript(SCHEMA_SQL)
            await conn.commit()
            self._conn = conn
            logger.info(f"Price store ready at {self.path}")

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def _db(self) -> aiosqlite.Connection:
        if self._conn is None:
            await self.initialize()
        assert self._conn is not None
        return self._conn

    async def insert_or_update_snapshot(self, snapshot: PriceSnapshot) -> None:
        record = record_from_snapshot(snapshot)
        db = await self._db()
        async with self._write_lock:
            await self._upsert(db, record)

    async def _upsert(self, db: aiosqlite.Connection, record: MarketRecord) -> None:
        await db.execute(
            """
            INSERT INTO market_data (commodity, market, state, date, min_price,
                max_price, modal_price, arrivals, sources, volatility, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (commodity, market, date) DO UPDATE SET
                state = excluded.state,
                min_price = excluded.min_price,
                max_price = excluded.max_price,
                modal_price = excluded.modal_price,
                arrivals = excluded.arrivals,
                sources = excluded.sources,
                volatility = excluded.volatility,
                updated_at = excluded.updated_at
            """,
            (
                record.commodity,
                record.market,
                record.state,
                record.date.isoformat(),
                record.min_price,
                record.max_price,
                record.modal_price,
                record.arrivals,
                json.dumps(record.sources),
                record.volatility,
                utcnow().isoformat(),
            ),
        )
        await db.commit()

    async def query_latest(self, commodity: str) -> MarketRecord | None:
        db = await self._db()
        async with db.execute(
            "SELECT * FROM market_data WHERE commodity = ? "
            "ORDER BY date DESC, updated_at DESC LIMIT 1",
            (commodity,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return MarketRecord(
            commodity=row["commodity"],
            market=row["market"],
            date=date.fromisoformat(row["date"]),
            min_price=float(row["min_price"]),
            max_price=float(row["max_price"]),
            modal_price=float(row["modal_price"]),
            arrivals=int(row["arrivals"] or 0),
            volatility=float(row["volatility"] or 0.0),
            sources=json.loads(row["sources"] or "[]"),
            state=row["state"],
        )

    async def query_range(self, commodity: str, days: int) -> list[HistoryEntry]:
        cutoff = (utcnow().date() - timedelta(days=days)).isoformat()
        db = await self._db()
        async with db.execute(
            "SELECT commodity, market, date, modal_price, arrivals FROM market_data "
            "WHERE commodity = ? AND date >= ? ORDER BY date DESC",
            (commodity, cutoff),
        ) as cursor:
            rows = await cursor.fetchall()

        history = []
        for row in rows:
            price = float(row["modal_price"])
            if not _usable(price):
                continue
            history.append(
                HistoryEntry(
                    commodity=row["commodity"],
                    market=row["market"] or UNKNOWN_MARKET,
                    date=date.fromisoformat(row["date"]),
                    price=price,
                    arrivals=max(int(row["arrivals"] or 0), 0),
                )
            )
        return history

    async def list_subscribers(self, commodity: str) -> list[AlertSubscription]:
        db = await self._db()
        async with db.execute(
            "SELECT vendor_id, commodity, threshold FROM price_alerts "
            "WHERE commodity = ? AND alert_type = 'volatility'",
            (commodity,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [
            AlertSubscription(
                vendor_id=row["vendor_id"],
                commodity=row["commodity"],
                threshold_percent=float(row["threshold"]),
            )
            for row in rows
        ]

    async def replace_subscriptions(
        self, vendor_id: str, subscriptions: list[AlertSubscription]
    ) -> None:
        """Atomically replace a vendor's subscriptions.

        :raises Exception: Database errors, after the transaction is rolled back.
        """
        db = await self._db()
        now = utcnow().isoformat()
        async with self._write_lock:
            try:
                await db.execute("DELETE FROM price_alerts WHERE vendor_id = ?", (vendor_id,))
                await db.executemany(
                    "INSERT INTO price_alerts (vendor_id, commodity, alert_type, threshold, created_at) "
                    "VALUES (?, ?, 'volatility', ?, ?)",
                    [(vendor_id, s.commodity, s.threshold_percent, now) for s in subscriptions],
                )
                await db.commit()
            except Exception:
                await db.rollback()
                logger.error(f"Failed to replace subscriptions for {vendor_id}, rolled back")
                raise
