"""
Seal Relayer Work Item Store

Durable state for the relayer: work items, signing checkpoints, ingestion
cursors, per-emitter envelope sequences, multi-instance leases and rejected
events.

Two implementations satisfy ``WorkItemStore``:
    InMemoryWorkItemStore:  tests and simulation mode
    SQLiteWorkItemStore:    aiosqlite, WAL mode

Usage:
    store = await SQLiteWorkItemStore.create("./data/relayer.db")
    item = await store.get_item(seal_hash)
"""

import json
import os
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import aiosqlite

from .logger import get_logger, short_hash
from .types import Cursor, RejectedEvent, WorkItem, WorkStatus, check_transition

logger = get_logger(__name__)


# ══════════════════════════════════════════════════════════════════════
#  INTERFACE
# ══════════════════════════════════════════════════════════════════════

class WorkItemStore(ABC):
    """Persistence interface used by the coordinator, ingestion and signing."""

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass

    # ── Work items ──────────────────────────────────────────────────

    @abstractmethod
    async def get_item(self, seal_hash: bytes) -> Optional[WorkItem]:
        ...

    @abstractmethod
    async def insert_item(self, item: WorkItem) -> bool:
        """Insert a new item. Returns False if the seal hash is already known."""
        ...

    @abstractmethod
    async def save_item(self, item: WorkItem) -> None:
        """
        Persist status and progress evidence.

        Raises:
            InvalidStatusTransition: if the stored status is ahead of the item
        """
        ...

    @abstractmethod
    async def list_items(self, status: Optional[WorkStatus] = None, limit: int = 100) -> List[WorkItem]:
        ...

    @abstractmethod
    async def list_unfinished(self, after: str = "", limit: int = 500) -> List[WorkItem]:
        """
        Non-terminal items ordered by seal hash, starting after the hex
        seal hash ``after``. Page by passing the last hash of each page.
        """
        ...

    @abstractmethod
    async def status_counts(self) -> Dict[str, int]:
        ...

    # ── Rejected events ─────────────────────────────────────────────

    @abstractmethod
    async def record_rejected_event(self, event: RejectedEvent) -> None:
        ...

    @abstractmethod
    async def list_rejected_events(self, limit: int = 100) -> List[RejectedEvent]:
        ...

    # ── Signing checkpoints ─────────────────────────────────────────

    @abstractmethod
    async def save_signing_checkpoint(self, seal_hash: bytes, checkpoint: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def load_signing_checkpoint(self, seal_hash: bytes) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def clear_signing_checkpoint(self, seal_hash: bytes) -> None:
        ...

    # ── Cursors ─────────────────────────────────────────────────────

    @abstractmethod
    async def get_cursor(self, name: str) -> Cursor:
        ...

    @abstractmethod
    async def save_cursor(self, name: str, cursor: Cursor) -> bool:
        """Persist a cursor. Returns False (and writes nothing) if it is not ahead."""
        ...

    @abstractmethod
    async def get_emitter_sequence(self, emitter_key: str) -> int:
        """Next sequence to fetch for an emitter (0 if never seen)."""
        ...

    @abstractmethod
    async def save_emitter_sequence(self, emitter_key: str, sequence: int) -> bool:
        ...

    # ── Leases ──────────────────────────────────────────────────────

    @abstractmethod
    async def acquire_lease(self, key: str, owner: str, ttl: float) -> bool:
        """Take or renew a lease. Expired leases held by others are taken over."""
        ...

    @abstractmethod
    async def release_lease(self, key: str, owner: str) -> None:
        ...

    # ── Aggregates ──────────────────────────────────────────────────

    async def list_failures(self, limit: int = 100) -> List[Dict[str, Any]]:
        """FAILED work items and rejected events, newest first."""
        failures = [
            {
                "seal_hash": item.seal_hash_hex,
                "status": item.status.name,
                "reason": item.failure_reason,
                "tx_ref": item.source_tx_ref,
                "recorded_at": item.updated_at,
            }
            for item in await self.list_items(WorkStatus.FAILED, limit)
        ]
        failures.extend(e.to_dict() for e in await self.list_rejected_events(limit))
        failures.sort(key=lambda f: f["recorded_at"], reverse=True)
        return failures[:limit]

    async def stats(self) -> Dict[str, Any]:
        counts = await self.status_counts()
        rejected = len(await self.list_rejected_events(limit=1_000_000))
        return {
            "items": counts,
            "total": sum(counts.values()),
            "rejected_events": rejected,
        }


def _check_save(stored_status: Optional[WorkStatus], item: WorkItem) -> None:
    if stored_status is None:
        return
    check_transition(stored_status, item.status)


# ══════════════════════════════════════════════════════════════════════
#  IN-MEMORY STORE
# ══════════════════════════════════════════════════════════════════════

class InMemoryWorkItemStore(WorkItemStore):
    """Dictionary-backed store. Items are copied in and out."""

    def __init__(self):
        self._items: Dict[str, Dict[str, Any]] = {}
        self._rejected: List[RejectedEvent] = []
        self._checkpoints: Dict[str, Dict[str, Any]] = {}
        self._cursors: Dict[str, Cursor] = {}
        self._sequences: Dict[str, int] = {}
        self._leases: Dict[str, tuple] = {}

    async def get_item(self, seal_hash: bytes) -> Optional[WorkItem]:
        d = self._items.get(seal_hash.hex())
        return WorkItem.from_dict(d) if d else None

    async def insert_item(self, item: WorkItem) -> bool:
        key = item.seal_hash_hex
        if key in self._items:
            return False
        self._items[key] = item.to_dict()
        return True

    async def save_item(self, item: WorkItem) -> None:
        stored = self._items.get(item.seal_hash_hex)
        _check_save(WorkStatus[stored["status"]] if stored else None, item)
        self._items[item.seal_hash_hex] = item.to_dict()

    async def list_items(self, status: Optional[WorkStatus] = None, limit: int = 100) -> List[WorkItem]:
        items = [WorkItem.from_dict(d) for d in self._items.values()]
        if status is not None:
            items = [i for i in items if i.status == status]
        items.sort(key=lambda i: i.updated_at, reverse=True)
        return items[:limit]

    async def list_unfinished(self, after: str = "", limit: int = 500) -> List[WorkItem]:
        keys = sorted(
            k for k, d in self._items.items()
            if k > after and not WorkStatus[d["status"]].is_terminal
        )
        return [WorkItem.from_dict(self._items[k]) for k in keys[:limit]]

    async def status_counts(self) -> Dict[str, int]:
        counts = {s.name: 0 for s in WorkStatus}
        for d in self._items.values():
            counts[d["status"]] += 1
        return counts

    async def record_rejected_event(self, event: RejectedEvent) -> None:
        if not event.recorded_at:
            event.recorded_at = int(time.time())
        self._rejected.append(event)

    async def list_rejected_events(self, limit: int = 100) -> List[RejectedEvent]:
        return list(reversed(self._rejected))[:limit]

    async def save_signing_checkpoint(self, seal_hash: bytes, checkpoint: Dict[str, Any]) -> None:
        self._checkpoints[seal_hash.hex()] = dict(checkpoint)

    async def load_signing_checkpoint(self, seal_hash: bytes) -> Optional[Dict[str, Any]]:
        cp = self._checkpoints.get(seal_hash.hex())
        return dict(cp) if cp else None

    async def clear_signing_checkpoint(self, seal_hash: bytes) -> None:
        self._checkpoints.pop(seal_hash.hex(), None)

    async def get_cursor(self, name: str) -> Cursor:
        return self._cursors.get(name, Cursor())

    async def save_cursor(self, name: str, cursor: Cursor) -> bool:
        current = self._cursors.get(name)
        if current is not None and cursor.position <= current.position:
            return False
        self._cursors[name] = cursor
        return True

    async def get_emitter_sequence(self, emitter_key: str) -> int:
        return self._sequences.get(emitter_key, 0)

    async def save_emitter_sequence(self, emitter_key: str, sequence: int) -> bool:
        if sequence <= self._sequences.get(emitter_key, 0):
            return False
        self._sequences[emitter_key] = sequence
        return True

    async def acquire_lease(self, key: str, owner: str, ttl: float) -> bool:
        now = time.time()
        holder = self._leases.get(key)
        if holder and holder[0] != owner and holder[1] > now:
            return False
        self._leases[key] = (owner, now + ttl)
        return True

    async def release_lease(self, key: str, owner: str) -> None:
        holder = self._leases.get(key)
        if holder and holder[0] == owner:
            del self._leases[key]


# ══════════════════════════════════════════════════════════════════════
#  SQLITE STORE
# ══════════════════════════════════════════════════════════════════════

_SCHEMA = """
CREATE TABLE IF NOT EXISTS work_items (
    seal_hash   TEXT PRIMARY KEY,
    status      INTEGER NOT NULL,
    data        TEXT NOT NULL,
    created_at  INTEGER NOT NULL,
    updated_at  INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_work_items_status ON work_items(status);

CREATE TABLE IF NOT EXISTS signing_checkpoints (
    seal_hash   TEXT PRIMARY KEY,
    data        TEXT NOT NULL,
    updated_at  INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS cursors (
    name        TEXT PRIMARY KEY,
    token       TEXT,
    position    INTEGER NOT NULL,
    updated_at  INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS emitter_sequences (
    emitter_key TEXT PRIMARY KEY,
    sequence    INTEGER NOT NULL,
    updated_at  INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS leases (
    lease_key   TEXT PRIMARY KEY,
    owner       TEXT NOT NULL,
    expires_at  REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS rejected_events (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id    TEXT NOT NULL,
    reason      TEXT NOT NULL,
    seal_hash   TEXT,
    tx_ref      TEXT,
    recorded_at INTEGER NOT NULL
);
"""


class SQLiteWorkItemStore(WorkItemStore):
    """aiosqlite-backed store for a single relayer host."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.connection: Optional[aiosqlite.Connection] = None

    @staticmethod
    async def create(db_path: str) -> 'SQLiteWorkItemStore':
        """Open (creating if needed) and initialize the database."""
        self = SQLiteWorkItemStore(db_path)
        await self.initialize()
        return self

    async def initialize(self) -> None:
        if self.connection is not None:
            return
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        self.connection = await aiosqlite.connect(self.db_path)
        self.connection.row_factory = aiosqlite.Row

        await self.connection.execute("PRAGMA journal_mode=WAL")
        await self.connection.execute("PRAGMA synchronous=NORMAL")
        await self.connection.executescript(_SCHEMA)
        await self.connection.commit()
        logger.info(f"SQLite store initialized: {self.db_path}")

    async def close(self) -> None:
        if self.connection is not None:
            await self.connection.close()
            self.connection = None

    @property
    def _db(self) -> aiosqlite.Connection:
        if self.connection is None:
            raise RuntimeError("SQLiteWorkItemStore is not initialized")
        return self.connection

    # ── Work items ──────────────────────────────────────────────────

    async def get_item(self, seal_hash: bytes) -> Optional[WorkItem]:
        async with self._db.execute(
            "SELECT data FROM work_items WHERE seal_hash = ?", (seal_hash.hex(),)
        ) as cursor:
            row = await cursor.fetchone()
        return WorkItem.from_dict(json.loads(row["data"])) if row else None

    async def insert_item(self, item: WorkItem) -> bool:
        cursor = await self._db.execute(
            """
            INSERT OR IGNORE INTO work_items (seal_hash, status, data, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                item.seal_hash_hex,
                int(item.status),
                json.dumps(item.to_dict()),
                item.created_at,
                item.updated_at,
            ),
        )
        await self._db.commit()
        return cursor.rowcount > 0

    async def save_item(self, item: WorkItem) -> None:
        async with self._db.execute(
            "SELECT status FROM work_items WHERE seal_hash = ?", (item.seal_hash_hex,)
        ) as cursor:
            row = await cursor.fetchone()
        _check_save(WorkStatus(row["status"]) if row else None, item)

        await self._db.execute(
            """
            INSERT INTO work_items (seal_hash, status, data, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(seal_hash) DO UPDATE SET
                status = excluded.status,
                data = excluded.data,
                updated_at = excluded.updated_at
            """,
            (
                item.seal_hash_hex,
                int(item.status),
                json.dumps(item.to_dict()),
                item.created_at,
                item.updated_at,
            ),
        )
        await self._db.commit()
        logger.debug(f"Saved seal={short_hash(item.seal_hash)} status={item.status.name}")

    async def list_items(self, status: Optional[WorkStatus] = None, limit: int = 100) -> List[WorkItem]:
        if status is None:
            query, params = "SELECT data FROM work_items ORDER BY updated_at DESC LIMIT ?", (limit,)
        else:
            query = "SELECT data FROM work_items WHERE status = ? ORDER BY updated_at DESC LIMIT ?"
            params = (int(status), limit)
        async with self._db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [WorkItem.from_dict(json.loads(row["data"])) for row in rows]

    async def list_unfinished(self, after: str = "", limit: int = 500) -> List[WorkItem]:
        async with self._db.execute(
            """
            SELECT data FROM work_items
            WHERE status NOT IN (?, ?) AND seal_hash > ?
            ORDER BY seal_hash LIMIT ?
            """,
            (int(WorkStatus.CLOSED), int(WorkStatus.FAILED), after, limit),
        ) as cursor:
            rows = await cursor.fetchall()
        return [WorkItem.from_dict(json.loads(row["data"])) for row in rows]

    async def status_counts(self) -> Dict[str, int]:
        counts = {s.name: 0 for s in WorkStatus}
        async with self._db.execute(
            "SELECT status, COUNT(*) AS n FROM work_items GROUP BY status"
        ) as cursor:
            async for row in cursor:
                counts[WorkStatus(row["status"]).name] = row["n"]
        return counts

    # ── Rejected events ─────────────────────────────────────────────

    async def record_rejected_event(self, event: RejectedEvent) -> None:
        if not event.recorded_at:
            event.recorded_at = int(time.time())
        await self._db.execute(
            """
            INSERT INTO rejected_events (event_id, reason, seal_hash, tx_ref, recorded_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (event.event_id, event.reason, event.seal_hash, event.tx_ref, event.recorded_at),
        )
        await self._db.commit()

    async def list_rejected_events(self, limit: int = 100) -> List[RejectedEvent]:
        async with self._db.execute(
            """
            SELECT event_id, reason, seal_hash, tx_ref, recorded_at
            FROM rejected_events ORDER BY id DESC LIMIT ?
            """,
            (limit,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [
            RejectedEvent(
                event_id=row["event_id"],
                reason=row["reason"],
                seal_hash=row["seal_hash"] or "",
                tx_ref=row["tx_ref"] or "",
                recorded_at=row["recorded_at"],
            )
            for row in rows
        ]

    # ── Signing checkpoints ─────────────────────────────────────────

    async def save_signing_checkpoint(self, seal_hash: bytes, checkpoint: Dict[str, Any]) -> None:
        await self._db.execute(
            """
            INSERT INTO signing_checkpoints (seal_hash, data, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(seal_hash) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at
            """,
            (seal_hash.hex(), json.dumps(checkpoint), int(time.time())),
        )
        await self._db.commit()

    async def load_signing_checkpoint(self, seal_hash: bytes) -> Optional[Dict[str, Any]]:
        async with self._db.execute(
            "SELECT data FROM signing_checkpoints WHERE seal_hash = ?", (seal_hash.hex(),)
        ) as cursor:
            row = await cursor.fetchone()
        return json.loads(row["data"]) if row else None

    async def clear_signing_checkpoint(self, seal_hash: bytes) -> None:
        await self._db.execute(
            "DELETE FROM signing_checkpoints WHERE seal_hash = ?", (seal_hash.hex(),)
        )
        await self._db.commit()

    # ── Cursors ─────────────────────────────────────────────────────

    async def get_cursor(self, name: str) -> Cursor:
        async with self._db.execute(
            "SELECT token, position FROM cursors WHERE name = ?", (name,)
        ) as cursor:
            row = await cursor.fetchone()
        return Cursor(token=row["token"], position=row["position"]) if row else Cursor()

    async def save_cursor(self, name: str, cursor: Cursor) -> bool:
        result = await self._db.execute(
            """
            INSERT INTO cursors (name, token, position, updated_at) VALUES (?, ?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
                token = excluded.token,
                position = excluded.position,
                updated_at = excluded.updated_at
            WHERE excluded.position > cursors.position
            """,
            (name, cursor.token, cursor.position, int(time.time())),
        )
        await self._db.commit()
        return result.rowcount > 0

    async def get_emitter_sequence(self, emitter_key: str) -> int:
        async with self._db.execute(
            "SELECT sequence FROM emitter_sequences WHERE emitter_key = ?", (emitter_key,)
        ) as cursor:
            row = await cursor.fetchone()
        return row["sequence"] if row else 0

    async def save_emitter_sequence(self, emitter_key: str, sequence: int) -> bool:
        result = await self._db.execute(
            """
            INSERT INTO emitter_sequences (emitter_key, sequence, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(emitter_key) DO UPDATE SET
                sequence = excluded.sequence,
                updated_at = excluded.updated_at
            WHERE excluded.sequence > emitter_sequences.sequence
            """,
            (emitter_key, sequence, int(time.time())),
        )
        await self._db.commit()
        return result.rowcount > 0

    # ── Leases ──────────────────────────────────────────────────────

    async def acquire_lease(self, key: str, owner: str, ttl: float) -> bool:
        now = time.time()
        result = await self._db.execute(
            """
            INSERT INTO leases (lease_key, owner, expires_at) VALUES (?, ?, ?)
            ON CONFLICT(lease_key) DO UPDATE SET
                owner = excluded.owner,
                expires_at = excluded.expires_at
            WHERE leases.owner = excluded.owner OR leases.expires_at <= ?
            """,
            (key, owner, now + ttl, now),
        )
        await self._db.commit()
        return result.rowcount > 0

    async def release_lease(self, key: str, owner: str) -> None:
        await self._db.execute(
            "DELETE FROM leases WHERE lease_key = ? AND owner = ?", (key, owner)
        )
        await self._db.commit()


async def open_store(backend: str, db_path: str = "") -> WorkItemStore:
    """Build and initialize the configured store backend."""
    if backend == "memory":
        return InMemoryWorkItemStore()
    if backend == "sqlite":
        return await SQLiteWorkItemStore.create(db_path)
    raise ValueError(f"Unknown store backend: {backend}")
