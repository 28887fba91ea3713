#!/usr/bin/env python3
"""
Cache gateway for per-source item sets.

The orchestrator only relies on two coroutines, ``get(source_id)`` and
``set(source_id, items)``. SqliteCache implements them on top of a
DatabaseQueue: a single asyncio worker owning the sqlite connection, with
operations submitted by name and awaited through per-operation events.
"""

import json
from os import path, access, R_OK
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from time import time
from typing import Any, Dict, List, Optional
from uuid import uuid4

from config import config, get_logger
from errors import CacheUnavailableError
from telemetry import trace_span

logger = get_logger("cache")


def now_ms() -> int:
    return int(time() * 1000)


class CacheEntry:
    """The last stored item set for one source."""

    __slots__ = ("source_id", "items", "updated_at")

    def __init__(self, source_id: str, items: List[Dict[str, Any]], updated_at: int):
        self.source_id = source_id
        self.items = items
        self.updated_at = updated_at

    def age_ms(self, now: Optional[int] = None) -> int:
        return (now if now is not None else now_ms()) - self.updated_at

    def __repr__(self) -> str:
        return f"CacheEntry({self.source_id!r}, {len(self.items)} items, updated_at={self.updated_at})"


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH
    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Schema file not found at {schema_path}")
    if not access(schema_path, R_OK):
        raise PermissionError(f"No read permission for schema file at {schema_path}")
    file_size = path.getsize(schema_path)
    max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
    if file_size > max_size:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")
    with open(schema_path, 'r') as f:
        return f.read()


def initialize_database(conn) -> None:
    """Create the cache table if it does not exist yet."""
    cursor = conn.cursor()
    try:
        cursor.executescript(_read_schema_file())
        conn.commit()
    finally:
        cursor.close()


class DatabaseQueue:
    """A queue for database operations so only one coroutine touches sqlite."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None
        self.ready = Event()

    async def start(self) -> None:
        """Start the database worker and wait until the schema is in place."""
        if self.running:
            return
        self.running = True
        self.worker_task = create_task(self._worker())
        await self.ready.wait()
        if self.conn is None:
            self.running = False
            raise CacheUnavailableError(f"Could not open cache database at {self.db_path}")
        logger.info("Cache database worker started")

    async def stop(self) -> None:
        """Stop the database worker."""
        if not self.running:
            return
        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass
        if self.conn:
            self.conn.close()
            self.conn = None
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()
        logger.info("Cache database worker stopped")

    def _open(self) -> None:
        if path.isfile(self.db_path):
            logger.info(f"Using existing cache database at {self.db_path}")
        else:
            logger.info(f"Cache database {self.db_path} does not exist. A new database will be created.")
        try:
            conn = connect(self.db_path)
            conn.row_factory = Row
            initialize_database(conn)
            self.conn = conn
        except (Error, OSError, ValueError) as e:
            logger.error(f"Error initializing cache database: {e}")
        finally:
            self.ready.set()

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        self._open()
        if self.conn is None:
            return

        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, f"op_{operation_name}", None)
                    if method is None:
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                    else:
                        self.results[operation_id] = {"result": method(**params)}
                except (Error, ValueError, TypeError) as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": str(e)}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.debug("Cache database worker cancelled")
                break

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {"db.operation": operation_name},
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation.

        Raises:
            CacheUnavailableError: when the worker is not running or the operation failed.
        """
        if not self.running or self.conn is None:
            raise CacheUnavailableError("Cache database worker is not running")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event
        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()
            result = self.results.pop(operation_id, None)
            if result is None:
                raise CacheUnavailableError(f"Cache operation {operation_name} was interrupted")
            if "error" in result:
                raise CacheUnavailableError(result["error"])
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Operations (run inside the worker)
    def op_get_entry(self, source_id: str) -> Optional[Dict[str, Any]]:
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT id, data, updated FROM cache WHERE id = ?", (source_id,))
            row = cursor.fetchone()
            if not row:
                return None
            return {"id": row["id"], "data": row["data"], "updated": row["updated"]}
        finally:
            cursor.close()

    def op_set_entry(self, source_id: str, data: str, updated: int) -> bool:
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "INSERT OR REPLACE INTO cache (id, data, updated) VALUES (?, ?, ?)",
                (source_id, data, updated),
            )
            self.conn.commit()
            return True
        finally:
            cursor.close()

    def op_delete_expired(self, cutoff: int) -> int:
        cursor = self.conn.cursor()
        try:
            cursor.execute("DELETE FROM cache WHERE updated < ?", (cutoff,))
            deleted = cursor.rowcount
            self.conn.commit()
            return deleted
        finally:
            cursor.close()

    def op_count_entries(self) -> int:
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT COUNT(*) FROM cache")
            result = cursor.fetchone()
            return int(result[0]) if result else 0
        finally:
            cursor.close()


class SqliteCache:
    """Cache gateway backed by a sqlite DatabaseQueue."""

    def __init__(self, db_path: Optional[str] = None):
        self.db = DatabaseQueue(db_path or config.DATABASE_PATH)

    async def start(self) -> None:
        await self.db.start()

    async def close(self) -> None:
        await self.db.stop()

    @trace_span("cache.get", tracer_name="cache", attr_from_args=lambda self, source_id: {"source.id": source_id})
    async def get(self, source_id: str) -> Optional[CacheEntry]:
        """Return the stored entry for a source, or None.

        Raises:
            CacheUnavailableError: when the store cannot be read or holds corrupt data.
        """
        row = await self.db.execute("get_entry", source_id=source_id)
        if not row:
            return None
        try:
            items = json.loads(row["data"])
        except ValueError as e:
            raise CacheUnavailableError(f"Corrupt cache entry for {source_id}: {e}") from e
        if not isinstance(items, list):
            raise CacheUnavailableError(f"Corrupt cache entry for {source_id}: not a list")
        return CacheEntry(source_id, items, int(row["updated"]))

    @trace_span("cache.set", tracer_name="cache", attr_from_args=lambda self, source_id, items: {"source.id": source_id, "cache.items": len(items)})
    async def set(self, source_id: str, items: List[Dict[str, Any]]) -> None:
        """Replace the stored entry for a source, stamping it with the current time.

        Raises:
            CacheUnavailableError: when the write fails.
        """
        await self.db.execute("set_entry", source_id=source_id, data=json.dumps(items), updated=now_ms())

    async def expire(self, max_age_ms: Optional[int] = None) -> int:
        """Delete entries older than ``max_age_ms`` (default: the global TTL)."""
        cutoff = now_ms() - (max_age_ms or config.CACHE_TTL_MS)
        deleted = await self.db.execute("delete_expired", cutoff=cutoff)
        if deleted:
            logger.info(f"Expired {deleted} cache entries")
        return deleted

    async def count(self) -> int:
        return await self.db.execute("count_entries")
