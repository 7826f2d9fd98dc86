"""
Registry Storage for the master server.

Provides persistent storage for server registrations using SQLite.
"""

import asyncio
import functools
import sqlite3
import uuid
import aiosqlite
from pathlib import Path
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any, Tuple
from dataclasses import dataclass

from ..utils.logging import get_logger
from ..utils.errors import StoreUnavailableError

logger = get_logger(__name__)


# Fields the store lets callers change after creation
UPDATABLE_FIELDS = frozenset({"name", "last_seen"})


def format_timestamp(value: datetime) -> str:
    """Fixed-width UTC ISO string so text order equals time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value)


@dataclass
class RegistrationEntry:
    """A registered game server."""
    id: str
    name: str
    address: str
    port: int
    last_seen: datetime
    created_at: Optional[datetime] = None

    @property
    def endpoint(self) -> Tuple[str, int]:
        return (self.address, self.port)

    def matches_caller(self, address: str, port: int) -> bool:
        """True when the caller's endpoint owns this registration."""
        return self.address == address and self.port == port

    def serialize(self, include_id: bool = False) -> Dict[str, Any]:
        """
        Convert to the JSON shape returned over HTTP.

        Args:
            include_id: Only registration responses reveal the id
        """
        data: Dict[str, Any] = {
            "name": self.name,
            "address": self.address,
            "port": self.port,
            "lastSeen": self.last_seen.isoformat(),
        }
        if include_id:
            data["id"] = self.id
        return data

    @classmethod
    def from_row(cls, data: Dict[str, Any]) -> "RegistrationEntry":
        """Create from a database row."""
        return cls(
            id=data["id"],
            name=data["name"],
            address=data["address"],
            port=int(data["port"]),
            last_seen=parse_timestamp(data["last_seen"]),
            created_at=parse_timestamp(data["created_at"]) if data.get("created_at") else None,
        )


def _store_operation(func):
    """
    Serialize a storage call on the connection lock, bound it by the
    operation timeout and surface driver failures as StoreUnavailableError.
    """
    @functools.wraps(func)
    async def wrapper(self: "RegistryStorage", *args, **kwargs):
        async def run():
            async with self._lock:
                if not self._db:
                    raise StoreUnavailableError("Registry storage not initialized")
                return await func(self, *args, **kwargs)

        try:
            return await asyncio.wait_for(run(), timeout=self.operation_timeout)
        except asyncio.TimeoutError as e:
            logger.error("store_operation_timeout", operation=func.__name__,
                         timeout=self.operation_timeout)
            raise StoreUnavailableError(
                f"Registry store timed out during {func.__name__}", cause=e
            ) from e
        except (aiosqlite.Error, sqlite3.Error, OSError) as e:
            logger.error("store_operation_failed", operation=func.__name__, error=str(e))
            raise StoreUnavailableError(
                f"Registry store failed during {func.__name__}", cause=e
            ) from e

    return wrapper


class RegistryStorage:
    """Storage backend for the server registry."""

    def __init__(
        self,
        db_path: Optional[Path] = None,
        timeout: float = 30.0,
        operation_timeout: float = 10.0,
        journal_mode: str = "WAL",
        synchronous: str = "NORMAL",
    ):
        """
        Initialize registry storage.

        Args:
            db_path: Path to SQLite database (defaults to ~/.master-server/registry.db)
            timeout: SQLite busy timeout in seconds
            operation_timeout: Upper bound for any single store call
            journal_mode: SQLite journal mode
            synchronous: SQLite synchronous setting
        """
        if db_path is None:
            db_path = Path.home() / ".master-server" / "registry.db"

        self.db_path = Path(db_path)
        self.timeout = timeout
        self.operation_timeout = operation_timeout
        self.journal_mode = journal_mode
        self.synchronous = synchronous

        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    @property
    def is_initialized(self) -> bool:
        return self._db is not None

    async def initialize(self) -> None:
        """Open the database and create tables."""
        async with self._lock:
            if self._db is not None:
                return

            try:
                if str(self.db_path) != ":memory:":
                    self.db_path.parent.mkdir(parents=True, exist_ok=True)

                self._db = await aiosqlite.connect(
                    self.db_path,
                    timeout=self.timeout
                )
                self._db.row_factory = aiosqlite.Row

                await self._db.execute(f"PRAGMA journal_mode={self.journal_mode}")
                await self._db.execute(f"PRAGMA synchronous={self.synchronous}")

                # No uniqueness constraint on (address, port): duplicate
                # rows from racing first registrations are tolerated.
                await self._db.execute("""
                    CREATE TABLE IF NOT EXISTS registrations (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        address TEXT NOT NULL,
                        port INTEGER NOT NULL,
                        last_seen TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    )
                """)

                await self._db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_registrations_endpoint
                    ON registrations(address, port)
                """)

                await self._db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_registrations_last_seen
                    ON registrations(last_seen)
                """)

                await self._db.commit()
            except (aiosqlite.Error, sqlite3.Error, OSError) as e:
                if self._db is not None:
                    await self._db.close()
                    self._db = None
                raise StoreUnavailableError(
                    f"Failed to open registry store at {self.db_path}", cause=e
                ) from e

        logger.info("registry_storage_initialized", db_path=str(self.db_path))

    @_store_operation
    async def create(
        self,
        name: str,
        address: str,
        port: int,
        last_seen: datetime
    ) -> str:
        """
        Insert a new registration.

        Returns:
            The id assigned to the registration
        """
        registration_id = uuid.uuid4().hex
        now = format_timestamp(datetime.now(timezone.utc))

        await self._db.execute("""
            INSERT INTO registrations (id, name, address, port, last_seen, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            registration_id, name, address, port,
            format_timestamp(last_seen), now
        ))
        await self._db.commit()

        logger.debug("registration_inserted", id=registration_id,
                     address=address, port=port)
        return registration_id

    @_store_operation
    async def get(self, registration_id: str) -> Optional[RegistrationEntry]:
        """Point lookup by id."""
        cursor = await self._db.execute(
            "SELECT * FROM registrations WHERE id = ?",
            (registration_id,)
        )
        row = await cursor.fetchone()
        return RegistrationEntry.from_row(dict(row)) if row else None

    @_store_operation
    async def find_by_endpoint(self, address: str, port: int) -> Optional[RegistrationEntry]:
        """
        Lookup by endpoint.

        When duplicates exist the most recently created row wins.
        """
        cursor = await self._db.execute("""
            SELECT * FROM registrations
            WHERE address = ? AND port = ?
            ORDER BY created_at DESC, rowid DESC
            LIMIT 1
        """, (address, port))
        row = await cursor.fetchone()
        return RegistrationEntry.from_row(dict(row)) if row else None

    @_store_operation
    async def count_by_endpoint(self, address: str, port: int) -> int:
        cursor = await self._db.execute(
            "SELECT COUNT(*) FROM registrations WHERE address = ? AND port = ?",
            (address, port)
        )
        row = await cursor.fetchone()
        return row[0]

    @_store_operation
    async def count(self) -> int:
        """Total number of stored registrations."""
        cursor = await self._db.execute("SELECT COUNT(*) FROM registrations")
        row = await cursor.fetchone()
        return row[0]

    @_store_operation
    async def update_fields(
        self,
        registration_id: str,
        fields: Dict[str, Any],
        endpoint: Optional[Tuple[str, int]] = None
    ) -> Optional[RegistrationEntry]:
        """
        Partially update a registration.

        Args:
            registration_id: Row to update
            fields: Only keys present here change; must be in UPDATABLE_FIELDS
            endpoint: When given, the row must still belong to this (address, port)

        Returns:
            The updated entry, or None if no row matched
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")

        updates = []
        params: List[Any] = []

        if "name" in fields:
            updates.append("name = ?")
            params.append(fields["name"])

        if "last_seen" in fields:
            # lastSeen never moves backwards
            updates.append("last_seen = MAX(last_seen, ?)")
            params.append(format_timestamp(fields["last_seen"]))

        where = "id = ?"
        params.append(registration_id)

        if endpoint is not None:
            where += " AND address = ? AND port = ?"
            params.extend(endpoint)

        if updates:
            cursor = await self._db.execute(
                f"UPDATE registrations SET {', '.join(updates)} WHERE {where}",
                params
            )
            await self._db.commit()
            if cursor.rowcount == 0:
                return None

        cursor = await self._db.execute(
            "SELECT * FROM registrations WHERE id = ?",
            (registration_id,)
        )
        row = await cursor.fetchone()
        if not row:
            return None
        entry = RegistrationEntry.from_row(dict(row))
        if endpoint is not None and entry.endpoint != tuple(endpoint):
            return None
        return entry

    @_store_operation
    async def delete(
        self,
        registration_id: str,
        endpoint: Optional[Tuple[str, int]] = None
    ) -> bool:
        """
        Delete a registration.

        Returns:
            True if a row was removed
        """
        query = "DELETE FROM registrations WHERE id = ?"
        params: List[Any] = [registration_id]

        if endpoint is not None:
            query += " AND address = ? AND port = ?"
            params.extend(endpoint)

        cursor = await self._db.execute(query, params)
        await self._db.commit()
        return cursor.rowcount > 0

    @_store_operation
    async def delete_seen_before(self, threshold: datetime) -> int:
        """
        Bulk delete every registration with last_seen <= threshold.

        Returns:
            Number of registrations removed
        """
        cursor = await self._db.execute(
            "DELETE FROM registrations WHERE last_seen <= ?",
            (format_timestamp(threshold),)
        )
        await self._db.commit()

        count = cursor.rowcount
        if count > 0:
            logger.info("stale_registrations_deleted", count=count,
                        threshold=threshold.isoformat())
        return count

    @_store_operation
    async def list_seen_since(self, threshold: datetime) -> List[RegistrationEntry]:
        """All registrations with last_seen >= threshold, in no particular order."""
        cursor = await self._db.execute(
            "SELECT * FROM registrations WHERE last_seen >= ?",
            (format_timestamp(threshold),)
        )
        rows = await cursor.fetchall()
        return [RegistrationEntry.from_row(dict(row)) for row in rows]

    async def close(self) -> None:
        """Close database connection."""
        async with self._lock:
            if self._db:
                await self._db.close()
                self._db = None
                logger.info("registry_storage_closed", db_path=str(self.db_path))
