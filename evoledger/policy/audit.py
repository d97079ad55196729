"""Audit Trail — append-only record of privileged and denied engine actions.

Minting, utility updates, requirement and path configuration, pool
management and direct evolutions are logged as successes; capability and
ownership denials are logged with the violation text. With a database path
the trail is mirrored to SQLite and reloaded on ``initialize``.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import aiosqlite
from pydantic import BaseModel, Field

from evoledger.types import AssetId, Identity, new_id

_SCHEMA = """
CREATE TABLE IF NOT EXISTS engine_audit (
    entry_id   TEXT PRIMARY KEY,
    recorded_at TEXT NOT NULL,
    actor      TEXT NOT NULL,
    action     TEXT NOT NULL,
    asset_id   INTEGER,
    detail     TEXT,
    allowed    INTEGER NOT NULL,
    violation  TEXT
)
"""

_COLUMNS = "entry_id, recorded_at, actor, action, asset_id, detail, allowed, violation"


class AuditEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    actor: Identity = ""
    action: str = ""  # "mint", "set_utility_score", "create_pool", ...
    asset_id: AssetId | None = None
    detail: str = ""
    success: bool = True
    violation: str = ""

    def as_row(self) -> tuple:
        return (
            self.id,
            self.timestamp.isoformat(),
            self.actor,
            self.action,
            self.asset_id,
            self.detail,
            int(self.success),
            self.violation,
        )

    @classmethod
    def from_row(cls, row: tuple) -> AuditEntry:
        entry_id, recorded_at, actor, action, asset_id, detail, allowed, violation = row
        return cls(
            id=entry_id,
            timestamp=datetime.fromisoformat(recorded_at),
            actor=actor,
            action=action,
            asset_id=asset_id,
            detail=detail or "",
            success=bool(allowed),
            violation=violation or "",
        )


class AuditTrail:
    """In-memory audit log with an optional SQLite mirror."""

    def __init__(self, db_path: str = "") -> None:
        self._db_path = db_path
        self._entries: list[AuditEntry] = []
        self._lock = asyncio.Lock()
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open the mirror and reload entries written by earlier runs."""
        if not self._db_path:
            return
        self._db = await aiosqlite.connect(self._db_path)
        await self._db.execute(_SCHEMA)
        await self._db.commit()
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM engine_audit ORDER BY recorded_at"
        ) as cursor:
            rows = await cursor.fetchall()
        async with self._lock:
            self._entries = [AuditEntry.from_row(r) for r in rows] + self._entries

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def record(self, entry: AuditEntry) -> None:
        async with self._lock:
            self._entries.append(entry)
            if self._db is not None:
                await self._db.execute(
                    f"INSERT INTO engine_audit ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    entry.as_row(),
                )
                await self._db.commit()

    async def log_action(
        self,
        actor: Identity,
        action: str,
        detail: str = "",
        asset_id: AssetId | None = None,
    ) -> AuditEntry:
        entry = AuditEntry(actor=actor, action=action, detail=detail, asset_id=asset_id)
        await self.record(entry)
        return entry

    async def log_violation(self, actor: Identity, action: str, violation: str) -> AuditEntry:
        """Record a refused action."""
        entry = AuditEntry(
            actor=actor,
            action=action,
            detail=f"Denied: {action}",
            success=False,
            violation=violation,
        )
        await self.record(entry)
        return entry

    async def query(
        self,
        actor: Identity = "",
        action: str = "",
        limit: int = 50,
        asset_id: AssetId | None = None,
    ) -> list[AuditEntry]:
        """Matching entries, most recent first."""
        matched = [
            e for e in self._entries
            if (not actor or e.actor == actor)
            and (not action or e.action == action)
            and (asset_id is None or e.asset_id == asset_id)
        ]
        matched.sort(key=lambda e: e.timestamp, reverse=True)
        return matched[:limit]

    async def count(self) -> int:
        return len(self._entries)

    async def violations(self, limit: int = 50) -> list[AuditEntry]:
        denied = [e for e in self._entries if not e.success]
        denied.sort(key=lambda e: e.timestamp, reverse=True)
        return denied[:limit]

    def __repr__(self) -> str:
        return f"AuditTrail(entries={len(self._entries)}, persisted={bool(self._db_path)})"
