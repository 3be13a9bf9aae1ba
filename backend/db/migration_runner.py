"""
Forward-only SQLite migrations for the per-agent item database.

Migrations are SQL files under backend/db/migrations named like:
    0001_description.sql

Applied versions and their checksums are tracked in `schema_migrations`.
Each agent database is migrated independently; concurrent openers of the
same file are serialized with a file lock next to the database.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

from filelock import FileLock, Timeout

from memory_errors import StorageError

logger = logging.getLogger(__name__)

_MIGRATION_FILE_PATTERN = re.compile(r"^(?P<version>\d{4,})_[\w\-]+\.sql$")
_DEFAULT_MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


@dataclass(frozen=True)
class MigrationFile:
    version: str
    path: Path
    checksum: str


def _lock_timeout_from_env(default: float) -> float:
    raw = os.getenv("MEMORY_MIGRATION_LOCK_TIMEOUT_SEC", "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


class MigrationRunner:
    """Discover and apply SQL migrations to one database file."""

    def __init__(
        self,
        db_path: Union[Path, str],
        migrations_dir: Optional[Path] = None,
        lock_file_path: Optional[Path] = None,
        lock_timeout_seconds: float = 10.0,
    ) -> None:
        self.db_path = Path(db_path)
        self.migrations_dir = (
            Path(migrations_dir) if migrations_dir is not None else _DEFAULT_MIGRATIONS_DIR
        )
        self.lock_file_path = (
            Path(lock_file_path)
            if lock_file_path is not None
            else self.db_path.with_name(self.db_path.name + ".migrate.lock")
        )
        self.lock_timeout_seconds = max(0.0, _lock_timeout_from_env(lock_timeout_seconds))

    async def apply_pending(self) -> List[str]:
        """Apply all pending migrations and return the applied versions."""
        return await asyncio.to_thread(self._apply_pending_sync)

    def pending_versions(self) -> List[str]:
        migrations = self.discover()
        if not self.db_path.exists():
            return [m.version for m in migrations]
        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            self._ensure_schema_table(conn)
            applied = self._load_applied_checksums(conn)
        return [m.version for m in migrations if m.version not in applied]

    def _apply_pending_sync(self) -> List[str]:
        migrations = self.discover()
        if not migrations:
            return []
        self.lock_file_path.parent.mkdir(parents=True, exist_ok=True)
        lock = FileLock(str(self.lock_file_path), timeout=self.lock_timeout_seconds)
        try:
            with lock:
                return self._apply_unlocked(migrations)
        except Timeout as exc:
            raise StorageError(
                f"timed out waiting for migration lock {self.lock_file_path} "
                f"({self.lock_timeout_seconds}s)",
                code="migration_lock_timeout",
            ) from exc

    def _apply_unlocked(self, migrations: List[MigrationFile]) -> List[str]:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        applied_now: List[str] = []
        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            self._ensure_schema_table(conn)
            recorded = self._load_applied_checksums(conn)

            for migration in migrations:
                checksum = recorded.get(migration.version)
                if checksum is not None:
                    if checksum != migration.checksum:
                        raise StorageError(
                            f"checksum mismatch for migration {migration.version}: "
                            f"recorded={checksum} current={migration.checksum}",
                            code="migration_checksum_mismatch",
                        )
                    continue

                script = migration.path.read_text(encoding="utf-8")
                try:
                    for statement in split_sql_statements(script):
                        conn.execute(statement)
                    conn.execute(
                        "INSERT INTO schema_migrations(version, applied_at, checksum) "
                        "VALUES (?, ?, ?)",
                        (
                            migration.version,
                            datetime.now(timezone.utc).isoformat(),
                            migration.checksum,
                        ),
                    )
                    conn.commit()
                except sqlite3.Error as exc:
                    conn.rollback()
                    raise StorageError(
                        f"migration {migration.version} failed: {exc}",
                        code="migration_failed",
                    ) from exc
                applied_now.append(migration.version)

        if applied_now:
            logger.info(
                "applied migrations %s to %s", ",".join(applied_now), self.db_path
            )
        return applied_now

    def discover(self) -> List[MigrationFile]:
        if not self.migrations_dir.exists():
            return []
        found: List[MigrationFile] = []
        for path in sorted(self.migrations_dir.glob("*.sql")):
            match = _MIGRATION_FILE_PATTERN.match(path.name)
            if not match:
                continue
            found.append(
                MigrationFile(
                    version=match.group("version"),
                    path=path,
                    checksum=_checksum(path.read_bytes()),
                )
            )
        return found

    @staticmethod
    def _ensure_schema_table(conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version TEXT PRIMARY KEY,
                applied_at TEXT NOT NULL,
                checksum TEXT NOT NULL
            )
            """
        )
        conn.commit()

    @staticmethod
    def _load_applied_checksums(conn: sqlite3.Connection) -> Dict[str, str]:
        rows = conn.execute("SELECT version, checksum FROM schema_migrations").fetchall()
        return {str(row["version"]): str(row["checksum"]) for row in rows}


def _checksum(content: bytes) -> str:
    # CRLF and LF checkouts of the same file hash identically.
    try:
        payload = content.decode("utf-8").replace("\r\n", "\n").encode("utf-8")
    except UnicodeDecodeError:
        payload = content
    return hashlib.sha256(payload).hexdigest()


def split_sql_statements(script: str) -> List[str]:
    """Split a script on semicolons outside quoted literals and comments."""
    statements: List[str] = []
    buffer: List[str] = []
    quote: Optional[str] = None
    comment: Optional[str] = None
    index = 0
    length = len(script)

    while index < length:
        char = script[index]
        pair = script[index:index + 2]

        if comment == "--":
            if char == "\n":
                comment = None
        elif comment == "/*":
            if pair == "*/":
                buffer.append(pair)
                comment = None
                index += 2
                continue
        elif quote is not None:
            if char == quote:
                quote = None
        elif pair in ("--", "/*"):
            comment = pair
            buffer.append(pair)
            index += 2
            continue
        elif char in ("'", '"'):
            quote = char
        elif char == ";":
            _flush_statement(buffer, statements)
            buffer = []
            index += 1
            continue

        buffer.append(char)
        index += 1

    _flush_statement(buffer, statements)
    return statements


def _flush_statement(buffer: List[str], statements: List[str]) -> None:
    candidate = "".join(buffer).strip()
    if not candidate:
        return
    code_lines = [
        line for line in candidate.splitlines()
        if line.strip() and not line.strip().startswith("--")
    ]
    if code_lines:
        statements.append(candidate)


async def apply_pending_migrations(
    db_path: Union[Path, str], migrations_dir: Optional[Path] = None
) -> List[str]:
    """Convenience wrapper used when an item store opens its database."""
    runner = MigrationRunner(db_path, migrations_dir=migrations_dir)
    return await runner.apply_pending()
