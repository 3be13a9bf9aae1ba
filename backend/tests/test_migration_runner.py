import sqlite3
from pathlib import Path

import pytest
from filelock import FileLock

from db.migration_runner import MigrationRunner, split_sql_statements
from db.sqlite_client import SQLiteItemStore
from memory_errors import StorageError


def _write_migration(migrations_dir: Path, name: str, sql: str) -> Path:
    migrations_dir.mkdir(parents=True, exist_ok=True)
    path = migrations_dir / name
    path.write_text(sql, encoding="utf-8")
    return path


@pytest.mark.asyncio
async def test_migration_runner_applies_and_tracks_versions(tmp_path: Path) -> None:
    db_path = tmp_path / "memory.db"
    migrations_dir = tmp_path / "migrations"
    _write_migration(
        migrations_dir,
        "0001_test.sql",
        "CREATE TABLE IF NOT EXISTS test_table (id INTEGER PRIMARY KEY);",
    )

    runner = MigrationRunner(db_path, migrations_dir=migrations_dir)
    first_applied = await runner.apply_pending()
    second_applied = await runner.apply_pending()

    assert first_applied == ["0001"]
    assert second_applied == []

    with sqlite3.connect(db_path) as conn:
        count = conn.execute("SELECT COUNT(*) FROM schema_migrations").fetchone()[0]
        assert count == 1
        version = conn.execute("SELECT version FROM schema_migrations").fetchone()[0]
        assert version == "0001"


@pytest.mark.asyncio
async def test_migration_runner_detects_checksum_mismatch(tmp_path: Path) -> None:
    db_path = tmp_path / "memory.db"
    migrations_dir = tmp_path / "migrations"
    migration_file = _write_migration(
        migrations_dir,
        "0001_test.sql",
        "CREATE TABLE IF NOT EXISTS test_table (id INTEGER PRIMARY KEY);",
    )

    runner = MigrationRunner(db_path, migrations_dir=migrations_dir)
    await runner.apply_pending()

    migration_file.write_text(
        "CREATE TABLE IF NOT EXISTS test_table (id INTEGER PRIMARY KEY, x TEXT);",
        encoding="utf-8",
    )

    with pytest.raises(StorageError, match="checksum mismatch"):
        await runner.apply_pending()


@pytest.mark.asyncio
async def test_migration_runner_times_out_when_lock_is_held(tmp_path: Path) -> None:
    db_path = tmp_path / "memory.db"
    migrations_dir = tmp_path / "migrations"
    _write_migration(
        migrations_dir,
        "0001_test.sql",
        "CREATE TABLE IF NOT EXISTS test_table (id INTEGER PRIMARY KEY);",
    )
    lock_path = tmp_path / "held.lock"
    runner = MigrationRunner(
        db_path,
        migrations_dir=migrations_dir,
        lock_file_path=lock_path,
        lock_timeout_seconds=0.1,
    )

    with FileLock(str(lock_path)):
        with pytest.raises(StorageError) as exc_info:
            await runner.apply_pending()

    assert exc_info.value.code == "migration_lock_timeout"


@pytest.mark.asyncio
async def test_item_store_init_db_applies_project_migrations(tmp_path: Path) -> None:
    db_path = tmp_path / "agent" / "memory" / "memory.db"

    store = SQLiteItemStore(db_path, "agent")
    applied = await store.init_db()
    again = await store.init_db()
    await store.close()

    assert applied == ["0001", "0002", "0003"]
    assert again == []
    with sqlite3.connect(db_path) as conn:
        table_names = {
            row[0]
            for row in conn.execute(
                "SELECT name FROM sqlite_master WHERE type IN ('table', 'view')"
            ).fetchall()
        }
    assert {"memory_items", "memory_fts", "memory_embeddings", "schema_migrations"} <= table_names
    assert (db_path.stat().st_mode & 0o777) == 0o600


def test_split_sql_statements_ignores_semicolons_in_literals_and_comment_only_chunks() -> None:
    script = (
        "-- header comment\n"
        "CREATE TABLE t (v TEXT DEFAULT 'a;b');\n"
        "INSERT INTO t(v) VALUES ('x');\n"
        "-- trailing comment only\n"
    )

    statements = split_sql_statements(script)

    assert len(statements) == 2
    assert "'a;b'" in statements[0]
    assert statements[1].startswith("INSERT INTO t")


def test_split_sql_statements_ignores_semicolons_and_quotes_in_comments() -> None:
    script = (
        "-- Items only; the store's writer keeps rows in sync.\n"
        "CREATE TABLE t (v TEXT);\n"
        "/* block; with 'quote */\n"
        "INSERT INTO t(v) VALUES ('it''s; fine');\n"
    )

    statements = split_sql_statements(script)

    assert len(statements) == 2
    assert statements[0].endswith("CREATE TABLE t (v TEXT)")
    assert statements[1].endswith("VALUES ('it''s; fine')")


def test_bundled_migrations_split_into_executable_statements() -> None:
    migrations_dir = Path(__file__).resolve().parents[1] / "db" / "migrations"

    for path in sorted(migrations_dir.glob("*.sql")):
        for statement in split_sql_statements(path.read_text(encoding="utf-8")):
            code = [
                line for line in statement.splitlines()
                if line.strip() and not line.strip().startswith("--")
            ]
            assert code[0].lstrip().startswith("CREATE"), path.name
