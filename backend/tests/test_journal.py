import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from journal import (
    EventJournal,
    append_event,
    events_dir,
    iter_events_since,
    open_journal,
    read_events_since,
)
from memory_errors import (
    InvalidAgentIDError,
    InvalidInputError,
    JournalClosedError,
    StorageError,
)
from memory_models import Event


def _read_lines(path: Path):
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


@pytest.mark.asyncio
async def test_journal_partitions_events_by_utc_day(tmp_path: Path) -> None:
    day_one = datetime(2024, 3, 1, 23, 59, 59, tzinfo=timezone.utc)
    day_two = datetime(2024, 3, 2, 0, 0, 1, tzinfo=timezone.utc)

    async with open_journal(tmp_path, "agent-a") as journal:
        first = journal.ingest(Event(type="user_message", text="late", timestamp=day_one))
        second = journal.ingest(Event(type="user_message", text="early", timestamp=day_two))

    assert first["queued"] is True
    assert second["queued"] is True
    directory = events_dir(tmp_path, "agent-a")
    assert sorted(path.name for path in directory.iterdir()) == [
        "2024-03-01.jsonl",
        "2024-03-02.jsonl",
    ]
    assert [row["text"] for row in _read_lines(directory / "2024-03-01.jsonl")] == ["late"]
    assert [row["text"] for row in _read_lines(directory / "2024-03-02.jsonl")] == ["early"]
    assert _read_lines(directory / "2024-03-01.jsonl")[0]["timestamp"].endswith("Z")
    assert ((directory / "2024-03-01.jsonl").stat().st_mode & 0o777) == 0o600


@pytest.mark.asyncio
async def test_journal_drops_events_when_buffer_is_full(tmp_path: Path) -> None:
    journal = EventJournal(tmp_path, "agent-a", buffer_size=2)
    await journal.start()

    results = [
        journal.ingest({"type": "tool_call", "text": f"call {index}"}) for index in range(5)
    ]
    error = await journal.close()

    assert error is None
    assert [result["queued"] for result in results] == [True, True, False, False, False]
    assert all(result.get("reason") == "queue_full" for result in results[2:])
    assert journal.stats() == {"dropped_events": 3}
    status = journal.status()
    assert status["stats"] == {"enqueued": 2, "written": 2, "dropped": 3}
    assert [event.text for event in read_events_since(tmp_path, "agent-a")] == [
        "call 0",
        "call 1",
    ]


@pytest.mark.asyncio
async def test_journal_rejects_ingest_after_close_and_close_is_idempotent(tmp_path: Path) -> None:
    journal = EventJournal(tmp_path, "agent-a")
    await journal.start()
    assert await journal.close() is None
    assert await journal.close() is None

    with pytest.raises(JournalClosedError):
        journal.ingest({"type": "user_message", "text": "too late"})


@pytest.mark.asyncio
async def test_journal_requires_start_before_ingest(tmp_path: Path) -> None:
    journal = EventJournal(tmp_path, "agent-a")
    with pytest.raises(JournalClosedError) as exc_info:
        journal.ingest({"type": "user_message", "text": "hi"})
    assert exc_info.value.code == "not_started"


@pytest.mark.asyncio
async def test_disabled_journal_accepts_nothing_and_writes_nothing(tmp_path: Path) -> None:
    async with open_journal(tmp_path, "agent-a", enabled=False) as journal:
        result = journal.ingest({"type": "user_message", "text": "ignored"})

    assert result == {"queued": False, "reason": "journal_disabled"}
    assert not events_dir(tmp_path, "agent-a").exists()


@pytest.mark.asyncio
async def test_journal_rejects_unknown_event_type(tmp_path: Path) -> None:
    async with open_journal(tmp_path, "agent-a") as journal:
        with pytest.raises(InvalidInputError) as exc_info:
            journal.ingest({"type": "telemetry", "text": "nope"})
    assert exc_info.value.code == "invalid_event_type"


def test_invalid_agent_ids_are_rejected(tmp_path: Path) -> None:
    for agent_id in ("", "   ", "../escape", "a/b", "a\\b"):
        with pytest.raises(InvalidAgentIDError):
            EventJournal(tmp_path, agent_id)


def test_append_event_assigns_id_and_timestamp(tmp_path: Path) -> None:
    event = append_event(tmp_path, "agent-a", {"type": " Decision_Log ", "text": " chose sqlite "})

    assert event.id.startswith("evt_")
    assert event.type == "decision_log"
    assert event.text == "chose sqlite"
    assert event.timestamp is not None and event.timestamp.tzinfo is not None


def test_read_events_since_filters_and_keeps_most_recent(tmp_path: Path) -> None:
    base = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)
    for index in range(5):
        append_event(
            tmp_path,
            "agent-a",
            Event(type="user_message", text=f"m{index}", timestamp=base + timedelta(minutes=index)),
        )
    append_event(
        tmp_path,
        "agent-a",
        Event(type="checkpoint", text="{}", timestamp=base + timedelta(minutes=10)),
    )
    day_file = events_dir(tmp_path, "agent-a") / "2024-05-10.jsonl"
    with day_file.open("a", encoding="utf-8") as handle:
        handle.write("not json\n\n[1, 2]\n")

    after_first = read_events_since(tmp_path, "agent-a", base, max_events=10)
    assert [event.text for event in after_first][:4] == ["m1", "m2", "m3", "m4"]
    assert after_first[-1].type == "checkpoint"

    recent = read_events_since(
        tmp_path, "agent-a", None, max_events=2, exclude_types={"checkpoint"}
    )
    assert [event.text for event in recent] == ["m3", "m4"]


def test_iter_events_since_skips_partitions_before_the_boundary_day(tmp_path: Path) -> None:
    old = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
    new = datetime(2024, 1, 3, 8, 0, tzinfo=timezone.utc)
    append_event(tmp_path, "agent-a", Event(type="error", text="old", timestamp=old))
    append_event(tmp_path, "agent-a", Event(type="error", text="new", timestamp=new))

    boundary = datetime(2024, 1, 2, tzinfo=timezone.utc)
    assert [event.text for event in iter_events_since(tmp_path, "agent-a", boundary)] == ["new"]
    assert read_events_since(tmp_path, "nobody", None) == []


@pytest.mark.asyncio
async def test_journal_keeps_lone_surrogates_and_keeps_writing(tmp_path: Path) -> None:
    payload = json.loads('{"type": "user_message", "text": "\\ud800 broken"}')

    journal = await EventJournal(tmp_path, "agent-a", buffer_size=2).start()
    first = journal.ingest(payload)
    await journal._queue.join()
    second = journal.ingest({"type": "user_message", "text": "after"})
    error = await journal.close()

    assert first["queued"] is True and second["queued"] is True
    assert error is None
    assert journal.status()["stats"]["written"] == 2
    assert [event.text for event in read_events_since(tmp_path, "agent-a")] == [
        "\ud800 broken",
        "after",
    ]


@pytest.mark.asyncio
async def test_journal_writer_survives_unexpected_event_errors(monkeypatch, tmp_path: Path) -> None:
    journal = await EventJournal(tmp_path, "agent-a", buffer_size=4).start()
    write_event = journal._write_event
    calls = []

    def flaky_write(event):
        calls.append(event.text)
        if len(calls) == 1:
            raise RuntimeError("writer hiccup")
        write_event(event)

    monkeypatch.setattr(journal, "_write_event", flaky_write)
    journal.ingest({"type": "user_message", "text": "lost"})
    journal.ingest({"type": "user_message", "text": "kept"})
    error = await journal.close()

    assert isinstance(error, RuntimeError)
    assert journal.status()["last_error"] == "RuntimeError: writer hiccup"
    assert calls == ["lost", "kept"]
    assert [event.text for event in read_events_since(tmp_path, "agent-a")] == ["kept"]


def test_append_event_reports_storage_failure(tmp_path: Path) -> None:
    when = datetime(2024, 5, 10, 8, 0, tzinfo=timezone.utc)
    (events_dir(tmp_path, "agent-a") / "2024-05-10.jsonl").mkdir(parents=True)

    with pytest.raises(StorageError) as exc_info:
        append_event(tmp_path, "agent-a", {"type": "tool_call", "text": "x", "timestamp": when})
    assert exc_info.value.code == "journal_write_failed"

    surrogate = append_event(tmp_path, "agent-b", {"type": "user_message", "text": "\udc80"})
    assert read_events_since(tmp_path, "agent-b")[0].text == surrogate.text
