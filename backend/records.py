"""
Checkpoint records and maintenance reports persisted per agent.

``<agents_root>/<agent>/memory/checkpoints/checkpoint-<ts>.json`` and
``<agents_root>/<agent>/memory/maintenance/maintenance-<ts>.json``. The
timestamp in the file name sorts lexicographically, so "latest" is simply
the last name in sorted order.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from memory_errors import InvalidAgentIDError, StorageError
from memory_models import (
    CheckpointRecord,
    MaintenanceReport,
    utc_now,
    valid_agent_id,
)

logger = logging.getLogger(__name__)

FILE_MODE = 0o600
DIR_MODE = 0o755

CHECKPOINT_PREFIX = "checkpoint-"
MAINTENANCE_PREFIX = "maintenance-"


def _agent_memory_dir(agents_root: Union[str, Path], agent_id: str) -> Path:
    if not valid_agent_id(agent_id):
        raise InvalidAgentIDError(agent_id)
    return Path(agents_root) / agent_id.strip() / "memory"


def checkpoints_dir(agents_root: Union[str, Path], agent_id: str) -> Path:
    return _agent_memory_dir(agents_root, agent_id) / "checkpoints"


def maintenance_dir(agents_root: Union[str, Path], agent_id: str) -> Path:
    return _agent_memory_dir(agents_root, agent_id) / "maintenance"


def _file_stamp(record_time) -> str:
    return record_time.strftime("%Y%m%dT%H%M%S%fZ")


def _write_json(path: Path, payload: Dict[str, Any]) -> None:
    path.parent.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
    raw = json.dumps(payload, indent=2, ensure_ascii=False) + "\n"
    fd = os.open(path, os.O_CREAT | os.O_WRONLY | os.O_TRUNC, FILE_MODE)
    with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as handle:
        handle.write(raw)


def _latest_json(directory: Path, prefix: str) -> Optional[Tuple[Path, Dict[str, Any]]]:
    if not directory.is_dir():
        return None
    candidates = sorted(directory.glob(f"{prefix}*.json"))
    if not candidates:
        return None
    path = candidates[-1]
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as exc:
        raise StorageError(
            f"corrupt record file {path.name}: {exc}", code="corrupt_record"
        ) from exc
    if not isinstance(raw, dict):
        raise StorageError(f"corrupt record file {path.name}", code="corrupt_record")
    return path, raw


def write_checkpoint_record(
    agents_root: Union[str, Path], agent_id: str, record: CheckpointRecord
) -> CheckpointRecord:
    directory = checkpoints_dir(agents_root, agent_id)
    record.agent_id = agent_id.strip()
    if record.created_at is None:
        record.created_at = utc_now()
    if not record.id:
        record.id = f"chk_{int(record.created_at.timestamp() * 1_000_000)}"
    path = directory / f"{CHECKPOINT_PREFIX}{_file_stamp(record.created_at)}.json"
    record.checkpoint_file_path = str(path)
    _write_json(path, record.to_dict())
    return record


def load_latest_checkpoint_record(
    agents_root: Union[str, Path], agent_id: str
) -> Optional[CheckpointRecord]:
    found = _latest_json(checkpoints_dir(agents_root, agent_id), CHECKPOINT_PREFIX)
    if found is None:
        return None
    path, raw = found
    record = CheckpointRecord.from_dict(raw)
    if not record.checkpoint_file_path:
        record.checkpoint_file_path = str(path)
    return record


def write_maintenance_report(
    agents_root: Union[str, Path], agent_id: str, report: MaintenanceReport
) -> MaintenanceReport:
    directory = maintenance_dir(agents_root, agent_id)
    report.agent_id = agent_id.strip()
    if report.created_at is None:
        report.created_at = utc_now()
    if not report.id:
        report.id = f"maint_{int(report.created_at.timestamp() * 1_000_000)}"
    path = directory / f"{MAINTENANCE_PREFIX}{_file_stamp(report.created_at)}.json"
    report.report_file_path = str(path)
    _write_json(path, report.to_dict())
    logger.info("maintenance report written to %s", path)
    return report


def load_latest_maintenance_report(
    agents_root: Union[str, Path], agent_id: str
) -> Optional[MaintenanceReport]:
    found = _latest_json(maintenance_dir(agents_root, agent_id), MAINTENANCE_PREFIX)
    if found is None:
        return None
    return MaintenanceReport.from_dict(found[1])
