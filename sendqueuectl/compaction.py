"""
Explicit maintenance for the append-only job log.

The queue itself only ever appends. These helpers are the one place the log
is rewritten, and only when called with execute=True:

  compact_latest_by_key  keep the last snapshot per job_id (backup first)
  rotate                 move the log aside with a date suffix
  data_file_status       size / line count / record time span
"""
import json
import os
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

import structlog

from .models import Job
from .utils import to_iso

logger = structlog.get_logger()


@dataclass
class CompactionResult:
    success: bool
    dry_run: bool
    input_path: str
    input_lines: int = 0
    output_lines: int = 0
    input_bytes: int = 0
    output_bytes: int = 0
    backup_path: Optional[str] = None
    error: Optional[str] = None

    @property
    def reduction_pct(self) -> int:
        if not self.input_bytes:
            return 0
        return round((self.input_bytes - self.output_bytes) * 100 / self.input_bytes)


@dataclass
class RotationResult:
    success: bool
    dry_run: bool
    input_path: str
    rotated_path: Optional[str] = None
    rotated_bytes: int = 0
    error: Optional[str] = None


@dataclass
class DataFileStatus:
    path: str
    exists: bool = False
    lines: int = 0
    size_bytes: int = 0
    last_modified: Optional[str] = None
    oldest_record: Optional[str] = None
    newest_record: Optional[str] = None


def _backup(path: Path) -> Path:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    backup = path.with_name(f"{path.name}.bak-{stamp}")
    shutil.copy2(path, backup)
    return backup


def _is_job(record) -> bool:
    try:
        Job.from_dict(record)
    except (ValueError, TypeError):
        return False
    return True


def compact_latest_by_key(path, key: str = "job_id", execute: bool = False) -> CompactionResult:
    path = Path(path)
    result = CompactionResult(success=False, dry_run=not execute, input_path=str(path))
    if not path.exists():
        result.error = "Input file does not exist"
        return result

    try:
        raw = path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        result.error = str(e)
        return result

    lines = [ln for ln in raw.splitlines() if ln.strip()]
    result.input_lines = len(lines)
    result.input_bytes = len(raw.encode("utf-8"))

    # Position is fixed by the first appearance of a key, content by the last.
    latest: Dict[str, str] = {}
    for line in lines:
        try:
            record = json.loads(line)
        except ValueError:
            continue
        if not isinstance(record, dict) or not record.get(key):
            continue
        if key == "job_id" and not _is_job(record):
            continue
        latest[str(record[key])] = line

    out_lines: List[str] = list(latest.values())
    content = "".join(ln + "\n" for ln in out_lines)
    result.output_lines = len(out_lines)
    result.output_bytes = len(content.encode("utf-8"))

    if execute:
        try:
            result.backup_path = str(_backup(path))
            tmp = path.with_name(path.name + ".compact-tmp")
            tmp.write_text(content, encoding="utf-8")
            os.replace(tmp, path)
        except OSError as e:
            result.error = str(e)
            return result
        logger.info("job_log_compacted", path=str(path), input_lines=result.input_lines,
                    output_lines=result.output_lines, backup=result.backup_path)

    result.success = True
    return result


def rotate(path, execute: bool = False, suffix: Optional[str] = None) -> RotationResult:
    path = Path(path)
    suffix = suffix or datetime.now(timezone.utc).strftime("%Y%m%d")
    result = RotationResult(success=False, dry_run=not execute, input_path=str(path))
    if not path.exists():
        result.error = "Input file does not exist"
        return result

    rotated = path.with_name(f"{path.name}.{suffix}")
    result.rotated_path = str(rotated)
    result.rotated_bytes = path.stat().st_size

    if execute:
        if rotated.exists():
            result.error = f"Rotated file already exists: {rotated}"
            return result
        try:
            os.replace(path, rotated)
            path.touch()
        except OSError as e:
            result.error = str(e)
            return result
        logger.info("job_log_rotated", path=str(path), rotated=str(rotated))

    result.success = True
    return result


def data_file_status(path) -> DataFileStatus:
    path = Path(path)
    status = DataFileStatus(path=str(path))
    if not path.exists():
        return status

    stat = path.stat()
    status.exists = True
    status.size_bytes = stat.st_size
    status.last_modified = to_iso(datetime.fromtimestamp(stat.st_mtime, timezone.utc))

    oldest = newest = None
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        for line in f:
            if not line.strip():
                continue
            status.lines += 1
            try:
                record = json.loads(line)
            except ValueError:
                continue
            if not isinstance(record, dict):
                continue
            ts = record.get("last_updated_at") or record.get("created_at")
            if ts:
                oldest = ts if oldest is None or ts < oldest else oldest
                newest = ts if newest is None or ts > newest else newest
    status.oldest_record = oldest
    status.newest_record = newest
    return status
